"""Tests for settings parsing and loading."""

from __future__ import annotations

import json

from attachment_intel.settings import (
    DEFAULT_CONTENT_FETCH_TIMEOUT_SECONDS,
    DEFAULT_DIGEST_CONCURRENCY,
    DEFAULT_DIGEST_TIMEOUT_SECONDS,
    DEFAULT_SCAN_TIMEOUT_MINUTES,
    ENV_DIGEST_CONCURRENCY,
    ENV_SCAN_TIMEOUT,
    ENV_SETTINGS_FILE,
    ENV_SITE_URL,
    SettingsProvider,
    clamp_concurrency,
    parse_settings,
)


class TestParseSettings:
    """parse_settings() defaults, clamping and overrides."""

    def test_defaults(self):
        settings = parse_settings({}, env={})
        assert settings.scan_timeout_minutes == DEFAULT_SCAN_TIMEOUT_MINUTES
        assert settings.scan_timeout_seconds == DEFAULT_SCAN_TIMEOUT_MINUTES * 60
        assert settings.digest_concurrency == DEFAULT_DIGEST_CONCURRENCY
        assert settings.content_kinds.posts and settings.content_kinds.pages
        assert not settings.content_kinds.comments
        assert settings.site_url is None

    def test_concurrency_clamped(self):
        assert clamp_concurrency(0) == 1
        assert clamp_concurrency(50) == 10
        assert clamp_concurrency(6) == 6
        data = {"global": {"analysis": {"duplicateScanConcurrency": 99}}}
        assert parse_settings(data, env={}).digest_concurrency == 10

    def test_non_positive_timeout_uses_default(self):
        data = {"global": {"analysis": {"scanTimeoutMinutes": 0}}}
        assert parse_settings(data, env={}).scan_timeout_minutes == DEFAULT_SCAN_TIMEOUT_MINUTES

    def test_environment_wins(self):
        data = {
            "global": {"analysis": {"scanTimeoutMinutes": 10, "duplicateScanConcurrency": 2}},
            "site": {"externalUrl": "https://from-file.example.com"},
        }
        env = {ENV_SCAN_TIMEOUT: "15", ENV_DIGEST_CONCURRENCY: "3", ENV_SITE_URL: "https://env.example.com/"}
        settings = parse_settings(data, env=env)
        assert settings.scan_timeout_minutes == 15
        assert settings.digest_concurrency == 3
        assert settings.site_url == "https://env.example.com"

    def test_bad_values_fall_back(self):
        data = {"global": {"analysis": {"scanTimeoutMinutes": "soon", "duplicateScanConcurrency": True}}}
        settings = parse_settings(data, env={})
        assert settings.scan_timeout_minutes == DEFAULT_SCAN_TIMEOUT_MINUTES
        assert settings.digest_concurrency == DEFAULT_DIGEST_CONCURRENCY

    def test_fetch_timeouts(self):
        data = {"global": {"analysis": {"digestTimeoutSeconds": "2.5", "contentFetchTimeoutSeconds": 12}}}
        settings = parse_settings(data, env={})
        assert settings.digest_timeout_seconds == 2.5
        assert settings.content_fetch_timeout_seconds == 12.0

        bad = {"global": {"analysis": {"digestTimeoutSeconds": -1, "contentFetchTimeoutSeconds": "never"}}}
        settings = parse_settings(bad, env={})
        assert settings.digest_timeout_seconds == DEFAULT_DIGEST_TIMEOUT_SECONDS
        assert settings.content_fetch_timeout_seconds == DEFAULT_CONTENT_FETCH_TIMEOUT_SECONDS

    def test_exclusions(self):
        data = {"global": {"analysis": {"excludeGroups": "private, drafts", "excludePolicies": ["cold"]}}}
        settings = parse_settings(data, env={})
        assert settings.exclude_groups == frozenset({"private", "drafts"})
        assert settings.is_excluded("drafts", None)
        assert settings.is_excluded(None, "cold")
        assert not settings.is_excluded("public", "hot")

    def test_content_kinds(self):
        data = {"analysis": {"referenceScanning": {"scanPosts": "false", "scanComments": "yes"}}}
        kinds = parse_settings(data, env={}).content_kinds
        assert not kinds.posts
        assert kinds.comments
        assert kinds.pages


class TestSettingsProvider:
    """Loading from file, overrides and environment."""

    def test_file_and_overrides(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"global": {"analysis": {"scanTimeoutMinutes": 7, "excludeGroups": ["a"]}}}))
        provider = SettingsProvider(path, overrides={"global": {"analysis": {"excludeGroups": ["b"]}}}, env={})
        settings = provider.load()
        assert settings.scan_timeout_minutes == 7
        assert settings.exclude_groups == frozenset({"b"})

    def test_reloads_on_each_call(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"global": {"analysis": {"scanTimeoutMinutes": 7}}}))
        provider = SettingsProvider(path, env={})
        assert provider.load().scan_timeout_minutes == 7
        path.write_text(json.dumps({"global": {"analysis": {"scanTimeoutMinutes": 9}}}))
        assert provider.load().scan_timeout_minutes == 9

    def test_unreadable_file_uses_defaults(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text("{not json")
        assert SettingsProvider(path, env={}).load().scan_timeout_minutes == DEFAULT_SCAN_TIMEOUT_MINUTES
        assert SettingsProvider(tmp_path / "missing.json", env={}).load().digest_concurrency == DEFAULT_DIGEST_CONCURRENCY

    def test_path_from_environment(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"global": {"analysis": {"scanTimeoutMinutes": 12}}}))
        provider = SettingsProvider(env={ENV_SETTINGS_FILE: str(path)})
        assert provider.path == path
        assert provider.load().scan_timeout_minutes == 12
