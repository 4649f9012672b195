"""Analysis settings: defaults, a JSON settings file, and environment overrides."""

from __future__ import annotations

import dataclasses
import json
import logging
import os
from pathlib import Path
from typing import Any, Mapping

LOGGER = logging.getLogger("attachment_intel.settings")

DEFAULT_SCAN_TIMEOUT_MINUTES = 5
DEFAULT_DIGEST_CONCURRENCY = 4
MIN_DIGEST_CONCURRENCY = 1
MAX_DIGEST_CONCURRENCY = 10
DEFAULT_DIGEST_TIMEOUT_SECONDS = 90.0
DEFAULT_CONTENT_FETCH_TIMEOUT_SECONDS = 30.0

ENV_SETTINGS_FILE = "ATTACHMENT_INTEL_SETTINGS"
ENV_SCAN_TIMEOUT = "ATTACHMENT_INTEL_SCAN_TIMEOUT_MINUTES"
ENV_DIGEST_CONCURRENCY = "ATTACHMENT_INTEL_DIGEST_CONCURRENCY"
ENV_SITE_URL = "ATTACHMENT_INTEL_SITE_URL"


@dataclasses.dataclass(slots=True)
class ContentKinds:
    """Optional content kinds included in reference scans.

    System settings, plugin and theme settings, and user avatars are always
    scanned and have no switch here.
    """

    posts: bool = True
    pages: bool = True
    comments: bool = False
    moments: bool = False
    photos: bool = False
    docs: bool = False


@dataclasses.dataclass(slots=True)
class AnalysisSettings:
    scan_timeout_minutes: int = DEFAULT_SCAN_TIMEOUT_MINUTES
    digest_concurrency: int = DEFAULT_DIGEST_CONCURRENCY
    digest_timeout_seconds: float = DEFAULT_DIGEST_TIMEOUT_SECONDS
    content_fetch_timeout_seconds: float = DEFAULT_CONTENT_FETCH_TIMEOUT_SECONDS
    exclude_groups: frozenset[str] = frozenset()
    exclude_policies: frozenset[str] = frozenset()
    content_kinds: ContentKinds = dataclasses.field(default_factory=ContentKinds)
    site_url: str | None = None

    @property
    def scan_timeout_seconds(self) -> float:
        return self.scan_timeout_minutes * 60.0

    def is_excluded(self, group_name: str | None, policy_name: str | None) -> bool:
        if group_name and group_name in self.exclude_groups:
            return True
        return bool(policy_name) and policy_name in self.exclude_policies


# ------------------------------- Parsing ------------------------------------ #


def clamp_concurrency(value: int) -> int:
    return max(MIN_DIGEST_CONCURRENCY, min(MAX_DIGEST_CONCURRENCY, value))


def _as_int(value: Any, default: int) -> int:
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(str(value).strip())
    except ValueError:
        return default


def _as_seconds(value: Any, default: float) -> float:
    if value is None or isinstance(value, bool):
        return default
    try:
        seconds = float(str(value).strip())
    except ValueError:
        return default
    return seconds if seconds > 0 else default


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in {"true", "1", "yes", "on"}:
        return True
    if text in {"false", "0", "no", "off"}:
        return False
    return default


def _as_names(value: Any) -> frozenset[str]:
    if not value:
        return frozenset()
    if isinstance(value, str):
        value = value.split(",")
    return frozenset(str(v).strip() for v in value if str(v).strip())


def _section(data: Mapping[str, Any], *path: str) -> Mapping[str, Any]:
    node: Any = data
    for key in path:
        node = node.get(key) if isinstance(node, Mapping) else None
    return node if isinstance(node, Mapping) else {}


def parse_settings(data: Mapping[str, Any], env: Mapping[str, str] | None = None) -> AnalysisSettings:
    """Build settings from a settings document; environment values win."""
    env = env if env is not None else os.environ
    analysis = _section(data, "global", "analysis")
    scanning = _section(data, "analysis", "referenceScanning")
    site = _section(data, "site")

    timeout = _as_int(analysis.get("scanTimeoutMinutes"), DEFAULT_SCAN_TIMEOUT_MINUTES)
    timeout = _as_int(env.get(ENV_SCAN_TIMEOUT), timeout)
    if timeout <= 0:
        timeout = DEFAULT_SCAN_TIMEOUT_MINUTES

    concurrency = _as_int(analysis.get("duplicateScanConcurrency"), DEFAULT_DIGEST_CONCURRENCY)
    concurrency = _as_int(env.get(ENV_DIGEST_CONCURRENCY), concurrency)

    defaults = ContentKinds()
    kinds = ContentKinds(
        posts=_as_bool(scanning.get("scanPosts"), defaults.posts),
        pages=_as_bool(scanning.get("scanPages"), defaults.pages),
        comments=_as_bool(scanning.get("scanComments"), defaults.comments),
        moments=_as_bool(scanning.get("scanMoments"), defaults.moments),
        photos=_as_bool(scanning.get("scanPhotos"), defaults.photos),
        docs=_as_bool(scanning.get("scanDocs"), defaults.docs),
    )

    site_url = env.get(ENV_SITE_URL) or site.get("externalUrl") or None

    return AnalysisSettings(
        scan_timeout_minutes=timeout,
        digest_concurrency=clamp_concurrency(concurrency),
        digest_timeout_seconds=_as_seconds(analysis.get("digestTimeoutSeconds"), DEFAULT_DIGEST_TIMEOUT_SECONDS),
        content_fetch_timeout_seconds=_as_seconds(
            analysis.get("contentFetchTimeoutSeconds"), DEFAULT_CONTENT_FETCH_TIMEOUT_SECONDS
        ),
        exclude_groups=_as_names(analysis.get("excludeGroups")),
        exclude_policies=_as_names(analysis.get("excludePolicies")),
        content_kinds=kinds,
        site_url=str(site_url).rstrip("/") if site_url else None,
    )


class SettingsProvider:
    """Loads settings fresh on each call so edits apply to the next scan."""

    def __init__(self, path: Path | None = None, overrides: Mapping[str, Any] | None = None,
                 env: Mapping[str, str] | None = None):
        source = env if env is not None else os.environ
        if path is None and source.get(ENV_SETTINGS_FILE):
            path = Path(source[ENV_SETTINGS_FILE])
        self.path = path
        self.overrides = dict(overrides or {})
        self.env = env

    def load(self) -> AnalysisSettings:
        data: dict[str, Any] = {}
        if self.path is not None:
            try:
                loaded = json.loads(self.path.read_text(encoding="utf-8"))
                if isinstance(loaded, dict):
                    data = loaded
            except FileNotFoundError:
                LOGGER.debug("settings_missing path=%s", self.path)
            except (OSError, json.JSONDecodeError) as exc:
                LOGGER.warning("settings_unreadable path=%s error=%s", self.path, exc)
        _merge(data, self.overrides)
        return parse_settings(data, self.env)


def _merge(base: dict[str, Any], extra: Mapping[str, Any]) -> None:
    for key, value in extra.items():
        if isinstance(value, Mapping) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
