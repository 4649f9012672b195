"""Shared fixtures: a temporary store, a small platform export and settings."""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any, Generator

import pytest

from attachment_intel.platform import JsonPlatform
from attachment_intel.settings import SettingsProvider
from attachment_intel.store import AttachmentStore

SITE_URL = "https://blog.example.com"

CATALOG: dict[str, Any] = {
    "assets": [
        {
            "name": "att-logo",
            "displayName": "Logo.png",
            "size": 1000,
            "mediaType": "image/png",
            "permalink": "/upload/logo.png",
            "policyName": "default-policy",
            "createdAt": "2024-01-01T00:00:00+00:00",
        },
        {
            "name": "att-banner",
            "displayName": "banner.jpg",
            "size": 2500,
            "mediaType": "image/jpeg",
            "permalink": "https://blog.example.com/upload/banner.jpg",
            "policyName": "default-policy",
            "createdAt": "2024-02-01T00:00:00+00:00",
        },
        {
            "name": "att-orphan",
            "displayName": "orphan.pdf",
            "size": 4000,
            "mediaType": "application/pdf",
            "permalink": "/upload/orphan.pdf",
            "policyName": "default-policy",
            "createdAt": "2024-03-01T00:00:00+00:00",
        },
        {
            "name": "att-private",
            "displayName": None,
            "size": 300,
            "mediaType": "image/png",
            "permalink": "/upload/secret.png",
            "policyName": "default-policy",
            "groupName": "private",
            "createdAt": "2024-04-01T00:00:00+00:00",
        },
    ],
    "policies": [{"name": "default-policy", "templateName": "local"}],
    "posts": [
        {
            "name": "post-1",
            "title": "Hello",
            "slug": "hello",
            "cover": "/upload/banner.jpg",
            "content": {
                "raw": "![logo](/upload/logo.png)",
                "rendered": '<p><img src="/upload/logo.png"></p>',
            },
        },
    ],
    "pages": [
        {
            "name": "page-about",
            "title": "About",
            "slug": "about",
            "content": {"raw": '<img src="https://blog.example.com/upload/secret.png">'},
        },
    ],
    "comments": [
        {
            "name": "comment-1",
            "raw": "see ![scan](/upload/orphan.pdf)",
            "subjectRef": {"kind": "Post", "name": "post-1"},
        },
    ],
    "users": [
        {"name": "admin", "displayName": "Admin", "avatar": "/upload/logo.png", "permalink": "/authors/admin"},
    ],
    "configMaps": {
        "system": {"basic": '{"logo": "/upload/logo.png", "title": "My blog"}'},
    },
    "settings": {
        "system": [{"group": "basic", "label": "Basic settings"}],
    },
}


def make_catalog(**changes: Any) -> dict[str, Any]:
    data = copy.deepcopy(CATALOG)
    data.update(changes)
    return data


@pytest.fixture
def catalog() -> dict[str, Any]:
    return make_catalog()


@pytest.fixture
def platform(catalog: dict[str, Any]) -> JsonPlatform:
    return JsonPlatform(catalog)


@pytest.fixture
def store(tmp_path: Path) -> Generator[AttachmentStore, None, None]:
    """Fresh SQLite store in a temporary directory."""
    db = AttachmentStore(tmp_path / "attachment_intel.db")
    yield db
    db.close()


def make_settings(**sections: Any) -> SettingsProvider:
    overrides: dict[str, Any] = {"site": {"externalUrl": SITE_URL + "/"}}
    overrides.update(sections)
    return SettingsProvider(overrides=overrides, env={})


@pytest.fixture
def settings() -> SettingsProvider:
    return make_settings()
