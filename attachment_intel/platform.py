"""Content platform collaborator: the contract and a JSON export backed provider."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Protocol

from attachment_intel.common import RecordNotFound, parse_iso
from attachment_intel.models import (
    Asset,
    Comment,
    ConfigMap,
    Configurable,
    ContentBody,
    ContentDocument,
    Reply,
    StoragePolicy,
    User,
)

LOGGER = logging.getLogger("attachment_intel.platform")

SYSTEM_CONFIG_MAP = "system"

KIND_MOMENT = "Moment"
KIND_PHOTO = "Photo"
KIND_DOC = "Doc"
KIND_DOC_PROJECT = "Project"
KIND_DOC_TREE = "DocTree"


class ContentPlatform(Protocol):
    """Everything the scanners read from the host platform."""

    async def list_assets(self) -> list[Asset]: ...

    async def get_asset(self, name: str) -> Asset | None: ...

    async def list_policies(self) -> list[StoragePolicy]: ...

    async def list_posts(self) -> list[ContentDocument]: ...

    async def get_post(self, name: str) -> ContentDocument | None: ...

    async def fetch_post_content(self, name: str) -> ContentBody | None: ...

    async def list_pages(self) -> list[ContentDocument]: ...

    async def get_page(self, name: str) -> ContentDocument | None: ...

    async def fetch_page_content(self, name: str) -> ContentBody | None: ...

    async def list_comments(self) -> list[Comment]: ...

    async def get_comment(self, name: str) -> Comment | None: ...

    async def list_replies(self) -> list[Reply]: ...

    async def fetch_config_map(self, name: str) -> ConfigMap | None: ...

    async def list_plugins(self) -> list[Configurable]: ...

    async def list_themes(self) -> list[Configurable]: ...

    async def list_users(self) -> list[User]: ...

    async def fetch_setting_forms(self, setting_name: str) -> list[dict[str, Any]] | None: ...

    def has_kind(self, kind: str) -> bool: ...

    async def list_extensions(self, kind: str) -> list[dict[str, Any]]: ...

    async def fetch_snapshot_content(self, head: str | None, base: str | None) -> ContentBody | None: ...


# --------------------------- JSON export provider --------------------------- #


def _document(item: dict[str, Any]) -> ContentDocument:
    return ContentDocument(
        name=str(item["name"]),
        title=item.get("title"),
        slug=item.get("slug"),
        cover=item.get("cover"),
        deleted=bool(item.get("deleted", False)),
    )


def _configurable(item: dict[str, Any]) -> Configurable:
    return Configurable(
        name=str(item["name"]),
        display_name=item.get("displayName"),
        config_map_name=item.get("configMapName"),
        setting_name=item.get("settingName"),
    )


def _body(item: Any) -> ContentBody | None:
    if not isinstance(item, dict):
        return None
    return ContentBody(raw=item.get("raw"), rendered=item.get("rendered") or item.get("content"))


class JsonPlatform:
    """Serves a content platform export held in one JSON document.

    Top-level keys: ``assets``, ``policies``, ``posts``, ``pages``,
    ``snapshots``, ``comments``, ``replies``, ``configMaps``, ``plugins``,
    ``themes``, ``users``, ``settings`` and ``extensions``. An extension kind
    counts as installed when it is a key of ``extensions``.
    """

    def __init__(self, data: dict[str, Any]):
        self.data = data
        self._posts = {str(p["name"]): p for p in data.get("posts", [])}
        self._pages = {str(p["name"]): p for p in data.get("pages", [])}
        self._comments = {str(c["name"]): c for c in data.get("comments", [])}

    @classmethod
    def from_file(cls, path: Path) -> "JsonPlatform":
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        LOGGER.info("catalog_loaded path=%s assets=%s", path, len(data.get("assets", [])))
        return cls(data)

    async def list_assets(self) -> list[Asset]:
        out = []
        for item in self.data.get("assets", []):
            out.append(
                Asset(
                    name=str(item["name"]),
                    display_name=item.get("displayName"),
                    size=int(item.get("size") or 0),
                    media_type=item.get("mediaType"),
                    permalink=item.get("permalink"),
                    policy_name=item.get("policyName"),
                    group_name=item.get("groupName"),
                    created_at=parse_iso(item.get("createdAt")),
                )
            )
        return out

    async def get_asset(self, name: str) -> Asset | None:
        for asset in await self.list_assets():
            if asset.name == name:
                return asset
        return None

    async def list_policies(self) -> list[StoragePolicy]:
        return [
            StoragePolicy(name=str(p["name"]), template_name=p.get("templateName"))
            for p in self.data.get("policies", [])
        ]

    async def list_posts(self) -> list[ContentDocument]:
        return [_document(p) for p in self._posts.values()]

    async def get_post(self, name: str) -> ContentDocument | None:
        item = self._posts.get(name)
        return _document(item) if item else None

    async def fetch_post_content(self, name: str) -> ContentBody | None:
        item = self._posts.get(name)
        if item is None:
            raise RecordNotFound(f"post {name} not found")
        return _body(item.get("content"))

    async def list_pages(self) -> list[ContentDocument]:
        return [_document(p) for p in self._pages.values()]

    async def get_page(self, name: str) -> ContentDocument | None:
        item = self._pages.get(name)
        return _document(item) if item else None

    async def fetch_page_content(self, name: str) -> ContentBody | None:
        item = self._pages.get(name)
        if item is None:
            raise RecordNotFound(f"page {name} not found")
        if "content" in item:
            return _body(item["content"])
        return await self.fetch_snapshot_content(item.get("headSnapshot"), item.get("baseSnapshot"))

    async def list_comments(self) -> list[Comment]:
        out = []
        for item in self._comments.values():
            subject = item.get("subjectRef") or {}
            out.append(
                Comment(
                    name=str(item["name"]),
                    raw=item.get("raw"),
                    subject_kind=subject.get("kind"),
                    subject_name=subject.get("name"),
                )
            )
        return out

    async def get_comment(self, name: str) -> Comment | None:
        for comment in await self.list_comments():
            if comment.name == name:
                return comment
        return None

    async def list_replies(self) -> list[Reply]:
        return [
            Reply(name=str(r["name"]), raw=r.get("raw"), comment_name=r.get("commentName"))
            for r in self.data.get("replies", [])
        ]

    async def fetch_config_map(self, name: str) -> ConfigMap | None:
        data = (self.data.get("configMaps") or {}).get(name)
        if data is None:
            return None
        return ConfigMap(name=name, data={str(k): v for k, v in data.items()})

    async def list_plugins(self) -> list[Configurable]:
        return [_configurable(p) for p in self.data.get("plugins", [])]

    async def list_themes(self) -> list[Configurable]:
        return [_configurable(t) for t in self.data.get("themes", [])]

    async def list_users(self) -> list[User]:
        return [
            User(
                name=str(u["name"]),
                display_name=u.get("displayName"),
                avatar=u.get("avatar"),
                permalink=u.get("permalink"),
            )
            for u in self.data.get("users", [])
        ]

    async def fetch_setting_forms(self, setting_name: str) -> list[dict[str, Any]] | None:
        return (self.data.get("settings") or {}).get(setting_name)

    def has_kind(self, kind: str) -> bool:
        return kind in (self.data.get("extensions") or {})

    async def list_extensions(self, kind: str) -> list[dict[str, Any]]:
        return list((self.data.get("extensions") or {}).get(kind, []))

    async def fetch_snapshot_content(self, head: str | None, base: str | None) -> ContentBody | None:
        snapshots = self.data.get("snapshots") or {}
        base = base or head
        if not head or not base:
            return None
        if base not in snapshots:
            return None
        # Snapshots in the export are stored already patched.
        return _body(snapshots.get(head) or snapshots[base])
