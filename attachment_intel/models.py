"""Records exchanged between the platform, the scanners and the store."""

from __future__ import annotations

import dataclasses
import datetime as dt
from typing import Any, ClassVar

from attachment_intel.common import PHASE_NONE, SCAN_KIND_DUPLICATE, SCAN_KIND_REFERENCE, to_iso

# ---------------------------- Platform Entities ----------------------------- #


@dataclasses.dataclass(slots=True)
class Asset:
    name: str
    display_name: str | None = None
    size: int = 0
    media_type: str | None = None
    permalink: str | None = None
    policy_name: str | None = None
    group_name: str | None = None
    created_at: dt.datetime | None = None


@dataclasses.dataclass(slots=True)
class StoragePolicy:
    name: str
    template_name: str | None = None

    @property
    def is_local(self) -> bool:
        return self.template_name == "local"


@dataclasses.dataclass(slots=True)
class ContentDocument:
    """A post or a page."""

    name: str
    title: str | None = None
    slug: str | None = None
    cover: str | None = None
    deleted: bool = False


@dataclasses.dataclass(slots=True)
class ContentBody:
    raw: str | None = None
    rendered: str | None = None


@dataclasses.dataclass(slots=True)
class Comment:
    name: str
    raw: str | None = None
    subject_kind: str | None = None
    subject_name: str | None = None


@dataclasses.dataclass(slots=True)
class Reply:
    name: str
    raw: str | None = None
    comment_name: str | None = None


@dataclasses.dataclass(slots=True)
class ConfigMap:
    name: str
    data: dict[str, str] = dataclasses.field(default_factory=dict)


@dataclasses.dataclass(slots=True)
class Configurable:
    """A plugin or theme that may own a settings config map."""

    name: str
    display_name: str | None = None
    config_map_name: str | None = None
    setting_name: str | None = None


@dataclasses.dataclass(slots=True)
class User:
    name: str
    display_name: str | None = None
    avatar: str | None = None
    permalink: str | None = None


# ------------------------------ Reference Data ------------------------------ #


@dataclasses.dataclass(frozen=True, slots=True)
class ReferenceDescriptor:
    """One place in content where an asset address appeared.

    Instances are hashable so that the per-address sets in the reference index
    collapse structurally equal descriptors.
    """

    source_type: str
    source_name: str
    source_title: str | None = None
    source_url: str | None = None
    deleted: bool = False
    reference_type: str | None = None
    setting_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "sourceType": self.source_type,
            "sourceName": self.source_name,
            "sourceTitle": self.source_title,
            "sourceUrl": self.source_url,
            "deleted": self.deleted,
            "referenceType": self.reference_type,
            "settingName": self.setting_name,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReferenceDescriptor":
        return cls(
            source_type=data.get("sourceType") or "",
            source_name=data.get("sourceName") or "",
            source_title=data.get("sourceTitle"),
            source_url=data.get("sourceUrl"),
            deleted=bool(data.get("deleted")),
            reference_type=data.get("referenceType"),
            setting_name=data.get("settingName"),
        )


@dataclasses.dataclass(slots=True)
class AssetReferenceRecord:
    name: str
    attachment_name: str
    reference_count: int = 0
    references: list[ReferenceDescriptor] = dataclasses.field(default_factory=list)
    last_scanned_at: str | None = None
    pending_delete: bool = False
    version: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "attachmentName": self.attachment_name,
            "referenceCount": self.reference_count,
            "references": [r.to_dict() for r in self.references],
            "lastScannedAt": self.last_scanned_at,
            "pendingDelete": self.pending_delete,
        }


@dataclasses.dataclass(slots=True)
class DuplicateGroup:
    name: str
    digest: str
    file_size: int = 0
    file_count: int = 0
    savable_size: int = 0
    recommended_keep: str | None = None
    member_asset_ids: list[str] = dataclasses.field(default_factory=list)
    pending_delete: bool = False
    version: int = 0


# ------------------------------- Scan Status -------------------------------- #


@dataclasses.dataclass(slots=True)
class ScanStatus:
    kind: str = ""
    phase: str = PHASE_NONE
    start_time: str | None = None
    last_scan_time: str | None = None
    error_message: str | None = None
    version: int = 0

    STAT_FIELDS: ClassVar[tuple[str, ...]] = ()

    def payload(self) -> dict[str, Any]:
        data = {
            "phase": self.phase,
            "startTime": self.start_time,
            "lastScanTime": self.last_scan_time,
            "errorMessage": self.error_message,
        }
        for attr in self.STAT_FIELDS:
            data[_camel(attr)] = getattr(self, attr)
        return data

    def load_payload(self, data: dict[str, Any]) -> None:
        self.phase = data.get("phase") or PHASE_NONE
        self.start_time = data.get("startTime")
        self.last_scan_time = data.get("lastScanTime")
        self.error_message = data.get("errorMessage")
        for attr in self.STAT_FIELDS:
            setattr(self, attr, int(data.get(_camel(attr)) or 0))

    def reset(self) -> None:
        self.phase = PHASE_NONE
        self.start_time = None
        self.last_scan_time = None
        self.error_message = None
        for attr in self.STAT_FIELDS:
            setattr(self, attr, 0)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, **self.payload()}


@dataclasses.dataclass(slots=True)
class ReferenceScanStatus(ScanStatus):
    kind: str = SCAN_KIND_REFERENCE
    total_assets: int = 0
    referenced_count: int = 0
    unreferenced_count: int = 0
    unreferenced_size: int = 0

    STAT_FIELDS = ("total_assets", "referenced_count", "unreferenced_count", "unreferenced_size")


@dataclasses.dataclass(slots=True)
class DuplicateScanStatus(ScanStatus):
    kind: str = SCAN_KIND_DUPLICATE
    scanned_count: int = 0
    total_count: int = 0
    duplicate_group_count: int = 0
    duplicate_file_count: int = 0
    savable_size: int = 0

    STAT_FIELDS = (
        "scanned_count",
        "total_count",
        "duplicate_group_count",
        "duplicate_file_count",
        "savable_size",
    )


STATUS_TYPES: dict[str, type[ScanStatus]] = {
    SCAN_KIND_REFERENCE: ReferenceScanStatus,
    SCAN_KIND_DUPLICATE: DuplicateScanStatus,
}


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


# ------------------------------- View Models -------------------------------- #


@dataclasses.dataclass(slots=True)
class Page:
    page: int
    size: int
    total: int
    items: list[Any]

    @property
    def total_pages(self) -> int:
        if self.size <= 0:
            return 0
        return (self.total + self.size - 1) // self.size

    def to_dict(self) -> dict[str, Any]:
        return {
            "page": self.page,
            "size": self.size,
            "total": self.total,
            "totalPages": self.total_pages,
            "items": [i.to_dict() if hasattr(i, "to_dict") else i for i in self.items],
        }


def paginate(items: list[Any], page: int, size: int) -> Page:
    total = len(items)
    start = (page - 1) * size
    end = min(start + size, total)
    chunk = items[start:end] if start < total else []
    return Page(page=page, size=size, total=total, items=chunk)


@dataclasses.dataclass(slots=True)
class AssetReferenceView:
    attachment_name: str
    display_name: str | None
    media_type: str | None
    size: int
    permalink: str | None
    policy_name: str | None
    group_name: str | None
    reference_count: int
    references: list[ReferenceDescriptor]

    @classmethod
    def build(cls, asset: Asset, record: AssetReferenceRecord | None) -> "AssetReferenceView":
        return cls(
            attachment_name=asset.name,
            display_name=asset.display_name,
            media_type=asset.media_type,
            size=asset.size or 0,
            permalink=asset.permalink,
            policy_name=asset.policy_name,
            group_name=asset.group_name,
            reference_count=record.reference_count if record else 0,
            references=list(record.references) if record else [],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "attachmentName": self.attachment_name,
            "displayName": self.display_name,
            "mediaType": self.media_type,
            "size": self.size,
            "permalink": self.permalink,
            "policyName": self.policy_name,
            "groupName": self.group_name,
            "referenceCount": self.reference_count,
            "references": [r.to_dict() for r in self.references],
        }


@dataclasses.dataclass(slots=True)
class DuplicateFileView:
    attachment_name: str
    display_name: str | None = None
    media_type: str | None = None
    permalink: str | None = None
    upload_time: dt.datetime | None = None
    group_name: str | None = None
    reference_count: int = -1
    recommended: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "attachmentName": self.attachment_name,
            "displayName": self.display_name,
            "mediaType": self.media_type,
            "permalink": self.permalink,
            "uploadTime": to_iso(self.upload_time),
            "groupName": self.group_name,
            "referenceCount": self.reference_count,
            "recommended": self.recommended,
        }


@dataclasses.dataclass(slots=True)
class DuplicateGroupView:
    digest: str
    file_size: int
    file_count: int
    savable_size: int
    recommended_keep: str | None
    preview_url: str | None
    media_type: str | None
    files: list[DuplicateFileView]

    def to_dict(self) -> dict[str, Any]:
        return {
            "md5Hash": self.digest,
            "fileSize": self.file_size,
            "fileCount": self.file_count,
            "savableSize": self.savable_size,
            "recommendedKeep": self.recommended_keep,
            "previewUrl": self.preview_url,
            "mediaType": self.media_type,
            "files": [f.to_dict() for f in self.files],
        }
