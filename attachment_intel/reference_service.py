"""Reference scan: which content entities point at each asset."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from typing import Any

from attachment_intel.common import (
    SCAN_KIND_REFERENCE,
    RecordNotFound,
    decode_url,
    now_utc_iso,
)
from attachment_intel.content_traversal import ReferenceIndex, build_index
from attachment_intel.digest import LinkResolver
from attachment_intel.models import (
    Asset,
    AssetReferenceRecord,
    AssetReferenceView,
    Page,
    ReferenceDescriptor,
    ScanStatus,
    paginate,
)
from attachment_intel.platform import KIND_DOC_TREE, ContentPlatform
from attachment_intel.scan_status import ScanGate
from attachment_intel.settings import AnalysisSettings, SettingsProvider
from attachment_intel.store import AttachmentStore
from attachment_intel.url_extractor import extract_path, is_full_url

LOGGER = logging.getLogger("attachment_intel.references")

FILTERS = ("all", "referenced", "unreferenced")
DEFAULT_PAGE_SIZE = 20

COMMENT_SUBJECT_KINDS = ("Post", "Page", "SinglePage", "Moment", KIND_DOC_TREE)
SUBJECT_KINDS = COMMENT_SUBJECT_KINDS + ("Comment", "Doc")


@dataclasses.dataclass(slots=True)
class SubjectInfo:
    title: str | None
    url: str | None

    def to_dict(self) -> dict[str, Any]:
        return {"title": self.title, "url": self.url}


def match_asset(permalink: str | None, index: ReferenceIndex, resolver: LinkResolver) -> set[ReferenceDescriptor]:
    """Union of every descriptor whose extracted address denotes ``permalink``."""
    if not permalink or not permalink.strip():
        return set()
    decoded = decode_url(permalink)
    sources = set(index.lookup_full(decoded))
    if not is_full_url(decoded):
        sources |= index.lookup_full(resolver.resolve(decoded))
    sources |= index.lookup_relative(extract_path(decoded))
    return sources


def _sort_key(field: str):
    if field == "referenceCount":
        return lambda v: v.reference_count
    if field == "size":
        return lambda v: v.size
    if field == "displayName":
        return lambda v: (v.display_name or "").lower()
    return lambda v: v.attachment_name


def sort_views(views: list[AssetReferenceView], sort: str | None) -> list[AssetReferenceView]:
    """Sort by ``"field,dir"``; unnamed display names always sort last."""
    if not sort or not sort.strip():
        return views
    parts = sort.split(",")
    field = parts[0].strip()
    desc = len(parts) > 1 and parts[1].strip().lower() == "desc"
    key = _sort_key(field)
    if field == "displayName":
        named = sorted((v for v in views if v.display_name is not None), key=key, reverse=desc)
        return named + [v for v in views if v.display_name is None]
    return sorted(views, key=key, reverse=desc)


class ReferenceService:
    def __init__(
        self,
        store: AttachmentStore,
        platform: ContentPlatform,
        settings: SettingsProvider,
    ):
        self.store = store
        self.platform = platform
        self.settings = settings
        self.gate = ScanGate(store, SCAN_KIND_REFERENCE)
        self._tasks: set[asyncio.Task[Any]] = set()

    # --------------------------------- Scan ---------------------------------- #

    async def start_reference_scan(self) -> ScanStatus:
        settings = self.settings.load()
        status = self.gate.begin(settings.scan_timeout_minutes)
        task = asyncio.create_task(self._run_scan(settings))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return status

    async def wait_for_scan(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    async def _run_scan(self, settings: AnalysisSettings) -> None:
        try:
            await self.perform_scan(settings)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.exception("scan_failed kind=%s", SCAN_KIND_REFERENCE)
            try:
                self.gate.fail(str(exc) or exc.__class__.__name__)
            except Exception:  # pylint: disable=broad-except
                LOGGER.exception("scan_error_not_recorded kind=%s", SCAN_KIND_REFERENCE)

    async def perform_scan(self, settings: AnalysisSettings) -> ScanStatus:
        started = time.time()
        scan_ts = int(started * 1000)

        marked = await asyncio.to_thread(self.store.mark_references_pending)
        deleted = await asyncio.to_thread(self.store.delete_pending_references)
        LOGGER.info("references_cleared marked=%s deleted=%s", marked, deleted)

        index = await build_index(self.platform, settings.content_kinds, settings.content_fetch_timeout_seconds)
        resolver = LinkResolver(settings.site_url)

        records: list[AssetReferenceRecord] = []
        referenced = 0
        unreferenced_size = 0
        scanned_at = now_utc_iso()
        for asset in await self.platform.list_assets():
            if settings.is_excluded(asset.group_name, asset.policy_name):
                continue
            sources = match_asset(asset.permalink, index, resolver)
            if sources:
                referenced += 1
            else:
                unreferenced_size += asset.size or 0
            records.append(
                AssetReferenceRecord(
                    name=f"ref-{asset.name}-{scan_ts}",
                    attachment_name=asset.name,
                    reference_count=len(sources),
                    references=sorted(sources, key=lambda d: (d.source_type, d.source_name, d.reference_type or "")),
                    last_scanned_at=scanned_at,
                )
            )
        total = await asyncio.to_thread(self.store.insert_reference_batch, records)

        def stats(status: ScanStatus) -> None:
            status.total_assets = total
            status.referenced_count = referenced
            status.unreferenced_count = total - referenced
            status.unreferenced_size = unreferenced_size

        status = self.gate.complete(stats)
        LOGGER.info(
            "scan_complete kind=%s total=%s referenced=%s unreferenced=%s unreferenced_bytes=%s duration_sec=%.2f",
            SCAN_KIND_REFERENCE, total, referenced, total - referenced, unreferenced_size, time.time() - started,
        )
        return status

    def get_reference_scan_status(self) -> ScanStatus:
        return self.store.get_or_create_status(SCAN_KIND_REFERENCE)

    # ------------------------------- Records --------------------------------- #

    def _included(self, assets: list[Asset]) -> list[Asset]:
        settings = self.settings.load()
        return [a for a in assets if not settings.is_excluded(a.group_name, a.policy_name)]

    async def list_asset_references(
        self,
        filter: str | None = "all",  # pylint: disable=redefined-builtin
        keyword: str | None = None,
        page: int = 1,
        size: int = DEFAULT_PAGE_SIZE,
        sort: str | None = None,
    ) -> Page:
        records = {r.attachment_name: r for r in self.store.list_references()}
        views = [AssetReferenceView.build(a, records.get(a.name)) for a in self._included(await self.platform.list_assets())]

        if filter == "referenced":
            views = [v for v in views if v.reference_count > 0]
        elif filter == "unreferenced":
            views = [v for v in views if v.reference_count == 0]

        if keyword and keyword.strip():
            needle = keyword.lower()
            views = [v for v in views if v.display_name and needle in v.display_name.lower()]

        views = sort_views(views, sort)
        return paginate(views, max(page, 1), max(size, 1))

    async def get_asset_reference(self, attachment_name: str) -> AssetReferenceView:
        asset = await self.platform.get_asset(attachment_name)
        if asset is None:
            raise RecordNotFound(f"asset {attachment_name} not found")
        return AssetReferenceView.build(asset, self.store.find_reference(attachment_name))

    async def update_reference_descriptor_title(
        self,
        attachment_name: str,
        source_name: str,
        title: str | None = None,
        url: str | None = None,
    ) -> AssetReferenceView:
        """Cache a lazily resolved title/url on the first descriptor from ``source_name``."""
        record = self.store.find_reference(attachment_name)
        if record is None:
            raise RecordNotFound(f"no reference record for {attachment_name}")

        for i, descriptor in enumerate(record.references):
            if descriptor.source_name != source_name:
                continue
            changes: dict[str, Any] = {}
            if title is not None:
                changes["source_title"] = title
            if url is not None:
                changes["source_url"] = url
            if changes:
                record.references[i] = dataclasses.replace(descriptor, **changes)
                self.store.update_reference(record)
                LOGGER.info("descriptor_updated asset=%s source=%s", attachment_name, source_name)
            break

        return await self.get_asset_reference(attachment_name)

    def clear_reference_data(self) -> ScanStatus:
        deleted = self.store.delete_all_references()
        status = self.gate.reset()
        LOGGER.info("references_cleared_all deleted=%s", deleted)
        return status

    # ---------------------------- Lazy resolution ---------------------------- #

    async def get_setting_group_label(self, setting_name: str | None, group_key: str | None) -> str:
        if not setting_name or not group_key:
            return group_key or ""
        try:
            forms = await self.platform.fetch_setting_forms(setting_name)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.debug("setting_label_failed setting=%s group=%s error=%s", setting_name, group_key, exc)
            return group_key
        for form in forms or []:
            if form.get("group") == group_key:
                return form.get("label") or group_key
        return group_key

    async def resolve_subject(self, kind: str, name: str) -> SubjectInfo:
        """Human title and link for a ``kind``/``name`` pair stored on a descriptor."""
        if kind == "Post":
            post = await self.platform.get_post(name)
            return SubjectInfo(post.title, f"/archives/{post.slug}") if post else SubjectInfo(name, None)
        if kind in ("Page", "SinglePage"):
            page = await self.platform.get_page(name)
            return SubjectInfo(page.title, f"/{page.slug}") if page else SubjectInfo(name, None)
        if kind == "Moment":
            return SubjectInfo("Moment", "/moments")
        if kind == "Comment":
            comment = await self.platform.get_comment(name)
            if comment is None:
                return SubjectInfo(name, None)
            if comment.subject_kind in COMMENT_SUBJECT_KINDS and comment.subject_name:
                return await self.resolve_subject(comment.subject_kind, comment.subject_name)
            return SubjectInfo("Comment", None)
        if kind == "Doc":
            return await self._resolve_doc_tree(lambda ext: (ext.get("spec") or {}).get("docName") == name, name)
        if kind == KIND_DOC_TREE:
            return await self._resolve_doc_tree(lambda ext: (ext.get("metadata") or {}).get("name") == name, name)
        return SubjectInfo(name, None)

    async def _resolve_doc_tree(self, predicate, fallback: str) -> SubjectInfo:
        if not self.platform.has_kind(KIND_DOC_TREE):
            LOGGER.debug("doc_tree_missing fallback=%s", fallback)
            return SubjectInfo(fallback, None)
        for ext in await self.platform.list_extensions(KIND_DOC_TREE):
            if not predicate(ext):
                continue
            spec = ext.get("spec") or {}
            title = spec.get("title") or ""
            slug = spec.get("slug") or ""
            if title and slug:
                display = f"{title} - {slug}"
            else:
                display = title or fallback
            return SubjectInfo(display, (ext.get("status") or {}).get("permalink"))
        return SubjectInfo(fallback, None)

    async def resolve_source(self, descriptor: ReferenceDescriptor) -> SubjectInfo:
        """Resolve a descriptor whose title is a ``Kind:name`` placeholder."""
        title = descriptor.source_title or ""
        kind, sep, name = title.partition(":")
        if sep and name and kind in SUBJECT_KINDS:
            return await self.resolve_subject(kind, name)
        return SubjectInfo(descriptor.source_title, descriptor.source_url)
