"""Duplicate detection: group locally stored assets by content digest."""

from __future__ import annotations

import asyncio
import dataclasses
import datetime as dt
import logging
import time
import uuid
from typing import Any, Callable

import httpx

from attachment_intel.common import (
    PHASE_SCANNING,
    SCAN_KIND_DUPLICATE,
    SCAN_KIND_REFERENCE,
)
from attachment_intel.digest import AssetFetcher, LinkResolver, digest_assets
from attachment_intel.models import (
    Asset,
    DuplicateFileView,
    DuplicateGroup,
    DuplicateGroupView,
    Page,
    ScanStatus,
)
from attachment_intel.platform import ContentPlatform
from attachment_intel.scan_status import ScanGate, ScanProgress
from attachment_intel.settings import AnalysisSettings, SettingsProvider
from attachment_intel.store import AttachmentStore

LOGGER = logging.getLogger("attachment_intel.duplicates")

DEFAULT_PAGE_SIZE = 20


@dataclasses.dataclass(slots=True)
class DigestedAsset:
    name: str
    size: int
    upload_time: dt.datetime | None
    ref_count: int = 0


def recommend_keep(members: list[DigestedAsset], have_references: bool) -> str | None:
    """Most referenced member, earliest upload on ties; the first member without reference data."""
    if not members:
        return None
    if not have_references:
        return members[0].name

    def key(item: tuple[int, DigestedAsset]) -> tuple[int, float, int]:
        position, member = item
        uploaded = member.upload_time.timestamp() if member.upload_time else float("inf")
        return (-member.ref_count, uploaded, position)

    return min(enumerate(members), key=key)[1].name


def build_groups(
    digests: dict[str, str],
    assets: list[Asset],
    ref_counts: dict[str, int],
    have_references: bool,
    scan_id: str,
) -> list[DuplicateGroup]:
    """Digest buckets with two or more members, members kept in catalog order."""
    buckets: dict[str, list[DigestedAsset]] = {}
    for asset in assets:
        digest = digests.get(asset.name)
        if digest is None:
            continue
        buckets.setdefault(digest, []).append(
            DigestedAsset(asset.name, asset.size or 0, asset.created_at, ref_counts.get(asset.name, 0))
        )

    groups = []
    for digest, members in buckets.items():
        if len(members) < 2:
            continue
        size = members[0].size
        groups.append(
            DuplicateGroup(
                name=f"dup-{digest[:8]}-{scan_id}",
                digest=digest,
                file_size=size,
                file_count=len(members),
                savable_size=size * (len(members) - 1),
                recommended_keep=recommend_keep(members, have_references),
                member_asset_ids=[m.name for m in members],
            )
        )
    return groups


class DuplicateService:
    def __init__(
        self,
        store: AttachmentStore,
        platform: ContentPlatform,
        settings: SettingsProvider,
        transport: httpx.BaseTransport | None = None,
    ):
        self.store = store
        self.platform = platform
        self.settings = settings
        self.transport = transport
        self.gate = ScanGate(store, SCAN_KIND_DUPLICATE)
        self.progress = ScanProgress()
        self._tasks: set[asyncio.Task[Any]] = set()

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # --------------------------------- Scan ---------------------------------- #

    async def start_duplicate_scan(self) -> ScanStatus:
        settings = self.settings.load()
        status = self.gate.begin(settings.scan_timeout_minutes)
        self._spawn(self._run_scan(settings))
        return self._with_progress(status)

    async def wait_for_scan(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    async def _run_scan(self, settings: AnalysisSettings) -> None:
        try:
            await self.perform_scan(settings)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.exception("scan_failed kind=%s", SCAN_KIND_DUPLICATE)
            self.progress.reset()
            try:
                self.gate.fail(str(exc) or exc.__class__.__name__)
            except Exception:  # pylint: disable=broad-except
                LOGGER.exception("scan_error_not_recorded kind=%s", SCAN_KIND_DUPLICATE)

    async def perform_scan(self, settings: AnalysisSettings) -> ScanStatus:
        started = time.time()
        scan_id = uuid.uuid4().hex[:12]
        self.progress.reset()

        marked = await asyncio.to_thread(self.store.mark_groups_pending)
        LOGGER.info("groups_marked_pending count=%s", marked)

        local = {p.name for p in await self.platform.list_policies() if p.is_local}
        if not local:
            LOGGER.info("scan_skipped kind=%s reason=no_local_policy", SCAN_KIND_DUPLICATE)
            status = self._complete(0, 0, 0, 0)
            self._spawn(self._purge_pending())
            return status

        assets = [a for a in await self.platform.list_assets() if a.policy_name in local]
        self.progress.set_total(len(assets))
        LOGGER.info(
            "digest_start assets=%s concurrency=%s policies=%s",
            len(assets), settings.digest_concurrency, ",".join(sorted(local)),
        )

        groups: list[DuplicateGroup] = []
        if assets:
            with AssetFetcher(LinkResolver(settings.site_url), transport=self.transport) as fetcher:
                digests = await digest_assets(
                    assets, fetcher, settings.digest_concurrency, settings.digest_timeout_seconds, self.progress
                )
            LOGGER.info("digest_done digested=%s scanned=%s total=%s", len(digests), self.progress.scanned, len(assets))

            ref_counts, have_references = self._reference_counts()
            groups = build_groups(digests, assets, ref_counts, have_references, scan_id)
            await asyncio.to_thread(self.store.insert_group_batch, groups)

        status = self._complete(
            len(assets),
            len(groups),
            sum(g.file_count - 1 for g in groups),
            sum(g.savable_size for g in groups),
        )
        LOGGER.info(
            "scan_complete kind=%s total=%s groups=%s savable_bytes=%s duration_sec=%.2f",
            SCAN_KIND_DUPLICATE, len(assets), len(groups), status.savable_size, time.time() - started,
        )
        self._spawn(self._purge_pending())
        return status

    def _complete(self, total: int, group_count: int, file_count: int, savable: int) -> ScanStatus:
        def stats(status: ScanStatus) -> None:
            status.scanned_count = total
            status.total_count = total
            status.duplicate_group_count = group_count
            status.duplicate_file_count = file_count
            status.savable_size = savable

        status = self.gate.complete(stats)
        self.progress.reset()
        return status

    async def _purge_pending(self) -> None:
        try:
            deleted = await asyncio.to_thread(self.store.delete_pending_groups)
            LOGGER.info("groups_purged count=%s", deleted)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.warning("groups_purge_failed error=%s", exc)

    def _reference_counts(self) -> tuple[dict[str, int], bool]:
        ref_status = self.store.get_status(SCAN_KIND_REFERENCE)
        have_references = bool(ref_status and ref_status.last_scan_time)
        counts = {r.attachment_name: r.reference_count for r in self.store.list_references()}
        return counts, have_references

    def _with_progress(self, status: ScanStatus) -> ScanStatus:
        if status.phase == PHASE_SCANNING:
            status.scanned_count = self.progress.scanned
            status.total_count = self.progress.total
        return status

    def get_duplicate_scan_status(self) -> ScanStatus:
        return self._with_progress(self.store.get_or_create_status(SCAN_KIND_DUPLICATE))

    # ------------------------------- Listing --------------------------------- #

    async def list_duplicate_groups(self, page: int = 1, size: int = DEFAULT_PAGE_SIZE) -> Page:
        page, size = max(page, 1), max(size, 1)
        groups = sorted(self.store.list_groups(), key=lambda g: g.savable_size, reverse=True)
        total = len(groups)
        start = (page - 1) * size
        chunk = groups[start:start + size] if start < total else []

        wanted = {name for g in chunk for name in g.member_asset_ids}
        assets = {a.name: a for a in await self.platform.list_assets() if a.name in wanted}
        ref_counts, have_references = self._reference_counts()
        count_for: Callable[[str], int] = (
            (lambda name: ref_counts.get(name, 0)) if have_references else (lambda name: -1)
        )

        return Page(page=page, size=size, total=total, items=[self._view(g, assets, count_for) for g in chunk])

    @staticmethod
    def _view(group: DuplicateGroup, assets: dict[str, Asset], count_for: Callable[[str], int]) -> DuplicateGroupView:
        preview_url = media_type = None
        files = []
        for name in group.member_asset_ids:
            asset = assets.get(name)
            view = DuplicateFileView(attachment_name=name, recommended=name == group.recommended_keep)
            if asset is None:
                view.display_name = name
                view.reference_count = count_for(name)
            else:
                view.display_name = asset.display_name
                view.media_type = asset.media_type
                view.permalink = asset.permalink
                view.upload_time = asset.created_at
                view.group_name = asset.group_name
                view.reference_count = count_for(name)
                if preview_url is None and asset.permalink:
                    preview_url = asset.permalink
                    media_type = asset.media_type
            files.append(view)
        return DuplicateGroupView(
            digest=group.digest,
            file_size=group.file_size,
            file_count=group.file_count,
            savable_size=group.savable_size,
            recommended_keep=group.recommended_keep,
            preview_url=preview_url,
            media_type=media_type,
            files=files,
        )

    def clear_duplicate_data(self) -> ScanStatus:
        deleted = self.store.delete_all_groups()
        self.progress.reset()
        status = self.gate.reset()
        LOGGER.info("groups_cleared_all deleted=%s", deleted)
        return status
