"""Tests for the SQLite store and its version-checked updates."""

from __future__ import annotations

import sqlite3

import pytest

from attachment_intel.common import (
    PHASE_NONE,
    PHASE_SCANNING,
    SCAN_KIND_DUPLICATE,
    SCAN_KIND_REFERENCE,
    WriteConflict,
)
from attachment_intel.models import (
    AssetReferenceRecord,
    DuplicateGroup,
    DuplicateScanStatus,
    ReferenceDescriptor,
    ReferenceScanStatus,
)
from attachment_intel.store import AttachmentStore


def _record(name: str, attachment: str, count: int = 0) -> AssetReferenceRecord:
    refs = [ReferenceDescriptor("Post", f"post-{i}", "Title", "/archives/x", False, "content") for i in range(count)]
    return AssetReferenceRecord(name=name, attachment_name=attachment, reference_count=count, references=refs)


class TestScanStatus:
    """Status singletons."""

    def test_created_lazily(self, store: AttachmentStore):
        assert store.get_status(SCAN_KIND_REFERENCE) is None
        status = store.get_or_create_status(SCAN_KIND_REFERENCE)
        assert isinstance(status, ReferenceScanStatus)
        assert status.phase == PHASE_NONE
        assert status.version == 1
        assert isinstance(store.get_or_create_status(SCAN_KIND_DUPLICATE), DuplicateScanStatus)

    def test_stale_update_conflicts(self, store: AttachmentStore):
        first = store.get_or_create_status(SCAN_KIND_REFERENCE)
        second = store.get_status(SCAN_KIND_REFERENCE)

        first.phase = PHASE_SCANNING
        store.update_status(first)
        assert first.version == 2

        second.total_assets = 7
        with pytest.raises(WriteConflict):
            store.update_status(second)

        current = store.get_status(SCAN_KIND_REFERENCE)
        assert current.phase == PHASE_SCANNING
        assert current.total_assets == 0

    def test_stats_round_trip(self, store: AttachmentStore):
        status = store.get_or_create_status(SCAN_KIND_DUPLICATE)
        status.savable_size = 2000
        status.duplicate_group_count = 1
        store.update_status(status)

        loaded = store.get_status(SCAN_KIND_DUPLICATE)
        assert loaded.savable_size == 2000
        assert loaded.to_dict()["duplicateGroupCount"] == 1

    def test_persists_across_reopen(self, tmp_path):
        path = tmp_path / "db.sqlite"
        first = AttachmentStore(path)
        status = first.get_or_create_status(SCAN_KIND_REFERENCE)
        status.phase = PHASE_SCANNING
        first.update_status(status)
        first.close()

        second = AttachmentStore(path)
        try:
            assert second.get_status(SCAN_KIND_REFERENCE).phase == PHASE_SCANNING
        finally:
            second.close()


class TestReferenceRecords:
    """Reference record storage and tombstoning."""

    def test_find_returns_newest_live_record(self, store: AttachmentStore):
        store.create_reference(_record("ref-a-1", "a", 1))
        store.create_reference(_record("ref-a-2", "a", 2))
        found = store.find_reference("a")
        assert found.name == "ref-a-2"
        assert found.reference_count == 2
        assert found.references[0].source_type == "Post"

    def test_pending_records_hidden_then_purged(self, store: AttachmentStore):
        store.create_reference(_record("ref-a-1", "a", 1))
        store.create_reference(_record("ref-b-1", "b"))

        assert store.mark_references_pending() == 2
        assert store.find_reference("a") is None
        assert store.list_references() == []
        assert len(store.list_references(include_pending=True)) == 2

        assert store.delete_pending_references() == 2
        assert store.list_references(include_pending=True) == []

    def test_batch_insert(self, store: AttachmentStore):
        records = [_record("ref-a-1", "a", 1), _record("ref-b-1", "b"), _record("ref-c-1", "c", 2)]
        assert store.insert_reference_batch(records) == 3
        assert [r.attachment_name for r in store.list_references()] == ["a", "b", "c"]
        assert all(r.version == 1 for r in records)

    def test_failed_batch_leaves_nothing_behind(self, store: AttachmentStore):
        with pytest.raises(sqlite3.IntegrityError):
            store.insert_reference_batch([_record("ref-a-1", "a"), _record("ref-a-1", "a")])
        assert store.list_references(include_pending=True) == []

    def test_update_after_tombstone_conflicts(self, store: AttachmentStore):
        record = store.create_reference(_record("ref-a-1", "a", 1))
        store.mark_references_pending()
        with pytest.raises(WriteConflict):
            store.update_reference(record)

    def test_update_bumps_version(self, store: AttachmentStore):
        record = store.create_reference(_record("ref-a-1", "a", 1))
        record.references = []
        record.reference_count = 0
        store.update_reference(record)
        assert record.version == 2
        assert store.find_reference("a").reference_count == 0


class TestDuplicateGroups:
    """Duplicate group storage."""

    def test_listed_by_savable_size(self, store: AttachmentStore):
        store.create_group(DuplicateGroup("dup-small", "aa", 10, 2, 10, "x", ["x", "y"]))
        store.create_group(DuplicateGroup("dup-big", "bb", 500, 3, 1000, "p", ["p", "q", "r"]))
        groups = store.list_groups()
        assert [g.name for g in groups] == ["dup-big", "dup-small"]
        assert groups[0].member_asset_ids == ["p", "q", "r"]

    def test_pending_groups_purged(self, store: AttachmentStore):
        store.create_group(DuplicateGroup("dup-1", "aa", 10, 2, 10, "x", ["x", "y"]))
        store.mark_groups_pending()
        store.create_group(DuplicateGroup("dup-2", "aa", 10, 2, 10, "x", ["x", "y"]))

        assert [g.name for g in store.list_groups()] == ["dup-2"]
        assert store.delete_pending_groups() == 1
        assert [g.name for g in store.list_groups(include_pending=True)] == ["dup-2"]

    def test_batch_insert(self, store: AttachmentStore):
        groups = [
            DuplicateGroup("dup-1", "aa", 10, 2, 10, "x", ["x", "y"]),
            DuplicateGroup("dup-2", "bb", 20, 2, 20, "p", ["p", "q"]),
        ]
        assert store.insert_group_batch(groups) == 2
        assert [g.name for g in store.list_groups()] == ["dup-2", "dup-1"]
        assert store.insert_group_batch([]) == 0

    def test_delete_all(self, store: AttachmentStore):
        store.create_group(DuplicateGroup("dup-1", "aa", 10, 2, 10, "x", ["x", "y"]))
        assert store.delete_all_groups() == 1
        assert store.list_groups() == []
