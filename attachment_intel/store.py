"""SQLite persistence for scan status singletons, reference records and duplicate groups."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any

from attachment_intel.common import WriteConflict, ensure_parent
from attachment_intel.models import (
    STATUS_TYPES,
    AssetReferenceRecord,
    DuplicateGroup,
    ReferenceDescriptor,
    ScanStatus,
)

LOGGER = logging.getLogger("attachment_intel.store")

INSERT_REFERENCE_SQL = """
INSERT INTO attachment_references(
  name, attachment_name, reference_count, references_json,
  last_scanned_at, pending_delete, version
) VALUES(?, ?, ?, ?, ?, ?, 1)
"""

INSERT_GROUP_SQL = """
INSERT INTO duplicate_groups(
  name, digest, file_size, file_count, savable_size,
  recommended_keep, members_json, pending_delete, version
) VALUES(?, ?, ?, ?, ?, ?, ?, ?, 1)
"""


class AttachmentStore:
    """Whole-record storage with version-checked updates.

    Every row carries a ``version``; updates only apply when the caller's copy
    is current and raise :class:`WriteConflict` otherwise.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        ensure_parent(self.db_path)
        # Shared between the event loop and the HTTP worker threads.
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA synchronous=NORMAL;")
        self.conn.execute("PRAGMA temp_store=MEMORY;")
        self._lock = threading.RLock()
        self._init_schema()

    def _init_schema(self) -> None:
        self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS scan_status (
              kind TEXT PRIMARY KEY,
              payload_json TEXT NOT NULL,
              version INTEGER NOT NULL DEFAULT 1
            );

            CREATE TABLE IF NOT EXISTS attachment_references (
              name TEXT PRIMARY KEY,
              attachment_name TEXT NOT NULL,
              reference_count INTEGER NOT NULL DEFAULT 0,
              references_json TEXT NOT NULL,
              last_scanned_at TEXT,
              pending_delete INTEGER NOT NULL DEFAULT 0,
              version INTEGER NOT NULL DEFAULT 1
            );

            CREATE INDEX IF NOT EXISTS idx_refs_attachment ON attachment_references(attachment_name);

            CREATE TABLE IF NOT EXISTS duplicate_groups (
              name TEXT PRIMARY KEY,
              digest TEXT NOT NULL,
              file_size INTEGER NOT NULL DEFAULT 0,
              file_count INTEGER NOT NULL DEFAULT 0,
              savable_size INTEGER NOT NULL DEFAULT 0,
              recommended_keep TEXT,
              members_json TEXT NOT NULL,
              pending_delete INTEGER NOT NULL DEFAULT 0,
              version INTEGER NOT NULL DEFAULT 1
            );

            CREATE INDEX IF NOT EXISTS idx_dups_digest ON duplicate_groups(digest);
            """
        )
        self.conn.commit()

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    def _execute(self, sql: str, params: tuple[Any, ...] = ()) -> sqlite3.Cursor:
        with self._lock:
            cur = self.conn.execute(sql, params)
            self.conn.commit()
            return cur

    def _executemany(self, sql: str, rows: list[tuple[Any, ...]]) -> None:
        with self._lock:
            try:
                self.conn.executemany(sql, rows)
                self.conn.commit()
            except sqlite3.Error:
                self.conn.rollback()
                raise

    def _fetchall(self, sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    def _fetchone(self, sql: str, params: tuple[Any, ...] = ()) -> sqlite3.Row | None:
        with self._lock:
            return self.conn.execute(sql, params).fetchone()

    # ------------------------------ Scan status ------------------------------ #

    def get_status(self, kind: str) -> ScanStatus | None:
        row = self._fetchone("SELECT * FROM scan_status WHERE kind = ?", (kind,))
        if not row:
            return None
        status = STATUS_TYPES[kind]()
        status.load_payload(json.loads(row["payload_json"]))
        status.version = int(row["version"])
        return status

    def create_status(self, status: ScanStatus) -> ScanStatus:
        try:
            self._execute(
                "INSERT INTO scan_status(kind, payload_json, version) VALUES(?, ?, 1)",
                (status.kind, json.dumps(status.payload())),
            )
        except sqlite3.IntegrityError as exc:
            raise WriteConflict(f"status {status.kind} already exists") from exc
        status.version = 1
        return status

    def get_or_create_status(self, kind: str) -> ScanStatus:
        status = self.get_status(kind)
        if status is not None:
            return status
        try:
            return self.create_status(STATUS_TYPES[kind]())
        except WriteConflict:
            # Another writer created it first.
            existing = self.get_status(kind)
            if existing is None:
                raise
            return existing

    def update_status(self, status: ScanStatus) -> ScanStatus:
        cur = self._execute(
            "UPDATE scan_status SET payload_json = ?, version = version + 1 WHERE kind = ? AND version = ?",
            (json.dumps(status.payload()), status.kind, status.version),
        )
        if cur.rowcount == 0:
            raise WriteConflict(f"status {status.kind} changed since version {status.version}")
        status.version += 1
        return status

    # --------------------------- Reference records --------------------------- #

    @staticmethod
    def _reference_from_row(row: sqlite3.Row) -> AssetReferenceRecord:
        return AssetReferenceRecord(
            name=row["name"],
            attachment_name=row["attachment_name"],
            reference_count=int(row["reference_count"]),
            references=[ReferenceDescriptor.from_dict(r) for r in json.loads(row["references_json"])],
            last_scanned_at=row["last_scanned_at"],
            pending_delete=bool(row["pending_delete"]),
            version=int(row["version"]),
        )

    @staticmethod
    def _reference_row(record: AssetReferenceRecord) -> tuple[Any, ...]:
        return (
            record.name,
            record.attachment_name,
            record.reference_count,
            json.dumps([r.to_dict() for r in record.references]),
            record.last_scanned_at,
            int(record.pending_delete),
        )

    def create_reference(self, record: AssetReferenceRecord) -> AssetReferenceRecord:
        self._execute(INSERT_REFERENCE_SQL, self._reference_row(record))
        record.version = 1
        return record

    def insert_reference_batch(self, records: list[AssetReferenceRecord]) -> int:
        """Insert every record in one transaction."""
        self._executemany(INSERT_REFERENCE_SQL, [self._reference_row(r) for r in records])
        for record in records:
            record.version = 1
        return len(records)

    def update_reference(self, record: AssetReferenceRecord) -> AssetReferenceRecord:
        cur = self._execute(
            """
            UPDATE attachment_references
            SET reference_count = ?, references_json = ?, last_scanned_at = ?,
                pending_delete = ?, version = version + 1
            WHERE name = ? AND version = ?
            """,
            (
                record.reference_count,
                json.dumps([r.to_dict() for r in record.references]),
                record.last_scanned_at,
                int(record.pending_delete),
                record.name,
                record.version,
            ),
        )
        if cur.rowcount == 0:
            raise WriteConflict(f"reference record {record.name} changed since version {record.version}")
        record.version += 1
        return record

    def list_references(self, include_pending: bool = False) -> list[AssetReferenceRecord]:
        sql = "SELECT * FROM attachment_references"
        if not include_pending:
            sql += " WHERE pending_delete = 0"
        rows = self._fetchall(sql + " ORDER BY name")
        return [self._reference_from_row(r) for r in rows]

    def find_reference(self, attachment_name: str) -> AssetReferenceRecord | None:
        row = self._fetchone(
            """
            SELECT * FROM attachment_references
            WHERE attachment_name = ? AND pending_delete = 0
            ORDER BY name DESC LIMIT 1
            """,
            (attachment_name,),
        )
        return self._reference_from_row(row) if row else None

    def mark_references_pending(self) -> int:
        cur = self._execute(
            "UPDATE attachment_references SET pending_delete = 1, version = version + 1 WHERE pending_delete = 0"
        )
        return cur.rowcount

    def delete_pending_references(self) -> int:
        return self._execute("DELETE FROM attachment_references WHERE pending_delete = 1").rowcount

    def delete_all_references(self) -> int:
        return self._execute("DELETE FROM attachment_references").rowcount

    # ---------------------------- Duplicate groups --------------------------- #

    @staticmethod
    def _group_from_row(row: sqlite3.Row) -> DuplicateGroup:
        return DuplicateGroup(
            name=row["name"],
            digest=row["digest"],
            file_size=int(row["file_size"]),
            file_count=int(row["file_count"]),
            savable_size=int(row["savable_size"]),
            recommended_keep=row["recommended_keep"],
            member_asset_ids=list(json.loads(row["members_json"])),
            pending_delete=bool(row["pending_delete"]),
            version=int(row["version"]),
        )

    @staticmethod
    def _group_row(group: DuplicateGroup) -> tuple[Any, ...]:
        return (
            group.name,
            group.digest,
            group.file_size,
            group.file_count,
            group.savable_size,
            group.recommended_keep,
            json.dumps(group.member_asset_ids),
            int(group.pending_delete),
        )

    def create_group(self, group: DuplicateGroup) -> DuplicateGroup:
        self._execute(INSERT_GROUP_SQL, self._group_row(group))
        group.version = 1
        return group

    def insert_group_batch(self, groups: list[DuplicateGroup]) -> int:
        """Insert every group in one transaction."""
        self._executemany(INSERT_GROUP_SQL, [self._group_row(g) for g in groups])
        for group in groups:
            group.version = 1
        return len(groups)

    def list_groups(self, include_pending: bool = False) -> list[DuplicateGroup]:
        sql = "SELECT * FROM duplicate_groups"
        if not include_pending:
            sql += " WHERE pending_delete = 0"
        rows = self._fetchall(sql + " ORDER BY savable_size DESC, name")
        return [self._group_from_row(r) for r in rows]

    def mark_groups_pending(self) -> int:
        cur = self._execute(
            "UPDATE duplicate_groups SET pending_delete = 1, version = version + 1 WHERE pending_delete = 0"
        )
        return cur.rowcount

    def delete_pending_groups(self) -> int:
        return self._execute("DELETE FROM duplicate_groups WHERE pending_delete = 1").rowcount

    def delete_all_groups(self) -> int:
        return self._execute("DELETE FROM duplicate_groups").rowcount
