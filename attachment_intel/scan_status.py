"""Scan status state machine shared by the reference and duplicate scans.

``none -> scanning -> completed | error``. A new scan may start from any phase
except a ``scanning`` record that is still fresh; a ``scanning`` record older
than the configured timeout is treated as abandoned.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import threading
from typing import Callable

from attachment_intel.common import (
    PHASE_COMPLETED,
    PHASE_ERROR,
    PHASE_SCANNING,
    SCAN_INTERRUPTED_MESSAGE,
    SCAN_KIND_DUPLICATE,
    SCAN_KIND_REFERENCE,
    ScanAlreadyRunning,
    WriteConflict,
    now_utc_iso,
    parse_iso,
    utc_now,
)
from attachment_intel.models import ScanStatus
from attachment_intel.store import AttachmentStore

LOGGER = logging.getLogger("attachment_intel.scan_status")

WRITE_ATTEMPTS = 3


def is_stuck(status: ScanStatus, timeout_minutes: float, now: dt.datetime | None = None) -> bool:
    """True when a ``scanning`` record has outlived the timeout or never recorded a start."""
    started = parse_iso(status.start_time)
    if started is None:
        return True
    now = now or utc_now()
    return (now - started).total_seconds() > timeout_minutes * 60


def update_with_retry(
    store: AttachmentStore,
    kind: str,
    mutate: Callable[[ScanStatus], None],
    attempts: int = WRITE_ATTEMPTS,
) -> ScanStatus:
    """Read-modify-write the status singleton, re-reading after each conflict."""
    for attempt in range(1, attempts + 1):
        status = store.get_or_create_status(kind)
        mutate(status)
        try:
            return store.update_status(status)
        except WriteConflict:
            if attempt == attempts:
                raise
            LOGGER.info("status_conflict kind=%s attempt=%s", kind, attempt)
    raise WriteConflict(kind)


class ScanGate:
    """Admits at most one fresh scan per status singleton."""

    def __init__(self, store: AttachmentStore, kind: str):
        self.store = store
        self.kind = kind

    def begin(self, timeout_minutes: float) -> ScanStatus:
        def start(status: ScanStatus) -> None:
            if status.phase == PHASE_SCANNING and not is_stuck(status, timeout_minutes):
                raise ScanAlreadyRunning(self.kind, status.start_time)
            if status.phase == PHASE_SCANNING:
                LOGGER.warning("scan_stale kind=%s start=%s reclaiming", self.kind, status.start_time)
            status.phase = PHASE_SCANNING
            status.start_time = now_utc_iso()
            status.error_message = None

        status = update_with_retry(self.store, self.kind, start)
        LOGGER.info("scan_started kind=%s start=%s", self.kind, status.start_time)
        return status

    def complete(self, mutate: Callable[[ScanStatus], None]) -> ScanStatus:
        def finish(status: ScanStatus) -> None:
            mutate(status)
            status.phase = PHASE_COMPLETED
            status.last_scan_time = now_utc_iso()
            status.error_message = None

        return update_with_retry(self.store, self.kind, finish)

    def fail(self, message: str) -> ScanStatus:
        def error(status: ScanStatus) -> None:
            status.phase = PHASE_ERROR
            status.error_message = message

        return update_with_retry(self.store, self.kind, error)

    def reset(self) -> ScanStatus:
        return update_with_retry(self.store, self.kind, lambda status: status.reset())


class ScanProgress:
    """In-memory progress counters shared by concurrently running digest tasks."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._scanned = 0
        self._total = 0

    def reset(self) -> None:
        with self._lock:
            self._scanned = 0
            self._total = 0

    def set_total(self, total: int) -> None:
        with self._lock:
            self._total = total

    def increment(self) -> int:
        with self._lock:
            self._scanned += 1
            return self._scanned

    @property
    def scanned(self) -> int:
        with self._lock:
            return self._scanned

    @property
    def total(self) -> int:
        with self._lock:
            return self._total


# ------------------------------- Recovery ----------------------------------- #


async def recover_interrupted_scans(
    store: AttachmentStore,
    delay: float = 3.0,
    retries: int = 3,
    backoff: float = 1.0,
) -> list[str]:
    """Force any singleton left in ``scanning`` by a previous process to ``error``.

    Returns the kinds that were reset.
    """
    await asyncio.sleep(delay)
    LOGGER.info("recovery_check kinds=%s,%s", SCAN_KIND_DUPLICATE, SCAN_KIND_REFERENCE)
    reset: list[str] = []
    for kind in (SCAN_KIND_DUPLICATE, SCAN_KIND_REFERENCE):
        try:
            if await _reset_if_scanning(store, kind, retries, backoff):
                reset.append(kind)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.warning("recovery_failed kind=%s error=%s", kind, exc)
    return reset


async def _reset_if_scanning(store: AttachmentStore, kind: str, retries: int, backoff: float) -> bool:
    attempt = 0
    while True:
        status = store.get_status(kind)
        if status is None or status.phase != PHASE_SCANNING:
            return False
        LOGGER.warning("recovery_reset kind=%s start=%s", kind, status.start_time)
        status.phase = PHASE_ERROR
        status.error_message = SCAN_INTERRUPTED_MESSAGE
        try:
            store.update_status(status)
            return True
        except WriteConflict:
            if attempt >= retries:
                raise
            await asyncio.sleep(backoff * (2 ** attempt))
            attempt += 1
