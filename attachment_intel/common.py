"""Shared constants, helpers, logging, and error types for attachment analysis."""

from __future__ import annotations

import datetime as dt
import logging
import tempfile
import urllib.parse
from pathlib import Path

# ------------------------------- Constants ---------------------------------- #

APP_NAME = "attachment_intel"
DEFAULT_DB = Path.home() / ".local" / "share" / APP_NAME / "attachment_intel.db"
DEFAULT_LOG_FILE = Path.home() / ".local" / "share" / APP_NAME / "actions.log"
DEFAULT_CATALOG = Path.home() / ".local" / "share" / APP_NAME / "catalog.json"

SCAN_KIND_REFERENCE = "reference"
SCAN_KIND_DUPLICATE = "duplicate"

PHASE_NONE = "none"
PHASE_SCANNING = "scanning"
PHASE_COMPLETED = "completed"
PHASE_ERROR = "error"

SCAN_INTERRUPTED_MESSAGE = "scan interrupted (service restarted)"


# -------------------------------- Errors ------------------------------------ #


class AttachmentIntelError(Exception):
    """Base error for the attachment analysis core."""


class ScanAlreadyRunning(AttachmentIntelError):
    def __init__(self, kind: str, start_time: str | None):
        super().__init__(f"{kind} scan already running since {start_time}")
        self.kind = kind
        self.start_time = start_time


class WriteConflict(AttachmentIntelError):
    """An optimistic update lost to a concurrent writer."""


class RecordNotFound(AttachmentIntelError):
    pass


class DigestError(AttachmentIntelError):
    pass


# ------------------------------- Utilities ---------------------------------- #


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def now_utc_iso() -> str:
    return utc_now().replace(microsecond=0).isoformat()


def to_iso(value: dt.datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(dt.timezone.utc).replace(microsecond=0).isoformat()


def parse_iso(value: str | None) -> dt.datetime | None:
    if not value:
        return None
    try:
        parsed = dt.datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


def ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def human_bytes(size: int) -> str:
    val = float(max(size, 0))
    for unit in ["B", "KB", "MB", "GB", "TB", "PB"]:
        if val < 1024.0 or unit == "PB":
            if unit == "B":
                return f"{int(val)} {unit}"
            return f"{val:.2f} {unit}"
        val /= 1024.0
    return f"{size} B"


def decode_url(url: str) -> str:
    """Percent-decode ``url`` form-style; fall back to the raw value on failure."""
    try:
        return urllib.parse.unquote_plus(url, errors="strict")
    except (UnicodeDecodeError, ValueError):
        return url


def setup_logger(log_file: Path, console: bool = False) -> logging.Logger:
    logger = logging.getLogger(APP_NAME)
    if logger.handlers:
        return logger

    chosen = log_file
    try:
        ensure_parent(log_file)
    except OSError:
        chosen = Path(tempfile.gettempdir()) / APP_NAME / "actions.log"
        ensure_parent(chosen)

    logger.setLevel(logging.INFO)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    fh = logging.FileHandler(chosen, encoding="utf-8")
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    if console:
        sh = logging.StreamHandler()
        sh.setFormatter(fmt)
        logger.addHandler(sh)
    return logger


def resolve_writable_path(preferred: Path, fallback_name: str) -> Path:
    """Return preferred path when writable, otherwise fallback in the temp dir."""
    try:
        preferred.parent.mkdir(parents=True, exist_ok=True)
        probe = preferred.parent / ".write_probe"
        probe.touch(exist_ok=True)
        probe.unlink(missing_ok=True)
        return preferred
    except OSError:
        fallback = Path(tempfile.gettempdir()) / APP_NAME / fallback_name
        fallback.parent.mkdir(parents=True, exist_ok=True)
        return fallback
