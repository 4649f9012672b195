#!/usr/bin/env python3
"""Attachment Intelligence command line.

Runs reference and duplicate scans to completion against a content platform
export, prints scan status, lists results, and clears stored data. Every
command writes one JSON envelope to stdout (errors to stderr).

Examples:
  attachment-intel --catalog export.json scan-references
  attachment-intel --catalog export.json scan-duplicates
  attachment-intel references --filter unreferenced --sort size,desc
  attachment-intel duplicates --page 1 --size 10
  attachment-intel clear --kind all
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from attachment_intel.common import (
    DEFAULT_CATALOG,
    DEFAULT_DB,
    DEFAULT_LOG_FILE,
    ScanAlreadyRunning,
    ensure_parent,
    human_bytes,
    now_utc_iso,
    setup_logger,
)
from attachment_intel.duplicate_service import DuplicateService
from attachment_intel.platform import JsonPlatform
from attachment_intel.reference_service import FILTERS, ReferenceService
from attachment_intel.settings import SettingsProvider
from attachment_intel.store import AttachmentStore


class Engine:
    """Wires the store, the platform export and both scan services together."""

    def __init__(
        self,
        db_path: Path,
        catalog: Path,
        settings_file: Path | None = None,
        log_file: Path = DEFAULT_LOG_FILE,
    ):
        self.logger = setup_logger(log_file)
        self.store = AttachmentStore(db_path)
        if catalog.exists():
            self.platform = JsonPlatform.from_file(catalog)
        else:
            self.logger.warning("catalog_missing path=%s using_empty_catalog", catalog)
            self.platform = JsonPlatform({})
        self.settings = SettingsProvider(settings_file)
        self.references = ReferenceService(self.store, self.platform, self.settings)
        self.duplicates = DuplicateService(self.store, self.platform, self.settings)

    def close(self) -> None:
        self.store.close()


def export_json(path: Path, payload: dict[str, Any]) -> None:
    ensure_parent(path)
    path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")


# ------------------------------- Commands ----------------------------------- #


async def command_scan_references(engine: Engine, args: argparse.Namespace) -> dict[str, Any]:
    started = await engine.references.start_reference_scan()
    await engine.references.wait_for_scan()
    status = engine.references.get_reference_scan_status()
    return {
        "mode": "scan-references",
        "started_at": started.start_time,
        "status": status.to_dict(),
        "unreferenced_human": human_bytes(getattr(status, "unreferenced_size", 0)),
    }


async def command_scan_duplicates(engine: Engine, args: argparse.Namespace) -> dict[str, Any]:
    started = await engine.duplicates.start_duplicate_scan()
    await engine.duplicates.wait_for_scan()
    status = engine.duplicates.get_duplicate_scan_status()
    return {
        "mode": "scan-duplicates",
        "started_at": started.start_time,
        "status": status.to_dict(),
        "savable_human": human_bytes(getattr(status, "savable_size", 0)),
    }


async def command_status(engine: Engine, args: argparse.Namespace) -> dict[str, Any]:
    return {
        "mode": "status",
        "reference": engine.references.get_reference_scan_status().to_dict(),
        "duplicate": engine.duplicates.get_duplicate_scan_status().to_dict(),
    }


async def command_references(engine: Engine, args: argparse.Namespace) -> dict[str, Any]:
    if args.asset:
        return {"mode": "references", "asset": (await engine.references.get_asset_reference(args.asset)).to_dict()}
    page = await engine.references.list_asset_references(args.filter, args.keyword, args.page, args.size, args.sort)
    return {"mode": "references", **page.to_dict()}


async def command_duplicates(engine: Engine, args: argparse.Namespace) -> dict[str, Any]:
    page = await engine.duplicates.list_duplicate_groups(args.page, args.size)
    return {"mode": "duplicates", **page.to_dict()}


async def command_clear(engine: Engine, args: argparse.Namespace) -> dict[str, Any]:
    cleared: dict[str, Any] = {}
    if args.kind in ("references", "all"):
        cleared["reference"] = engine.references.clear_reference_data().to_dict()
    if args.kind in ("duplicates", "all"):
        cleared["duplicate"] = engine.duplicates.clear_duplicate_data().to_dict()
    return {"mode": "clear", "cleared": cleared}


COMMANDS = {
    "scan-references": command_scan_references,
    "scan-duplicates": command_scan_duplicates,
    "status": command_status,
    "references": command_references,
    "duplicates": command_duplicates,
    "clear": command_clear,
}


# --------------------------------- CLI -------------------------------------- #


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="attachment-intel",
        description="Attachment reference and duplicate analysis",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument("--db", default=str(DEFAULT_DB), help="SQLite database path")
    parser.add_argument("--catalog", default=str(DEFAULT_CATALOG), help="Content platform JSON export")
    parser.add_argument("--settings", default=None, help="Analysis settings JSON file")
    parser.add_argument("--log-file", default=str(DEFAULT_LOG_FILE), help="Action log file")
    parser.add_argument("--output", default=None, help="Also write the result to this JSON file")

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("scan-references", help="Run a reference scan to completion")
    sub.add_parser("scan-duplicates", help="Run a duplicate scan to completion")
    sub.add_parser("status", help="Show both scan status records")

    p = sub.add_parser("references", help="List assets with their references")
    p.add_argument("--asset", default=None, help="Show a single asset")
    p.add_argument("--filter", choices=FILTERS, default="all")
    p.add_argument("--keyword", default=None)
    p.add_argument("--sort", default=None, help="field,dir with field in referenceCount|size|displayName")
    p.add_argument("--page", type=int, default=1)
    p.add_argument("--size", type=int, default=20)

    p = sub.add_parser("duplicates", help="List duplicate groups")
    p.add_argument("--page", type=int, default=1)
    p.add_argument("--size", type=int, default=20)

    p = sub.add_parser("clear", help="Delete stored scan results")
    p.add_argument("--kind", choices=("references", "duplicates", "all"), default="all")

    p = sub.add_parser("serve", help="Run the HTTP server")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=8002)

    return parser


def dispatch(engine: Engine, args: argparse.Namespace) -> dict[str, Any]:
    handler = COMMANDS.get(args.command)
    if handler is None:
        raise ValueError(f"Unknown command: {args.command}")
    return asyncio.run(handler(engine, args))


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "serve":
        from attachment_intel import server

        server.main(["--host", args.host, "--port", str(args.port)])
        return 0

    engine = Engine(
        db_path=Path(args.db),
        catalog=Path(args.catalog),
        settings_file=Path(args.settings) if args.settings else None,
        log_file=Path(args.log_file),
    )

    try:
        result = dispatch(engine, args)
        if args.output:
            export_json(Path(args.output), result)

        print(json.dumps({
            "status": "ok",
            "command": args.command,
            "data": result,
            "output": str(Path(args.output).resolve()) if args.output else None,
            "timestamp": now_utc_iso(),
        }, indent=2, ensure_ascii=False))
        return 0
    except ScanAlreadyRunning as exc:
        print(json.dumps({
            "status": "error",
            "command": args.command,
            "error": str(exc),
            "code": "SCAN_IN_PROGRESS",
            "timestamp": now_utc_iso(),
        }, indent=2), file=sys.stderr)
        return 2
    except Exception as exc:  # pylint: disable=broad-except
        print(json.dumps({
            "status": "error",
            "command": getattr(args, "command", None),
            "error": str(exc),
            "timestamp": now_utc_iso(),
        }, indent=2), file=sys.stderr)
        return 1
    finally:
        engine.close()


if __name__ == "__main__":
    raise SystemExit(main())
