#!/usr/bin/env python3
"""Attachment Intelligence Server (FastAPI).

Thin HTTP surface over the reference and duplicate scans.
- Scans run as background tasks on the server loop; clients poll status
- SQLite persistence for status singletons, reference records, duplicate groups
- Startup task resets scans left ``scanning`` by a previous process

Default host is 127.0.0.1 (localhost-only).
"""

from __future__ import annotations

import argparse
import asyncio
import os
from pathlib import Path
from typing import Any

import httpx
from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from attachment_intel.common import (
    APP_NAME,
    DEFAULT_CATALOG,
    DEFAULT_DB,
    DEFAULT_LOG_FILE,
    AttachmentIntelError,
    RecordNotFound,
    ScanAlreadyRunning,
    WriteConflict,
    now_utc_iso,
    resolve_writable_path,
    setup_logger,
)
from attachment_intel.duplicate_service import DuplicateService
from attachment_intel.platform import ContentPlatform, JsonPlatform
from attachment_intel.reference_service import FILTERS, ReferenceService
from attachment_intel.scan_status import recover_interrupted_scans
from attachment_intel.settings import SettingsProvider
from attachment_intel.store import AttachmentStore


# ---------------------------- API Models ------------------------------------ #


class SourceUpdateRequest(BaseModel):
    title: str | None = None
    url: str | None = None


# ---------------------------- Response Helpers ------------------------------ #


def api_ok(data: Any, *, meta: dict[str, Any] | None = None, warnings: list[str] | None = None) -> JSONResponse:
    body = {
        "status": "ok",
        "timestamp": now_utc_iso(),
        "meta": meta or {},
        "warnings": warnings or [],
        "data": data,
    }
    return JSONResponse(body)


def api_error(code: str, message: str, status_code: int = 400, details: dict[str, Any] | None = None) -> JSONResponse:
    body = {
        "status": "error",
        "timestamp": now_utc_iso(),
        "error": {
            "code": code,
            "message": message,
            "details": details or {},
        },
    }
    return JSONResponse(body, status_code=status_code)


# ------------------------------- App Setup ---------------------------------- #


def create_app(
    store: AttachmentStore | None = None,
    platform: ContentPlatform | None = None,
    settings: SettingsProvider | None = None,
    transport: httpx.BaseTransport | None = None,
    recovery_delay: float = 3.0,
) -> FastAPI:
    log_file = resolve_writable_path(Path(os.getenv("ATTACHMENT_INTEL_LOG", str(DEFAULT_LOG_FILE))), "actions.log")
    logger = setup_logger(log_file, console=True)

    if store is None:
        db_path = resolve_writable_path(Path(os.getenv("ATTACHMENT_INTEL_DB", str(DEFAULT_DB))), "attachment_intel.db")
        store = AttachmentStore(db_path)
    if platform is None:
        catalog = Path(os.getenv("ATTACHMENT_INTEL_CATALOG", str(DEFAULT_CATALOG)))
        if catalog.exists():
            platform = JsonPlatform.from_file(catalog)
        else:
            logger.warning("catalog_missing path=%s using_empty_catalog", catalog)
            platform = JsonPlatform({})
    settings = settings or SettingsProvider()

    references = ReferenceService(store, platform, settings)
    duplicates = DuplicateService(store, platform, settings, transport=transport)

    app = FastAPI(
        title="Attachment Intelligence Server",
        version="1.0.0",
        description="Attachment reference and duplicate analysis API.",
    )
    app.state.store = store
    app.state.references = references
    app.state.duplicates = duplicates
    app.state.background = set()

    @app.on_event("startup")
    async def _on_startup():
        task = asyncio.create_task(recover_interrupted_scans(store, delay=recovery_delay))
        app.state.background.add(task)
        task.add_done_callback(app.state.background.discard)
        logger.info("server_started recovery_delay=%s", recovery_delay)

    @app.exception_handler(ScanAlreadyRunning)
    async def scan_running_handler(_: Request, exc: ScanAlreadyRunning):
        return api_error(
            "SCAN_IN_PROGRESS", str(exc), status_code=409,
            details={"kind": exc.kind, "startTime": exc.start_time},
        )

    @app.exception_handler(RecordNotFound)
    async def not_found_handler(_: Request, exc: RecordNotFound):
        return api_error("NOT_FOUND", str(exc), status_code=404)

    @app.exception_handler(WriteConflict)
    async def conflict_handler(_: Request, exc: WriteConflict):
        return api_error("WRITE_CONFLICT", str(exc), status_code=409)

    @app.exception_handler(AttachmentIntelError)
    async def domain_error_handler(_: Request, exc: AttachmentIntelError):
        return api_error("BAD_REQUEST", str(exc), status_code=400)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(_: Request, exc: Exception):
        logger.exception("Unhandled server error: %s", exc)
        return api_error("INTERNAL_SERVER_ERROR", str(exc), status_code=500)

    # ------------------------------ Health --------------------------------- #

    @app.get("/healthz", summary="Liveness probe")
    async def healthz():
        return api_ok({"service": APP_NAME})

    # ---------------------------- References ------------------------------- #

    @app.post("/api/v1/references/scan", summary="Start a reference scan")
    async def start_reference_scan():
        status = await references.start_reference_scan()
        return api_ok(status.to_dict())

    @app.get("/api/v1/references/status", summary="Reference scan status")
    async def reference_status():
        return api_ok(references.get_reference_scan_status().to_dict())

    @app.get("/api/v1/references/setting-label", summary="Display label of a settings group")
    async def setting_label(setting: str | None = None, group: str | None = None):
        label = await references.get_setting_group_label(setting, group)
        return api_ok({"label": label})

    @app.get("/api/v1/references/subject/{kind}/{name}", summary="Resolve a source title lazily")
    async def subject(kind: str, name: str):
        info = await references.resolve_subject(kind, name)
        return api_ok(info.to_dict())

    @app.get("/api/v1/references", summary="List assets with their references")
    async def list_references(
        filter: str = Query("all"),  # pylint: disable=redefined-builtin
        keyword: str | None = None,
        page: int = Query(1, ge=1),
        size: int = Query(20, ge=1, le=500),
        sort: str | None = None,
    ):
        if filter not in FILTERS:
            return api_error("BAD_REQUEST", f"filter must be one of {', '.join(FILTERS)}")
        result = await references.list_asset_references(filter, keyword, page, size, sort)
        return api_ok(result.to_dict())

    @app.get("/api/v1/references/{attachment_name}", summary="References of one asset")
    async def get_reference(attachment_name: str):
        view = await references.get_asset_reference(attachment_name)
        return api_ok(view.to_dict())

    @app.patch("/api/v1/references/{attachment_name}/sources/{source_name}", summary="Cache a resolved source title")
    async def update_reference_source(attachment_name: str, source_name: str, req: SourceUpdateRequest):
        view = await references.update_reference_descriptor_title(attachment_name, source_name, req.title, req.url)
        return api_ok(view.to_dict())

    @app.delete("/api/v1/references", summary="Delete all reference data")
    async def clear_references():
        return api_ok(references.clear_reference_data().to_dict())

    # ---------------------------- Duplicates ------------------------------- #

    @app.post("/api/v1/duplicates/scan", summary="Start a duplicate scan")
    async def start_duplicate_scan():
        status = await duplicates.start_duplicate_scan()
        return api_ok(status.to_dict())

    @app.get("/api/v1/duplicates/status", summary="Duplicate scan status")
    async def duplicate_status():
        return api_ok(duplicates.get_duplicate_scan_status().to_dict())

    @app.get("/api/v1/duplicates", summary="List duplicate groups")
    async def list_duplicates(page: int = Query(1, ge=1), size: int = Query(20, ge=1, le=500)):
        result = await duplicates.list_duplicate_groups(page, size)
        return api_ok(result.to_dict())

    @app.delete("/api/v1/duplicates", summary="Delete all duplicate data")
    async def clear_duplicates():
        return api_ok(duplicates.clear_duplicate_data().to_dict())

    return app


# ------------------------------- Entrypoint --------------------------------- #


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run Attachment Intelligence FastAPI server")
    parser.add_argument("--host", default=os.getenv("ATTACHMENT_INTEL_HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.getenv("ATTACHMENT_INTEL_PORT", "8002")))
    parser.add_argument("--reload", action="store_true")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    import uvicorn

    args = parse_args(argv)
    uvicorn.run(
        "attachment_intel.server:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info",
    )


if __name__ == "__main__":
    main()
