"""Tests for the HTTP API."""

from __future__ import annotations

import time
from typing import Any

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from attachment_intel.common import (
    PHASE_COMPLETED,
    PHASE_ERROR,
    SCAN_INTERRUPTED_MESSAGE,
    SCAN_KIND_REFERENCE,
)
from attachment_intel.platform import JsonPlatform
from attachment_intel.scan_status import ScanGate
from attachment_intel.server import create_app

from conftest import make_catalog


def _handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, content=b"same bytes")


@pytest.fixture
def app(store, settings, tmp_path, monkeypatch) -> FastAPI:
    monkeypatch.setenv("ATTACHMENT_INTEL_LOG", str(tmp_path / "actions.log"))
    catalog = make_catalog()
    catalog["assets"].append(dict(catalog["assets"][0], name="att-logo-copy", displayName="Logo copy.png"))
    return create_app(
        store=store,
        platform=JsonPlatform(catalog),
        settings=settings,
        transport=httpx.MockTransport(_handler),
        recovery_delay=0,
    )


def _wait_for_recovery(app: FastAPI) -> None:
    for _ in range(100):
        if not app.state.background:
            return
        time.sleep(0.02)
    raise AssertionError("startup recovery did not finish")


def _wait_for_phase(client: TestClient, path: str, phase: str) -> dict[str, Any]:
    data: dict[str, Any] = {}
    for _ in range(200):
        data = client.get(path).json()["data"]
        if data["phase"] == phase:
            return data
        time.sleep(0.02)
    raise AssertionError(f"{path} stuck in {data.get('phase')}")


class TestHealth:
    def test_healthz(self, app: FastAPI) -> None:
        response = TestClient(app).get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"] == {"service": "attachment_intel"}


class TestReferenceEndpoints:
    """Tests for /api/v1/references."""

    def test_scan_then_list(self, app: FastAPI) -> None:
        with TestClient(app) as client:
            _wait_for_recovery(app)
            started = client.post("/api/v1/references/scan")
            assert started.status_code == 200
            assert started.json()["data"]["kind"] == SCAN_KIND_REFERENCE

            status = _wait_for_phase(client, "/api/v1/references/status", PHASE_COMPLETED)
            assert status["totalAssets"] == 5
            assert status["unreferencedCount"] == 1

            listing = client.get("/api/v1/references", params={"filter": "unreferenced"}).json()["data"]
            assert [i["attachmentName"] for i in listing["items"]] == ["att-orphan"]

            one = client.get("/api/v1/references/att-private").json()["data"]
            assert one["referenceCount"] == 1

            patched = client.patch(
                "/api/v1/references/att-private/sources/page-about", json={"title": "About us"}
            ).json()["data"]
            assert patched["references"][0]["sourceTitle"] == "About us"

            cleared = client.delete("/api/v1/references").json()["data"]
            assert cleared["phase"] == "none"

    def test_scan_in_progress_conflict(self, app: FastAPI, store) -> None:
        started = ScanGate(store, SCAN_KIND_REFERENCE).begin(5)
        response = TestClient(app).post("/api/v1/references/scan")
        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "SCAN_IN_PROGRESS"
        assert error["details"]["startTime"] == started.start_time

    def test_unknown_asset(self, app: FastAPI) -> None:
        response = TestClient(app).get("/api/v1/references/att-gone")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_bad_filter(self, app: FastAPI) -> None:
        response = TestClient(app).get("/api/v1/references", params={"filter": "sometimes"})
        assert response.status_code == 400

    def test_lazy_lookups(self, app: FastAPI) -> None:
        client = TestClient(app)
        subject = client.get("/api/v1/references/subject/Post/post-1").json()["data"]
        assert subject == {"title": "Hello", "url": "/archives/hello"}
        label = client.get("/api/v1/references/setting-label", params={"setting": "system", "group": "basic"})
        assert label.json()["data"] == {"label": "Basic settings"}


class TestDuplicateEndpoints:
    """Tests for /api/v1/duplicates."""

    def test_scan_then_list(self, app: FastAPI) -> None:
        with TestClient(app) as client:
            _wait_for_recovery(app)
            assert client.post("/api/v1/duplicates/scan").status_code == 200

            status = _wait_for_phase(client, "/api/v1/duplicates/status", PHASE_COMPLETED)
            assert status["totalCount"] == 5
            assert status["duplicateGroupCount"] == 1
            assert status["duplicateFileCount"] == 4

            listing = client.get("/api/v1/duplicates", params={"page": 1, "size": 5}).json()["data"]
            assert listing["total"] == 1
            assert listing["items"][0]["fileCount"] == 5

            assert client.delete("/api/v1/duplicates").json()["data"]["phase"] == "none"
            assert client.get("/api/v1/duplicates").json()["data"]["total"] == 0


class TestStartupRecovery:
    def test_interrupted_scan_reset(self, app: FastAPI, store) -> None:
        ScanGate(store, SCAN_KIND_REFERENCE).begin(5)
        with TestClient(app) as client:
            _wait_for_recovery(app)
            status = client.get("/api/v1/references/status").json()["data"]
            assert status["phase"] == PHASE_ERROR
            assert status["errorMessage"] == SCAN_INTERRUPTED_MESSAGE
