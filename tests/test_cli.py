"""Tests for the command line entry point."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from attachment_intel.cli import build_parser, main

from conftest import SITE_URL, make_catalog


@pytest.fixture
def base_args(tmp_path: Path, monkeypatch) -> list[str]:
    for name in ("ATTACHMENT_INTEL_SITE_URL", "ATTACHMENT_INTEL_SCAN_TIMEOUT_MINUTES"):
        monkeypatch.delenv(name, raising=False)
    catalog = tmp_path / "catalog.json"
    catalog.write_text(json.dumps(make_catalog()), encoding="utf-8")
    settings = tmp_path / "settings.json"
    settings.write_text(json.dumps({"site": {"externalUrl": SITE_URL}}), encoding="utf-8")
    return [
        "--db", str(tmp_path / "cli.db"),
        "--catalog", str(catalog),
        "--settings", str(settings),
        "--log-file", str(tmp_path / "actions.log"),
    ]


def _run(capsys, argv: list[str]) -> tuple[int, dict]:
    code = main(argv)
    out, err = capsys.readouterr()
    return code, json.loads(out if code == 0 else err)


class TestParser:
    def test_defaults(self):
        args = build_parser().parse_args(["references"])
        assert (args.filter, args.page, args.size) == ("all", 1, 20)

    def test_rejects_unknown_filter(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["references", "--filter", "maybe"])


class TestCommands:
    """End-to-end CLI runs against a temporary database."""

    def test_scan_references(self, capsys, base_args):
        code, body = _run(capsys, base_args + ["scan-references"])
        assert code == 0
        assert body["status"] == "ok"
        assert body["command"] == "scan-references"
        status = body["data"]["status"]
        assert status["phase"] == "completed"
        assert status["unreferencedCount"] == 1

    def test_results_persist_between_runs(self, capsys, base_args, tmp_path):
        _run(capsys, base_args + ["scan-references"])

        code, body = _run(capsys, base_args + ["references", "--filter", "referenced", "--sort", "size,desc"])
        assert code == 0
        assert [i["attachmentName"] for i in body["data"]["items"]] == ["att-banner", "att-logo", "att-private"]

        out_file = tmp_path / "out" / "status.json"
        code, body = _run(capsys, base_args + ["--output", str(out_file), "status"])
        assert code == 0
        assert body["data"]["reference"]["phase"] == "completed"
        assert body["data"]["duplicate"]["phase"] == "none"
        assert json.loads(out_file.read_text())["mode"] == "status"

    def test_single_asset_and_clear(self, capsys, base_args):
        _run(capsys, base_args + ["scan-references"])
        code, body = _run(capsys, base_args + ["references", "--asset", "att-logo"])
        assert code == 0
        assert body["data"]["asset"]["referenceCount"] == 3

        code, body = _run(capsys, base_args + ["clear", "--kind", "references"])
        assert code == 0
        assert body["data"]["cleared"]["reference"]["phase"] == "none"
        assert "duplicate" not in body["data"]["cleared"]

    def test_missing_asset_is_an_error(self, capsys, base_args):
        code, body = _run(capsys, base_args + ["references", "--asset", "att-gone"])
        assert code == 1
        assert body["status"] == "error"
        assert "att-gone" in body["error"]
