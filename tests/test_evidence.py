"""Tests for browser evidence collection."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import httpx
import pytest

from meeting2code.config import ValidationSettings
from meeting2code.errors import HarnessUnavailable, ParseFailure
from meeting2code.evidence import (
    AUDIT_END,
    AUDIT_START,
    EvidenceCollector,
    PlaywrightHarness,
    format_evidence,
    parse_audit_output,
    verify_redirects,
)
from meeting2code.models import EvidenceAudit
from meeting2code.process import MockProcessRunner, ProcessResult


def audit_stdout(data: dict) -> str:
    return f"noise\n{AUDIT_START}\n{json.dumps(data)}\n{AUDIT_END}\n"


class TestParseAuditOutput:
    """Tests for parse_audit_output."""

    def test_payload_between_markers(self) -> None:
        assert parse_audit_output(audit_stdout({"url": "https://x"})) == {"url": "https://x"}

    def test_missing_markers(self) -> None:
        with pytest.raises(ParseFailure, match="no parseable output"):
            parse_audit_output("just logs", "Error: chromium crashed")

    def test_invalid_json(self) -> None:
        with pytest.raises(ParseFailure, match="not valid JSON"):
            parse_audit_output(f"{AUDIT_START}{{broken{AUDIT_END}")

    def test_non_object_payload(self) -> None:
        with pytest.raises(ParseFailure, match="not a JSON object"):
            parse_audit_output(f"{AUDIT_START}[1, 2]{AUDIT_END}")


class TestVerifyRedirects:
    """Tests for HTTP redirect verification of probed pages."""

    @staticmethod
    def transport() -> httpx.MockTransport:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/sustainability":
                return httpx.Response(301, headers={"location": "/"})
            if request.url.path == "/privacy":
                return httpx.Response(404)
            return httpx.Response(200, text="ok")

        return httpx.MockTransport(handler)

    def test_redirect_to_home_clears_exists(self) -> None:
        data = {
            "pages": {
                "/sustainability": {"exists": True},
                "/privacy": {"exists": True},
                "/about": {"exists": True},
            }
        }
        result = asyncio.run(verify_redirects(data, "https://site.example", transport=self.transport()))

        sustainability = result["pages"]["/sustainability"]
        assert sustainability["redirectedToHome"] is True
        assert sustainability["exists"] is False
        assert sustainability["httpStatus"] == 301
        assert sustainability["redirectLocation"] == "https://site.example/"

        assert result["pages"]["/privacy"]["exists"] is False
        assert result["pages"]["/privacy"]["httpStatus"] == 404
        assert result["pages"]["/about"]["exists"] is True

        # input is not modified
        assert data["pages"]["/sustainability"] == {"exists": True}

    def test_no_pages(self) -> None:
        assert asyncio.run(verify_redirects({"url": "x"}, "https://site.example")) == {"url": "x"}


class TestEvidenceCollector:
    """Tests for EvidenceCollector with a scripted harness."""

    def test_collect(self, tmp_path: Path) -> None:
        runner = MockProcessRunner(responses={
            "npx playwright --version": "Version 1.49.0",
            "node": ProcessResult(args=[], exit_code=0, stdout=audit_stdout({"url": "https://site.example", "forms": []})),
        })
        settings = ValidationSettings(harness_dir=tmp_path, verify_redirects=False)
        collector = EvidenceCollector(PlaywrightHarness(runner, tmp_path), settings, timeout=5)

        audit = asyncio.run(collector.collect("https://site.example"))

        assert audit.url == "https://site.example"
        assert runner.called("npx playwright install") == []
        node_call = runner.called("node")[0]
        assert node_call[1].endswith(".cjs")
        assert not list(tmp_path.glob(".m2c-audit-*"))

    def test_script_mentions_probe_paths(self, tmp_path: Path) -> None:
        settings = ValidationSettings(harness_dir=tmp_path, probe_paths=["/careers"])
        collector = EvidenceCollector(PlaywrightHarness(MockProcessRunner(), tmp_path), settings)
        script = collector.render_script("https://site.example")
        assert "/careers" in script
        assert AUDIT_START in script and AUDIT_END in script

    def test_harness_unavailable(self, tmp_path: Path) -> None:
        runner = MockProcessRunner(responses={
            "npx playwright --version": ProcessResult(args=[], exit_code=1, stderr="not found"),
            "npx playwright install": ProcessResult(args=[], exit_code=1, stderr="no network"),
        })
        collector = EvidenceCollector(PlaywrightHarness(runner, tmp_path), ValidationSettings(harness_dir=tmp_path))
        with pytest.raises(HarnessUnavailable):
            asyncio.run(collector.collect("https://site.example"))
        assert runner.called("node") == []

    def test_unparseable_output(self, tmp_path: Path) -> None:
        runner = MockProcessRunner(responses={"node": "Error: page crashed"})
        collector = EvidenceCollector(
            PlaywrightHarness(runner, tmp_path), ValidationSettings(harness_dir=tmp_path, verify_redirects=False)
        )
        with pytest.raises(ParseFailure):
            asyncio.run(collector.collect("https://site.example"))


class TestFormatEvidence:
    """Tests for the adjudicator fact sheet."""

    def test_red_flags(self) -> None:
        audit = EvidenceAudit(data={
            "url": "https://site.example",
            "title": "Contoso",
            "forms": [{"id": "contact", "checkboxCount": 0, "hasRecaptcha": False}],
            "pages": {"/sustainability": {"exists": False, "redirectedToHome": True, "httpStatus": 301}},
        })
        text = format_evidence(audit)
        assert "## Page: https://site.example" in text
        assert "RED FLAGS" in text
        assert "reCAPTCHA/CAPTCHA exists: NO (MISSING)" in text
        assert "ZERO compliance elements" in text
        assert "MISSING DEDICATED PAGES: /sustainability" in text
        assert "/sustainability: exists=False, redirectedToHome=true, HTTP 301" in text

    def test_no_forms(self) -> None:
        text = format_evidence(EvidenceAudit(data={"url": "https://site.example"}))
        assert "NO FORMS FOUND ON PAGE" in text
