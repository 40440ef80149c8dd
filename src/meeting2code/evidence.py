"""Browser evidence collection for deployed sites.

A generated Node/Playwright script audits the live page once; the resulting
fact sheet (:class:`EvidenceAudit`) is shared read-only by every judge.
Dedicated-page probes are then re-checked over plain HTTP so a server-side
redirect to the home page is recorded as a fact, not guessed from the DOM.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import urljoin, urlparse

import httpx

from .config import ValidationSettings
from .errors import ExternalProcessFailure, HarnessUnavailable, ParseFailure
from .models import EvidenceAudit
from .process import ProcessResult, ProcessRunner
from .prompts import render_template

logger = logging.getLogger(__name__)

AUDIT_START = "__AUDIT_START__"
AUDIT_END = "__AUDIT_END__"

VERSION_TIMEOUT = 30
INSTALL_TIMEOUT = 120


class PlaywrightHarness:
    """Adapter for the Node + Playwright browser harness."""

    def __init__(self, runner: ProcessRunner, harness_dir: Path):
        self.runner = runner
        self.harness_dir = Path(harness_dir)

    async def ensure_available(self) -> None:
        """Make sure Playwright and Chromium are installed.

        Raises:
            HarnessUnavailable: Playwright is missing and could not be installed.
        """
        try:
            result = await self.runner.run(
                ["npx", "playwright", "--version"], timeout=VERSION_TIMEOUT, cwd=self.harness_dir
            )
            if result.ok:
                logger.debug(f"Playwright available: {result.stdout.strip()}")
                return
        except ExternalProcessFailure as e:
            logger.info(f"Playwright version check failed: {e}")

        logger.info("Installing Playwright chromium...")
        try:
            result = await self.runner.run(
                ["npx", "playwright", "install", "chromium"], timeout=INSTALL_TIMEOUT, cwd=self.harness_dir
            )
        except ExternalProcessFailure as e:
            raise HarnessUnavailable(
                f"Playwright install failed: {e}. Run: npx playwright install chromium",
                kind=e.kind, exit_code=e.exit_code, stdout=e.stdout, stderr=e.stderr,
            ) from e
        if not result.ok:
            raise HarnessUnavailable(
                "Playwright not installed. Run: npx playwright install chromium",
                exit_code=result.exit_code, stdout=result.stdout, stderr=result.stderr,
            )

    async def run_script(self, script: str, timeout: float) -> ProcessResult:
        """Write ``script`` next to the harness's node_modules and run it with node.

        The temporary script is removed on every exit path.
        """
        fd, path = tempfile.mkstemp(prefix=".m2c-audit-", suffix=".cjs", dir=self.harness_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(script)
            return await self.runner.run(["node", path], timeout=timeout, cwd=self.harness_dir)
        finally:
            Path(path).unlink(missing_ok=True)


def parse_audit_output(stdout: str, stderr: str = "") -> dict:
    """Extract the JSON audit printed between the audit markers.

    Raises:
        ParseFailure: Markers are missing or the payload is not a JSON object.
    """
    start = stdout.find(AUDIT_START)
    end = stdout.find(AUDIT_END, start + 1) if start != -1 else -1
    if start == -1 or end == -1:
        tail = (stderr.strip() or stdout.strip())[-400:]
        raise ParseFailure(f"Audit produced no parseable output: {tail}")
    payload = stdout[start + len(AUDIT_START):end].strip()
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise ParseFailure(f"Audit output is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ParseFailure("Audit output is not a JSON object")
    return data


def _same_page(a: str, b: str) -> bool:
    pa, pb = urlparse(a), urlparse(b)
    return (pa.netloc.lower(), pa.path.rstrip("/")) == (pb.netloc.lower(), pb.path.rstrip("/"))


async def verify_redirects(
    data: dict,
    base_url: str,
    timeout: float = 15.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> dict:
    """Re-request each probed path without following redirects.

    Records ``httpStatus`` and ``redirectLocation`` per page. A 3xx pointing
    at the home URL sets ``redirectedToHome`` and clears ``exists``; a 4xx/5xx
    clears ``exists``. Request errors leave the page entry untouched.

    Args:
        data: Raw audit data; not modified.
        base_url: Site root the probes were made against.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport, for tests.

    Returns:
        A copy of ``data`` with verified page entries.
    """
    result = copy.deepcopy(data)
    pages = result.get("pages") or {}
    if not pages:
        return result

    home = base_url.rstrip("/")
    async with httpx.AsyncClient(follow_redirects=False, timeout=timeout, transport=transport) as client:
        for path, page in pages.items():
            url = home + path
            try:
                response = await client.get(url)
            except httpx.HTTPError as e:
                logger.debug(f"Redirect probe failed for {url}: {e}")
                continue
            page["httpStatus"] = response.status_code
            if response.is_redirect:
                location = urljoin(url, response.headers.get("location", ""))
                page["redirectLocation"] = location
                if _same_page(location, home + "/"):
                    page["redirectedToHome"] = True
                    page["exists"] = False
            elif response.status_code >= 400:
                page["exists"] = False
                page.setdefault("status", response.status_code)
    return result


class EvidenceCollector:
    """Collects one :class:`EvidenceAudit` per validation run."""

    def __init__(
        self,
        harness: PlaywrightHarness,
        settings: ValidationSettings,
        timeout: float = 240.0,
        on_log: Optional[Callable[[str], None]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.harness = harness
        self.settings = settings
        self.timeout = timeout
        self.on_log = on_log
        self.transport = transport

    def _log(self, message: str) -> None:
        logger.info(message)
        if self.on_log:
            self.on_log(message)

    def render_script(self, url: str) -> str:
        return render_template(
            "audit_script.js.j2",
            url=url,
            probe_paths=self.settings.probe_paths,
            max_cta_clicks=self.settings.max_cta_clicks,
            nav_timeout_ms=int(self.settings.nav_timeout * 1000),
            start_marker=AUDIT_START,
            end_marker=AUDIT_END,
        )

    async def collect(self, url: str) -> EvidenceAudit:
        """Audit ``url`` and return the fact sheet.

        Raises:
            HarnessUnavailable: Playwright could not be made available.
            ExternalProcessFailure: The audit script timed out or could not start.
            ParseFailure: The audit output could not be parsed.
        """
        await self.harness.ensure_available()
        self._log("Collecting site evidence with Playwright...")

        result = await self.harness.run_script(self.render_script(url), timeout=self.timeout)
        if result.stderr.strip():
            logger.debug(f"Playwright stderr: {result.stderr.strip()[:300]}")
        data = parse_audit_output(result.stdout, result.stderr)

        if data.get("fatalError"):
            self._log(f"Audit reported an error (partial evidence kept): {data['fatalError'][:200]}")
        if self.settings.verify_redirects:
            data = await verify_redirects(
                data, url, timeout=self.settings.nav_timeout, transport=self.transport
            )

        self._log(f"Collected {len(data)} evidence categories")
        return EvidenceAudit(data=data)


def _yes_no(value: bool) -> str:
    return "YES" if value else "NO (MISSING)"


def format_evidence(audit: EvidenceAudit) -> str:
    """Render the audit as a fact sheet for an adjudicator.

    Ends with a RED FLAGS section of hard boolean facts that the
    adjudicator is told never to override.
    """
    a = audit.data
    lines: list[str] = []
    add = lines.append

    add(f"## Page: {a.get('url', '')}")
    add(f'Title: "{a.get("title", "")}"')
    if audit.fatal_error:
        add(f"Audit error (evidence may be partial): {audit.fatal_error}")

    add("\n## All Headings")
    for h in a.get("headings") or []:
        add(f'  <{h.get("level")}>: "{h.get("text")}"')

    hero = a.get("heroSection") or {}
    if hero.get("found"):
        add("\n## Hero / Banner Section")
        add(f'Text: "{(hero.get("text") or "")[:600]}"')
        for h in hero.get("headings") or []:
            add(f'  <{h.get("level")}>: "{h.get("text")}"')
        for b in hero.get("buttons") or []:
            add(f'  [{b.get("tag")}] "{b.get("text")}" -> {b.get("href")}')

    add("\n## Full Page Text (first 4000 chars)")
    add((a.get("fullText") or "")[:4000])

    links = a.get("links") or []
    add(f"\n## Links ({len(links)} total)")
    for link in links[:40]:
        hidden = "" if link.get("visible", True) else " (hidden)"
        add(f'  "{link.get("text")}" -> {link.get("href")}{hidden}')

    forms = audit.forms
    add(f"\n## Forms ({len(forms)})")
    for f in forms:
        add(f'\nForm id="{f.get("id", "")}" action="{f.get("action", "")}" '
            f'method="{f.get("method", "")}" ({f.get("fieldCount", 0)} fields)')
        for field in f.get("fields") or []:
            required = " REQUIRED" if field.get("required") else ""
            placeholder = f' placeholder="{field["placeholder"]}"' if field.get("placeholder") else ""
            add(f'  <{field.get("tag")} type="{field.get("type")}" name="{field.get("name")}"{required}{placeholder}>')
        add(f"  Checkboxes: {f.get('checkboxCount', 0)}")
        add(f"  hasPrivacyCheckbox={bool(f.get('hasPrivacyCheckbox'))}")
        add(f"  hasCookieCheckbox={bool(f.get('hasCookieCheckbox'))}")
        add(f"  hasRecaptcha={bool(f.get('hasRecaptcha'))}")
        add(f"  hasPrivacyLink={bool(f.get('hasPrivacyLink'))}")
        add(f"  hasCookieLink={bool(f.get('hasCookieLink'))}")

    fonts = a.get("fonts") or {}
    add("\n## Computed Fonts")
    add(f"Heading font-families: {json.dumps(fonts.get('headingFonts'))}")
    add(f"Body font-families: {json.dumps(fonts.get('bodyFonts'))}")
    add(f"Button font-families: {json.dumps(fonts.get('buttonFonts'))}")
    add(f"Font stylesheets: {json.dumps(fonts.get('fontStylesheets'))}")

    add("\n## CTA Click-Through Navigation")
    for n in a.get("ctaNavigation") or []:
        add(f'  Clicked "{n.get("text")}" (href={n.get("href")})')
        if n.get("error"):
            add(f"    Navigation error: {n['error']}")
        elif n.get("anchor"):
            add(f"    Anchor -> target exists: {n.get('exists')}, target has form: {n.get('hasForm')}")
        else:
            add(f"    Navigated to: {n.get('targetUrl')}")
            add(f"    Has form: {n.get('hasForm')}, form purpose: {n.get('formPurpose')}")
            add(f'    Page title: "{n.get("title")}", headings: {json.dumps(n.get("headings"))}')

    cookie = audit.cookie_consent
    add("\n## Cookie Consent Banner")
    add(f"Banner found: {bool(cookie.get('hasBanner'))}")
    add(f'Banner text: "{cookie.get("bannerText", "")}"')
    add(f'Accept button: {bool(cookie.get("hasAcceptButton"))} ("{cookie.get("acceptButtonText", "")}")')

    add("\n## Dedicated Pages Probed")
    for path, page in audit.pages.items():
        line = f"  {path}: exists={bool(page.get('exists'))}"
        if page.get("redirectedToHome"):
            line += ", redirectedToHome=true"
        status = page.get("httpStatus") or page.get("status")
        if status:
            line += f", HTTP {status}"
        if page.get("redirectLocation"):
            line += f", Location: {page['redirectLocation']}"
        add(line)
        if page.get("exists"):
            if page.get("headings"):
                add(f"    Headings: {' | '.join(str(h) for h in page['headings'])}")
            if page.get("textPreview"):
                add(f'    Content (preview): "{page["textPreview"][:400]}"')

    perf = a.get("performance") or {}
    add("\n## Performance (mobile viewport 375x812)")
    add(f"Mobile page load time: {perf.get('mobileLoadTime')}ms")
    add(f"DOM Content Loaded: {perf.get('domContentLoaded')}ms")
    add(f"Full load: {perf.get('loadComplete')}ms")
    add(f"First Contentful Paint: {perf.get('firstContentfulPaint')}ms")
    add(f"Resources fetched: {perf.get('resourceCount')}")

    mobile = a.get("mobile") or {}
    add("\n## Mobile Friendliness")
    add(f'<meta viewport>: {mobile.get("hasViewportMeta")} ("{mobile.get("viewportContent", "")}")')
    add(f"Horizontal scroll: {mobile.get('hasHorizontalScroll')} "
        f"(body {mobile.get('bodyScrollWidth')}px vs viewport {mobile.get('viewportWidth')}px)")
    add(f"Text elements < 12px: {mobile.get('smallTextElements')}")

    add("\n## RED FLAGS (hard facts from DOM inspection)")
    add("These booleans were read directly from the live DOM. Do NOT override them with assumptions.\n")
    if forms:
        add("FORM COMPLIANCE:")
        add(f"  Total checkboxes across all forms: {sum(f.get('checkboxCount') or 0 for f in forms)}")
        any_privacy = any(f.get("hasPrivacyCheckbox") for f in forms)
        any_cookie = any(f.get("hasCookieCheckbox") for f in forms)
        any_captcha = any(f.get("hasRecaptcha") for f in forms)
        add(f"  Privacy/consent checkbox exists: {_yes_no(any_privacy)}")
        add(f"  Cookie consent checkbox exists: {_yes_no(any_cookie)}")
        add(f"  reCAPTCHA/CAPTCHA exists: {_yes_no(any_captcha)}")
        add(f"  Privacy policy link in/near form: {_yes_no(any(f.get('hasPrivacyLink') for f in forms))}")
        add(f"  Cookie policy link in/near form: {_yes_no(any(f.get('hasCookieLink') for f in forms))}")
        if not (any_privacy or any_cookie or any_captcha):
            add("  CRITICAL: forms have ZERO compliance elements. Any requirement about GDPR, consent,")
            add("  privacy or spam protection MUST FAIL.")
    else:
        add("FORM COMPLIANCE: NO FORMS FOUND ON PAGE")

    add(f"\nCOOKIE CONSENT BANNER: {_yes_no(bool(cookie.get('hasBanner')))}")

    missing = [p for p, d in audit.pages.items() if not d.get("exists") or d.get("redirectedToHome")]
    if missing:
        add(f"\nMISSING DEDICATED PAGES: {', '.join(missing)}")
        add("  These paths returned an HTTP error or redirected to the home page.")

    return "\n".join(lines)
