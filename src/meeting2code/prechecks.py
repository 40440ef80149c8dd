"""Deterministic pre-checks run before any adjudicator session.

A pre-check only ever fails a requirement, and only on hard audit facts
(``hasRecaptcha=false``, ``HTTP 404``, ``redirectedToHome=true``). When no
rule applies the verdict is ``None`` and the requirement goes to the
adjudicator.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from .models import EvidenceAudit

DEDICATED_PAGE_RE = re.compile(r"dedicated\s+(?:[\w-]+\s+){0,3}page|live before launch")

PATH_SUFFIX_RE = re.compile(r"(?:\.\w+)?$")
PATH_QUALIFIER_RE = re.compile(r"-(?:policy|us|page|statement|notice)$")
TOPIC_QUALIFIERS = r"(?:[\s-]+(?:policy|us|statement|notice))?"


def page_topic(path: str) -> str:
    """Topic word a probed path stands for: ``/cookie-policy.html`` -> ``cookie``."""
    name = PATH_SUFFIX_RE.sub("", path.strip("/").rsplit("/", 1)[-1].lower())
    name = PATH_QUALIFIER_RE.sub("", name)
    return name[:-1] if name.endswith("s") and len(name) > 4 else name


def _names_page(req: str, topic: str, paths: list[str]) -> bool:
    """The requirement names the topic right before "page", or one of its paths literally."""
    if re.search(rf"\b{re.escape(topic)}s?{TOPIC_QUALIFIERS}\s+page\b", req):
        return True
    return any(re.search(rf"(?<![\w/]){re.escape(path.lower())}(?![\w-])", req) for path in paths)


@dataclass(frozen=True)
class PreCheckVerdict:
    """Outcome of a deterministic rule. ``auto_fail`` is never overridden."""

    auto_fail: bool
    reason: str


def _has(text: str, *words: str) -> bool:
    return any(word in text for word in words)


def _page_exists(page: dict) -> bool:
    return bool(page.get("exists")) and not page.get("redirectedToHome")


def _page_fact(path: str, page: dict) -> str:
    facts = []
    if page.get("redirectedToHome"):
        facts.append("redirectedToHome=true")
    status = page.get("httpStatus") or page.get("status")
    if status:
        facts.append(f"HTTP {status}")
    if page.get("error"):
        facts.append(f"error: {page['error']}")
    if not facts:
        facts.append("exists=false")
    return f"{path}: {', '.join(facts)}"


def _form_summary(audit: EvidenceAudit) -> str:
    forms = audit.forms
    return (
        f"{len(forms)} form(s), "
        f"checkboxes={sum(f.get('checkboxCount') or 0 for f in forms)}, "
        f"hasRecaptcha={any(f.get('hasRecaptcha') for f in forms)}, "
        f"hasPrivacyCheckbox={any(f.get('hasPrivacyCheckbox') for f in forms)}, "
        f"hasCookieCheckbox={any(f.get('hasCookieCheckbox') for f in forms)}, "
        f"hasPrivacyLink={any(f.get('hasPrivacyLink') for f in forms)}"
    )


def _captcha_reasons(audit: EvidenceAudit) -> list[str]:
    if any(f.get("hasRecaptcha") for f in audit.forms):
        return []
    if not audit.forms:
        return ["No form found on the page, so no captcha exists (hasRecaptcha=false)"]
    return ["No reCAPTCHA or captcha detected in any form (hasRecaptcha=false for all forms)"]


def _compliance_reasons(audit: EvidenceAudit, req: str) -> list[str]:
    forms = audit.forms
    reasons = []

    if "privacy" in req and _has(req, "checkbox", "mandatory"):
        if not any(f.get("hasPrivacyCheckbox") for f in forms):
            reasons.append("No privacy/consent checkbox found in any form (hasPrivacyCheckbox=false for all forms)")

    if "cookie" in req and "consent" in req:
        if not any(f.get("hasCookieCheckbox") for f in forms) and not audit.cookie_consent.get("hasBanner"):
            reasons.append("No cookie consent checkbox in any form and no cookie banner (hasBanner=false)")

    if _has(req, "recaptcha", "captcha", "spam"):
        reasons.extend(_captcha_reasons(audit))

    if "privacy" in req and _has(req, "link", "policy"):
        has_link = any(f.get("hasPrivacyLink") for f in forms)
        has_page = any(
            page_topic(path) == "privacy" and _page_exists(page) for path, page in audit.pages.items()
        )
        if not has_link and not has_page:
            reasons.append("No privacy policy link in/near any form (hasPrivacyLink=false) and no privacy page exists")

    return reasons


def _dedicated_page_reasons(audit: EvidenceAudit, req: str) -> list[str]:
    by_topic: dict[str, dict[str, dict]] = {}
    for path, page in audit.pages.items():
        by_topic.setdefault(page_topic(path), {})[path] = page

    reasons = []
    for topic, probed in by_topic.items():
        if not topic or not _names_page(req, topic, list(probed)):
            continue
        if any(_page_exists(page) for page in probed.values()):
            continue
        facts = "; ".join(_page_fact(path, page) for path, page in probed.items())
        reasons.append(f"Required dedicated {topic} page does not exist ({facts})")
    return reasons


def check(audit: EvidenceAudit, requirement_text: str) -> Optional[PreCheckVerdict]:
    """Run the deterministic rules for one requirement.

    Args:
        audit: Evidence collected from the live site.
        requirement_text: The requirement to check.

    Returns:
        A failing verdict citing the audit facts, or None to defer to the adjudicator.
    """
    req = requirement_text.lower()
    reasons: list[str] = []

    if _has(req, "gdpr", "privacy", "consent") and _has(req, "form", "contact", "checkbox"):
        reasons.extend(_compliance_reasons(audit, req))
    elif _has(req, "recaptcha", "captcha"):
        reasons.extend(_captcha_reasons(audit))

    if DEDICATED_PAGE_RE.search(req):
        reasons.extend(_dedicated_page_reasons(audit, req))

    if not reasons:
        return None

    bullets = "\n".join(f"  - {reason}" for reason in dict.fromkeys(reasons))
    return PreCheckVerdict(
        auto_fail=True,
        reason=(
            "DETERMINISTIC FAIL: browser evidence proves the requirement is not met:\n"
            f"{bullets}\n\nForm evidence: {_form_summary(audit)}"
        ),
    )
