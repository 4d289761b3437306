"""Redaction of credentials in failure reasons before they reach envelopes or logs.

Backend errors echo request details back at us: the ``X-API-Key`` header the
relay sends, streaming-handle URLs with signed query tokens, or an
``AGENT_RELAY_API_KEY=...`` line from a misconfigured shell.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

PREVIEW_MAX_CHARS = 2_000
REDACTED = "[redacted]"


@dataclass(frozen=True, slots=True)
class RedactionRule:
    name: str
    pattern: re.Pattern[str]
    replacement: str

    def apply(self, text: str) -> str:
        return self.pattern.sub(self.replacement, text)


REDACTION_RULES: tuple[RedactionRule, ...] = (
    RedactionRule(
        "authorization_header",
        re.compile(r"(?i)\b(authorization)\s*[:=]\s*(?:(?:bearer|basic)\s+)?[^\s,;\"']+"),
        rf"\1: {REDACTED}",
    ),
    RedactionRule(
        "bearer_token",
        re.compile(r"(?i)\bbearer\s+[a-z0-9._~+/=\-]{8,}"),
        f"Bearer {REDACTED}",
    ),
    RedactionRule(
        "api_key_header",
        re.compile(r"(?i)\b(x-api-key)\s*[:=]\s*['\"]?[^\s,;\"']+['\"]?"),
        rf"\1: {REDACTED}",
    ),
    RedactionRule(
        "relay_api_key_env",
        re.compile(r"\b(AGENT_RELAY_API_KEY)\s*=\s*['\"]?[^\s'\"]+['\"]?"),
        rf"\1={REDACTED}",
    ),
    RedactionRule(
        "secret_key_literal",
        re.compile(r"\bsk-[A-Za-z0-9_\-]{8,}"),
        REDACTED,
    ),
    RedactionRule(
        "url_secret_param",
        re.compile(
            r"(?i)([?&](?:api_key|apikey|key|token|access_token|signature|sig|auth)=)[^&\s#\"']+",
        ),
        rf"\1{REDACTED}",
    ),
    RedactionRule(
        "email",
        re.compile(r"\b[\w.%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
        "[email]",
    ),
)


def redact_secrets(text: str, rules: tuple[RedactionRule, ...] = REDACTION_RULES) -> str:
    for rule in rules:
        text = rule.apply(text)
    return text


def sanitize_preview(text: str, *, max_chars: int = PREVIEW_MAX_CHARS) -> str:
    """Redact credentials and clamp to ``max_chars``; blank input gives ``""``."""

    compact = text.strip()
    if not compact:
        return ""
    return redact_secrets(compact)[:max_chars]
