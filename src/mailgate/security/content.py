"""Suspicious-content heuristics applied by the content-scanning policy.

Each pattern is a small regex over ``subject + body`` with bounded gaps
between keywords, grouped into categories (urgency, financial transfer,
credential harvesting, cryptocurrency).  The scanner reports which patterns
matched; deciding what to do with a match is the policy's job.
"""

from __future__ import annotations

import re
from typing import NamedTuple

from pydantic import BaseModel, ConfigDict

# Gap between keywords: at most 120 characters, spanning line breaks.
_GAP = r".{0,120}?"


class SuspiciousPattern(NamedTuple):
    """A named heuristic and the category it belongs to."""

    name: str
    category: str
    regex: re.Pattern[str]


def _pattern(name: str, category: str, expr: str) -> SuspiciousPattern:
    return SuspiciousPattern(
        name=name,
        category=category,
        regex=re.compile(expr, re.IGNORECASE | re.DOTALL),
    )


SUSPICIOUS_PATTERNS: tuple[SuspiciousPattern, ...] = (
    _pattern(
        "urgent_money_transfer",
        "urgency",
        rf"\b(urgent|urgently|asap|immediately){_GAP}\b(transfer|wire|send|pay)\b"
        rf"{_GAP}(?:\b(?:money|funds|payment|amount|bitcoin)\b|\$\s?\d)",
    ),
    _pattern(
        "transfer_funds",
        "financial_transfer",
        rf"\b(transfer|wire|send){_GAP}(?:\b(?:money|funds|payment|bitcoin)\b|\$\s?\d)",
    ),
    _pattern(
        "wire_transfer_immediately",
        "financial_transfer",
        rf"\bwire{_GAP}transfer{_GAP}\b(immediately|today|now)\b",
    ),
    _pattern(
        "gift_card_request",
        "financial_transfer",
        rf"\b(buy|purchase|send){_GAP}\bgift ?cards?\b",
    ),
    _pattern(
        "click_link_verify",
        "credential_harvesting",
        rf"\bclick{_GAP}\blink{_GAP}\bverify",
    ),
    _pattern(
        "account_suspended",
        "credential_harvesting",
        rf"\b(suspended{_GAP}\baccount|account{_GAP}\b(will be|has been|is) suspended)\b",
    ),
    _pattern(
        "confirm_credentials",
        "credential_harvesting",
        rf"\b(confirm|verify|update){_GAP}\byour\s+(password|login credentials|bank details)\b",
    ),
    _pattern(
        "cryptocurrency",
        "cryptocurrency",
        r"\b(bitcoin|cryptocurrency|crypto ?wallet)\b",
    ),
)


class ContentScanResult(BaseModel):
    """Patterns and categories that matched one message."""

    model_config = ConfigDict(frozen=True)

    matched_patterns: list[str]
    categories: list[str]
    content_length: int

    @property
    def suspicious(self) -> bool:
        """Return True if any pattern matched."""
        return bool(self.matched_patterns)


def scan_content(
    subject: str,
    body: str,
    patterns: tuple[SuspiciousPattern, ...] = SUSPICIOUS_PATTERNS,
) -> ContentScanResult:
    """Scan a subject and body against the suspicious-pattern catalogue.

    Args:
        subject: The email subject.
        body: The email body text.
        patterns: Patterns to apply, in reporting order.

    Returns:
        The matched pattern names and their de-duplicated categories.
    """
    content = f"{subject}\n{body}"
    matched: list[str] = []
    categories: list[str] = []
    for pattern in patterns:
        if pattern.regex.search(content):
            matched.append(pattern.name)
            if pattern.category not in categories:
                categories.append(pattern.category)
    return ContentScanResult(
        matched_patterns=matched,
        categories=categories,
        content_length=len(content),
    )
