"""Output sanitization and PII redaction applied to operation results."""

from __future__ import annotations

import re
from typing import Any

from .config_loader import SecuritySettings

_HTML_TAG = re.compile(r"<[^>]+>")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_INLINE_WS = re.compile(r"[ \t\f\v]+")
_BLANK_LINES = re.compile(r"\n{3,}")

_EMAIL = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
_CARD = re.compile(r"\b(?:\d[ -]?){12,18}\d\b")
_IBAN = re.compile(r"\b[A-Z]{2}\d{2}(?: ?[A-Z0-9]{4}){2,7}(?: ?[A-Z0-9]{1,3})?\b")
_NRB = re.compile(r"\b\d{2}(?: ?\d{4}){6}\b")
_SSN = re.compile(r"\b\d{3}-\d{2}-\d{4}\b")
_PESEL = re.compile(r"\b\d{11}\b")
_POLISH_ID = re.compile(r"\b[A-Z]{3} ?\d{6}\b")
_POLISH_PASSPORT = re.compile(r"\b[A-Z]{2} ?\d{7}\b")
_POLISH_PHONE = re.compile(r"(?:\+48[ -]?)?\b\d{3}[ -]\d{3}[ -]\d{3}\b")
_PHONE = re.compile(r"(?:\+\d{1,3}[ .-]?)?(?:\(\d{3}\)|\b\d{3})[ .-]\d{3}[ .-]\d{4}\b")

_PESEL_WEIGHTS = (1, 3, 7, 9, 1, 3, 7, 9, 1, 3)


def _luhn_valid(number: str) -> bool:
    digits = [int(d) for d in number if d.isdigit()]
    if not 13 <= len(digits) <= 19:
        return False
    total = 0
    for i, d in enumerate(reversed(digits)):
        if i % 2 == 1:
            d *= 2
            if d > 9:
                d -= 9
        total += d
    return total % 10 == 0


def _pesel_valid(number: str) -> bool:
    checksum = sum(int(d) * w for d, w in zip(number[:10], _PESEL_WEIGHTS))
    return (10 - checksum % 10) % 10 == int(number[10])


def sanitize_output(
    text: str,
    *,
    remove_html: bool = True,
    remove_control_chars: bool = True,
    normalize_whitespace: bool = True,
    max_length: int | None = None,
) -> str:
    if remove_html:
        text = _HTML_TAG.sub("", text)
    if remove_control_chars:
        text = _CONTROL_CHARS.sub("", text)
    if normalize_whitespace:
        text = _INLINE_WS.sub(" ", text)
        text = _BLANK_LINES.sub("\n\n", text).strip()
    if max_length is not None and len(text) > max_length:
        text = text[:max_length]
    return text


def redact_pii(text: str, settings: SecuritySettings) -> tuple[str, list[str]]:
    """Replace PII with the placeholder; returns the text and detected PII types."""
    detected: list[str] = []
    placeholder = settings.pii_placeholder

    def _apply(pattern: re.Pattern, kind: str, source: str, validator=None) -> str:
        def _sub(match: re.Match) -> str:
            if validator is not None and not validator(match.group(0)):
                return match.group(0)
            if kind not in detected:
                detected.append(kind)
            return placeholder

        return pattern.sub(_sub, source)

    if settings.redact_emails:
        text = _apply(_EMAIL, "email", text)
    if settings.redact_credit_cards:
        text = _apply(_CARD, "credit_card", text, _luhn_valid)
    if settings.redact_bank_accounts:
        text = _apply(_IBAN, "bank_account", text)
        text = _apply(_NRB, "bank_account", text)
    if settings.redact_ssn:
        text = _apply(_SSN, "ssn", text)
    if settings.redact_pesel:
        text = _apply(_PESEL, "pesel", text, _pesel_valid)
    if settings.redact_polish_id:
        text = _apply(_POLISH_ID, "polish_id_card", text)
    if settings.redact_polish_passport:
        text = _apply(_POLISH_PASSPORT, "polish_passport", text)
    if settings.redact_polish_phones:
        text = _apply(_POLISH_PHONE, "polish_phone", text)
    if settings.redact_phones:
        text = _apply(_PHONE, "phone", text)
    return text, detected


def secure_output(value: Any, settings: SecuritySettings) -> tuple[Any, list[str]]:
    """Sanitize and redact every string inside a JSON-like result.

    Working on string leaves keeps the result valid JSON, whatever the
    sanitizer removes or truncates.
    """
    detected: list[str] = []

    def _walk(node: Any) -> Any:
        if isinstance(node, str):
            if settings.sanitize_output:
                node = sanitize_output(
                    node,
                    remove_html=settings.remove_html,
                    remove_control_chars=settings.remove_control_chars,
                    normalize_whitespace=settings.normalize_whitespace,
                    max_length=settings.max_output_length,
                )
            node, found = redact_pii(node, settings)
            for kind in found:
                if kind not in detected:
                    detected.append(kind)
            return node
        if isinstance(node, dict):
            return {k: _walk(v) for k, v in node.items()}
        if isinstance(node, (list, tuple)):
            return [_walk(v) for v in node]
        return node

    return _walk(value), detected
