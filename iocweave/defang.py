"""Indicator refanging: convert defanged IOC values back to normal form."""

from __future__ import annotations

import re

from .models import IndicatorType

# Patterns that replace the dot in defanged values
_DOT_PATTERNS = [
    r"\[\.\]",
    r"\[dot\]",
    r"\(dot\)",
    r"\(\.\)",
    r"\{\.\}",
]
_DOT_RE = re.compile("|".join(_DOT_PATTERNS), re.IGNORECASE)

_AT_RE = re.compile(r"\[@\]|\[at\]|\(at\)", re.IGNORECASE)
_COLON_RE = re.compile(r"\[:\]")
_SCHEME_RE = re.compile(r"^(h[x]{2}p)(s?)(\[?://\]?|://)", re.IGNORECASE)

# Kinds whose identity is case-insensitive on the wire as well
_LOWERCASE_KINDS = {IndicatorType.DOMAIN, IndicatorType.FILE_HASH, IndicatorType.EMAIL}


def refang(text: str) -> str:
    """Undo common defanging.

    Handles: [.] [dot] (dot) (.) {.}, [@] [at] (at), [:], and hxxp:// / hxxps://
    """
    text = _DOT_RE.sub(".", text)
    text = _AT_RE.sub("@", text)
    text = _COLON_RE.sub(":", text)
    return _SCHEME_RE.sub(lambda m: f"http{m.group(2).lower()}://", text)


def normalize_value(value: str, kind: IndicatorType) -> str:
    """Refang and trim a raw feed value before it becomes an Indicator.

    Domains, hashes, and email addresses are lowercased; URLs keep their case
    because paths are case-sensitive.
    """
    cleaned = refang(value.strip())
    if kind in _LOWERCASE_KINDS:
        cleaned = cleaned.lower()
    if kind == IndicatorType.DOMAIN:
        cleaned = cleaned.rstrip(".")
    return cleaned
