"""Vendor-name normalization used by rule matching and the rule validator."""

from __future__ import annotations

import re

_LEGAL_SUFFIX_RE = re.compile(r"\b(?:llc|inc|corp|ltd|co|company)\b\.?")
_PUNCT_RE = re.compile(r"[^\w\s]")
_WS_RE = re.compile(r"\s+")


def normalize_vendor(name: str | None) -> str:
    """Return a comparison key for a merchant/vendor name.

    Lowercases, drops legal suffixes (``llc``, ``inc``, ``corp``, ``ltd``,
    ``co``, ``company``), replaces punctuation with spaces and collapses
    whitespace. Idempotent.

    >>> normalize_vendor("Friendly Cuts LLC")
    'friendly cuts'
    """

    if not name:
        return ""
    s = name.strip().lower()
    # Punctuation first so "Acme,Inc." exposes the suffix as a word.
    s = _PUNCT_RE.sub(" ", s)
    s = _LEGAL_SUFFIX_RE.sub(" ", s)
    s = _WS_RE.sub(" ", s)
    return s.strip()


def vendors_match(merchant_key: str, vendor_key: str) -> bool:
    """Exact or either-direction substring match between normalized names.

    Empty keys never match; an empty string would otherwise be contained in
    every merchant.
    """

    if not merchant_key or not vendor_key:
        return False
    return merchant_key == vendor_key or vendor_key in merchant_key or merchant_key in vendor_key


__all__ = ["normalize_vendor", "vendors_match"]
