"""Pass-1: deterministic categorization.

Heuristics are an ordered tuple of scorer functions. Each returns an optional
``Candidate``; the fold keeps the running best and lets a later scorer take
over only with a strictly higher confidence, so on ties the earlier scorer
wins. Reordering or adding heuristics is a change to ``DEFAULT_SCORERS``.

After the fold, embedding evidence can raise (never originate) the winning
confidence, and the result is clamped to ``[0, 0.98]``. ``categorize_pass1``
never raises.
"""

from __future__ import annotations

import math
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from .logging_setup import get_logger
from .models import CategorizationResult, NormalizedTransaction, VendorRule
from .normalizers import normalize_vendor, vendors_match
from .store import OrgRuleCache
from .taxonomy import DEFAULT_TAXONOMY, HAIR_SERVICES_SLUG, TaxonomyRegistry

_logger = get_logger("pnl_categorizer.pass1")

# ---- Tunables (private) ------------------------------------------------------

_RULE_CONFIDENCE_BASE: float = 0.70
_RULE_CONFIDENCE_SLOPE: float = 0.05
_RULE_CONFIDENCE_CAP: float = 0.95
_PATTERN_CONFIDENCE: float = 0.75
_EMBEDDING_BOOST: float = 0.05
_PASS1_CEILING: float = 0.98

ERROR_RATIONALE = "Error during pass1 categorization"


@dataclass(frozen=True, slots=True)
class Candidate:
    category_id: str
    confidence: float
    rationale: str


@dataclass(frozen=True, slots=True)
class Pass1Context:
    """Everything a scorer may read. Built per organization per run."""

    org_id: str
    cache: OrgRuleCache
    taxonomy: TaxonomyRegistry = DEFAULT_TAXONOMY


type Scorer = Callable[[NormalizedTransaction, Pass1Context], Candidate | None]


@dataclass(frozen=True, slots=True)
class MccEntry:
    slug: str
    confidence: float
    label: str


# Merchant Category Code -> category. Confidence reflects how unambiguous the
# code is for this business domain.
MCC_TABLE: dict[str, MccEntry] = {
    "7230": MccEntry(HAIR_SERVICES_SLUG, 0.90, "Barber and beauty shops"),
    "7298": MccEntry("skin_care_services", 0.90, "Health and beauty spas"),
    "4215": MccEntry("shipping_expense", 0.90, "Courier services"),
    "9402": MccEntry("shipping_expense", 0.90, "Postal services"),
    "7311": MccEntry("marketing", 0.85, "Advertising services"),
    "5734": MccEntry("app_subscriptions", 0.85, "Computer software stores"),
    "4900": MccEntry("rent_utilities", 0.85, "Utilities"),
    "6300": MccEntry("insurance", 0.85, "Insurance sales"),
    "8931": MccEntry("professional_services", 0.80, "Accounting and bookkeeping"),
    "4511": MccEntry("travel", 0.80, "Airlines"),
    "5111": MccEntry("office_supplies", 0.80, "Stationery and office supplies"),
}


@dataclass(frozen=True, slots=True)
class DescriptionPattern:
    pattern: re.Pattern[str]
    slug: str
    label: str


def _p(regex: str, slug: str, label: str) -> DescriptionPattern:
    return DescriptionPattern(re.compile(regex, re.IGNORECASE), slug, label)


# Ordered; the first match wins among equal confidences.
DESCRIPTION_PATTERNS: tuple[DescriptionPattern, ...] = (
    _p(r"\b(?:facebook|meta|fb)\s?ads?\b", "ads_meta", "meta ads"),
    _p(r"\bgoogle\s?ads\b|\badwords\b", "ads_google", "google ads"),
    _p(r"\btiktok\s?ads?\b", "ads_tiktok", "tiktok ads"),
    _p(r"\b(?:stripe|paypal|square)\b[^\n]*\bfees?\b", "payment_processing_fees", "processor fee"),
    _p(r"\bshopify\s(?:subscription|plan|billing|bill)\b", "shopify_platform", "shopify plan"),
    _p(r"\b(?:klaviyo|mailchimp|attentive|postscript|omnisend)\b", "email_sms_tools", "email/sms"),
    _p(
        r"\b(?:usps|ups|fedex|dhl|shippo|shipstation|pirate\sship|postage)\b",
        "shipping_expense",
        "carrier",
    ),
    _p(r"\b(?:shipbob|shipmonk|deliverr|3pl)\b", "fulfillment_3pl_fees", "3pl"),
    _p(r"\b(?:uline|packlane|noissue|packaging)\b", "packaging_supplies", "packaging"),
    _p(
        r"\b(?:software|saas|adobe|canva|notion|slack|github|google\sworkspace)\b",
        "software_general",
        "software",
    ),
    _p(
        r"\b(?:rent|lease|utilities|electricity|electric\sbill|water\sbill)\b",
        "rent_utilities",
        "rent/utilities",
    ),
    _p(r"\binsurance\b", "insurance", "insurance"),
    _p(r"\b(?:payroll|gusto|wages|salary|contractor)\b", "payroll_contractors", "payroll"),
    _p(
        r"\b(?:accounting|bookkeeping|attorney|legal\sfees?|cpa)\b",
        "professional_services",
        "professional",
    ),
    _p(r"\b(?:wire|overdraft|monthly\sservice|maintenance)\sfee\b", "bank_fees", "bank fee"),
    _p(r"\b(?:airlines?|hotel|airbnb)\b", "travel", "travel"),
)


# ---- Confidence arithmetic ---------------------------------------------------


def weight_confidence(weight: int) -> float:
    """Saturating confidence for a rule corroborated ``weight`` times.

    ``min(0.95, 0.70 + 0.05 * ln(1 + weight))``: one correction gives ~0.73,
    repeated corroboration approaches but never reaches 0.95.
    """

    w = max(0, int(weight))
    return min(_RULE_CONFIDENCE_CAP, _RULE_CONFIDENCE_BASE + _RULE_CONFIDENCE_SLOPE * math.log1p(w))


def _clamp(value: float, upper: float) -> float:
    if not math.isfinite(value):
        return 0.0
    return max(0.0, min(upper, value))


# ---- Scorers -----------------------------------------------------------------


def score_mcc(tx: NormalizedTransaction, ctx: Pass1Context) -> Candidate | None:
    if not tx.mcc:
        return None
    entry = MCC_TABLE.get(tx.mcc)
    if entry is None:
        return None
    node = ctx.taxonomy.get_by_slug(entry.slug)
    if node is None:
        return None
    return Candidate(
        node.id, entry.confidence, f"MCC {tx.mcc} ({entry.label}) -> {entry.slug}"
    )


def rule_matches(rule: VendorRule, merchant_key: str, tx: NormalizedTransaction) -> bool:
    """True when every field present in the rule's pattern matches ``tx``."""

    pattern = rule.pattern
    if pattern.is_empty():
        return False
    if pattern.vendor is not None and not vendors_match(
        merchant_key, normalize_vendor(pattern.vendor)
    ):
        return False
    if pattern.mcc is not None and pattern.mcc != tx.mcc:
        return False
    if pattern.description_tokens:
        desc = tx.description.lower()
        if not all(tok in desc for tok in pattern.description_tokens):
            return False
    return True


def score_vendor_rules(tx: NormalizedTransaction, ctx: Pass1Context) -> Candidate | None:
    rules: Sequence[VendorRule] = ctx.cache.rules
    if not rules:
        return None
    merchant_key = normalize_vendor(tx.merchant_name)
    best: Candidate | None = None
    for rule in rules:
        if not rule_matches(rule, merchant_key, tx):
            continue
        conf = weight_confidence(rule.weight)
        if best is None or conf > best.confidence:
            what = f"vendor '{rule.pattern.vendor}'" if rule.pattern.vendor else "pattern"
            best = Candidate(
                rule.category_id,
                conf,
                f"Vendor rule {rule.id}: {what} matched (weight {rule.weight})",
            )
    return best


def score_description(tx: NormalizedTransaction, ctx: Pass1Context) -> Candidate | None:
    if not tx.description:
        return None
    for dp in DESCRIPTION_PATTERNS:
        if dp.pattern.search(tx.description) is None:
            continue
        node = ctx.taxonomy.get_by_slug(dp.slug)
        if node is None:
            continue
        return Candidate(
            node.id, _PATTERN_CONFIDENCE, f"Description pattern ({dp.label}) -> {dp.slug}"
        )
    return None


DEFAULT_SCORERS: tuple[Scorer, ...] = (score_mcc, score_vendor_rules, score_description)


def has_embedding_evidence(tx: NormalizedTransaction, cache: OrgRuleCache) -> bool:
    """Whether the org's embedding cache knows a vendor similar to the merchant."""

    if not cache.has_embeddings:
        return False
    merchant_key = normalize_vendor(tx.merchant_name)
    if not merchant_key:
        return False
    if merchant_key in cache.embedding_vendors:
        return True
    return any(vendors_match(merchant_key, v) for v in cache.embedding_vendors)


# ---- Entry point -------------------------------------------------------------


def _fold(
    tx: NormalizedTransaction, ctx: Pass1Context, scorers: Sequence[Scorer]
) -> tuple[Candidate | None, list[str]]:
    best: Candidate | None = None
    notes: list[str] = []
    for scorer in scorers:
        cand = scorer(tx, ctx)
        if cand is None:
            continue
        if best is None or cand.confidence > best.confidence:
            best = cand
            notes.append(cand.rationale)
    return best, notes


def categorize_pass1(
    tx: NormalizedTransaction,
    ctx: Pass1Context,
    *,
    scorers: Sequence[Scorer] = DEFAULT_SCORERS,
) -> CategorizationResult:
    """Run the deterministic heuristics for ``tx``.

    Returns an empty result (no category, no confidence) when nothing
    matched, and an empty result with an error note when any scorer raised.
    """

    try:
        best, notes = _fold(tx, ctx, scorers)
        if best is None:
            return CategorizationResult()

        confidence = best.confidence
        if has_embedding_evidence(tx, ctx.cache):
            confidence += _EMBEDDING_BOOST
            notes.append(f"Similar vendor evidence (+{_EMBEDDING_BOOST:.2f})")

        confidence = _clamp(confidence, _PASS1_CEILING)
        if confidence == 0.0:
            return CategorizationResult()
        return CategorizationResult(
            category_id=best.category_id,
            confidence=confidence,
            rationale=tuple(notes),
        )
    except Exception as e:  # noqa: BLE001 - Pass-1 never raises
        _logger.error(
            "pass1:failed tx_id=%s org_id=%s error=%s detail=%s",
            tx.id,
            ctx.org_id,
            e.__class__.__name__,
            e,
        )
        return CategorizationResult(rationale=(ERROR_RATIONALE,))


__all__ = [
    "Candidate",
    "DEFAULT_SCORERS",
    "DESCRIPTION_PATTERNS",
    "DescriptionPattern",
    "ERROR_RATIONALE",
    "MCC_TABLE",
    "MccEntry",
    "Pass1Context",
    "Scorer",
    "categorize_pass1",
    "has_embedding_evidence",
    "rule_matches",
    "score_description",
    "score_mcc",
    "score_vendor_rules",
    "weight_confidence",
]
