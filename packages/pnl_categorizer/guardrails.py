"""Guardrails: veto financially-wrong category proposals.

Three checks run in a fixed order, each on the output of the previous one:

1. revenue: refunds/chargebacks or negative amounts cannot be positive
   revenue; payment processors are fees, not revenue.
2. sales tax: payments to tax authorities go to the sales-tax liability.
3. payout clearing: platform payouts are transfers through clearing.

A triggered check redirects the slug and subtracts its penalty. Confidence
never increases, and the final value is a finite number in ``[0, 1]`` even
when the input was ``NaN`` or infinite.
"""

from __future__ import annotations

import math
import re
from collections.abc import Callable
from dataclasses import dataclass

from .models import AccountingType, GuardrailOutcome, GuardrailResult, NormalizedTransaction
from .taxonomy import (
    DEFAULT_TAXONOMY,
    PAYMENT_PROCESSING_SLUG,
    PAYOUT_CLEARING_SLUG,
    REFUNDS_SLUG,
    SALES_TAX_SLUG,
    TaxonomyRegistry,
)

REFUND_PENALTY: float = 0.4
PROCESSOR_PENALTY: float = 0.3
SALES_TAX_PENALTY: float = 0.2
PAYOUT_PENALTY: float = 0.1

# Keywords match by containment: "AUTOREFUND", "REVERSALS" and "REFUNDING" all count.
_REFUND_RE = re.compile(
    r"refund|return|chargeback|reversal|void|cancell?ed|dispute|adjustment|credit"
)
_PROCESSOR_RE = re.compile(
    r"\b(?:stripe|paypal|square|shopify\spayments|shop\spay|afterpay|affirm|klarna"
    r"|sezzle|adyen|braintree)\b"
)
_SALES_TAX_RE = re.compile(
    r"\b(?:sales\stax|state\stax|local\stax|use\stax|revenue\sdepartment|tax\sauthority"
    r"|comptroller|department\sof\srevenue|tax\scommission)\b"
)
_TAX_AUTHORITY_MERCHANT_RE = re.compile(
    r"\b(?:state\sof|city\sof|county\sof|department\sof\srevenue|tax\scollector"
    r"|revenue\sservice)\b"
)
_PAYOUT_RE = re.compile(r"shopify\s(?:payments\s)?(?:payout|transfer|deposit)")
_PAYOUT_WORD_RE = re.compile(r"payout|transfer|deposit|settlement")


@dataclass(frozen=True, slots=True)
class _Text:
    merchant: str
    description: str

    @property
    def combined(self) -> str:
        return f"{self.description} {self.merchant}"


def _text(tx: NormalizedTransaction) -> _Text:
    return _Text(
        merchant=" ".join((tx.merchant_name or "").lower().split()),
        description=" ".join((tx.description or "").lower().split()),
    )


type GuardrailCheck = Callable[
    [NormalizedTransaction, _Text, str, TaxonomyRegistry], GuardrailOutcome
]

_ALLOWED = GuardrailOutcome(allowed=True)


def check_revenue(
    tx: NormalizedTransaction, text: _Text, slug: str, taxonomy: TaxonomyRegistry
) -> GuardrailOutcome:
    node = taxonomy.get_by_slug(slug)
    if node is None or node.accounting_type is not AccountingType.REVENUE:
        return _ALLOWED
    if "contra" in slug:
        return _ALLOWED
    if _REFUND_RE.search(text.combined) or tx.amount_cents < 0:
        return GuardrailOutcome(
            allowed=False,
            reason="Refund/return cannot map to positive revenue",
            suggested_category_slug=REFUNDS_SLUG,
            confidence_penalty=REFUND_PENALTY,
            tag="revenue_block",
        )
    if _PROCESSOR_RE.search(text.combined):
        return GuardrailOutcome(
            allowed=False,
            reason="Payment processor activity is a fee, not revenue",
            suggested_category_slug=PAYMENT_PROCESSING_SLUG,
            confidence_penalty=PROCESSOR_PENALTY,
            tag="processor_block",
        )
    return _ALLOWED


def check_sales_tax(
    tx: NormalizedTransaction, text: _Text, slug: str, taxonomy: TaxonomyRegistry
) -> GuardrailOutcome:
    if slug == SALES_TAX_SLUG:
        return _ALLOWED
    if _SALES_TAX_RE.search(text.combined) or _TAX_AUTHORITY_MERCHANT_RE.search(text.merchant):
        return GuardrailOutcome(
            allowed=False,
            reason="Sales tax remittance is a liability, not P&L",
            suggested_category_slug=SALES_TAX_SLUG,
            confidence_penalty=SALES_TAX_PENALTY,
            tag="sales_tax_redirect",
        )
    return _ALLOWED


def check_payout(
    tx: NormalizedTransaction, text: _Text, slug: str, taxonomy: TaxonomyRegistry
) -> GuardrailOutcome:
    if slug == PAYOUT_CLEARING_SLUG:
        return _ALLOWED
    is_payout = bool(_PAYOUT_RE.search(text.combined)) or (
        "shopify" in text.merchant and bool(_PAYOUT_WORD_RE.search(text.description))
    )
    if is_payout:
        return GuardrailOutcome(
            allowed=False,
            reason="Platform payout is a clearing transfer, not revenue",
            suggested_category_slug=PAYOUT_CLEARING_SLUG,
            confidence_penalty=PAYOUT_PENALTY,
            tag="shopify_payout_redirect",
        )
    return _ALLOWED


GUARDRAIL_CHECKS: tuple[GuardrailCheck, ...] = (check_revenue, check_sales_tax, check_payout)


def _finite_unit(value: float | None) -> float:
    if value is None:
        return 0.0
    try:
        f = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(f):
        return 0.0
    return max(0.0, min(1.0, f))


def apply_guardrails(
    tx: NormalizedTransaction,
    proposed_slug: str | None,
    confidence: float | None,
    *,
    taxonomy: TaxonomyRegistry = DEFAULT_TAXONOMY,
) -> GuardrailResult:
    """Run every check in order and return the (possibly redirected) outcome.

    Parameters
    ----------
    tx:
        The transaction being categorized.
    proposed_slug:
        Slug of the candidate category. ``None`` means no candidate; checks
        are skipped and only the confidence is sanitized.
    confidence:
        Candidate confidence; non-finite values count as 0.

    Returns
    -------
    GuardrailResult
        ``final_slug``, ``final_confidence`` (finite, in ``[0, 1]``), the tags
        of the checks that fired, and their violation messages.
    """

    conf = _finite_unit(confidence)
    if proposed_slug is None:
        return GuardrailResult(final_slug=None, final_confidence=conf)

    slug = proposed_slug
    applied: list[str] = []
    violations: list[str] = []
    text = _text(tx)
    for check in GUARDRAIL_CHECKS:
        outcome = check(tx, text, slug, taxonomy)
        if outcome.allowed or outcome.suggested_category_slug is None:
            continue
        penalty = _finite_unit(outcome.confidence_penalty)
        conf = max(0.0, conf - penalty)
        violations.append(f"{outcome.reason} ({slug} -> {outcome.suggested_category_slug})")
        applied.append(outcome.tag or check.__name__)
        slug = outcome.suggested_category_slug

    return GuardrailResult(
        final_slug=slug,
        final_confidence=_finite_unit(conf),
        guardrails_applied=tuple(applied),
        violations=tuple(violations),
    )


__all__ = [
    "GUARDRAIL_CHECKS",
    "GuardrailCheck",
    "PAYOUT_PENALTY",
    "PROCESSOR_PENALTY",
    "REFUND_PENALTY",
    "SALES_TAX_PENALTY",
    "apply_guardrails",
    "check_payout",
    "check_revenue",
    "check_sales_tax",
]
