from datetime import date

import pytest

from pnl_categorizer.guardrails import apply_guardrails
from pnl_categorizer.models import NormalizedTransaction
from pnl_categorizer.taxonomy import (
    PAYMENT_PROCESSING_SLUG,
    PAYOUT_CLEARING_SLUG,
    REFUNDS_SLUG,
    SALES_TAX_SLUG,
)


def _tx(description: str = "", merchant: str | None = None, amount: int = 10000):
    return NormalizedTransaction(
        id="t1",
        org_id="org-1",
        date=date(2025, 2, 1),
        amount_cents=amount,
        description=description,
        merchant_name=merchant,
    )


def test_refund_cannot_be_revenue():
    res = apply_guardrails(_tx("REFUND FOR ORDER #12345", amount=-5000), "dtc_sales", 0.9)
    assert res.final_slug == REFUNDS_SLUG
    assert res.final_confidence == pytest.approx(0.5)
    assert res.guardrails_applied == ("revenue_block",)
    assert res.violations[0].endswith(f"(dtc_sales -> {REFUNDS_SLUG})")


def test_negative_amount_cannot_be_positive_revenue():
    res = apply_guardrails(_tx("order 1001", amount=-2500), "dtc_sales", 0.8)
    assert res.final_slug == REFUNDS_SLUG


def test_contra_revenue_is_allowed():
    res = apply_guardrails(_tx("refund", amount=-5000), REFUNDS_SLUG, 0.9)
    assert res.final_slug == REFUNDS_SLUG
    assert res.final_confidence == pytest.approx(0.9)
    assert res.guardrails_applied == ()


def test_processor_activity_is_a_fee():
    res = apply_guardrails(_tx("STRIPE BALANCE", merchant="Stripe"), "dtc_sales", 0.9)
    assert res.final_slug == PAYMENT_PROCESSING_SLUG
    assert res.final_confidence == pytest.approx(0.6)
    assert res.guardrails_applied == ("processor_block",)


def test_sales_tax_remittance_goes_to_liability():
    res = apply_guardrails(
        _tx("SALES TAX PAYMENT Q1", merchant="State of California", amount=-80000),
        "other_ops",
        0.8,
    )
    assert res.final_slug == SALES_TAX_SLUG
    assert res.final_confidence == pytest.approx(0.6)
    assert res.guardrails_applied == ("sales_tax_redirect",)


def test_shopify_payout_goes_to_clearing():
    res = apply_guardrails(_tx("SHOPIFY PAYOUT 7781", merchant="Shopify"), "dtc_sales", 0.9)
    assert res.final_slug == PAYOUT_CLEARING_SLUG
    assert res.final_confidence == pytest.approx(0.8)
    assert res.guardrails_applied == ("shopify_payout_redirect",)


def test_checks_compose_in_order():
    res = apply_guardrails(
        _tx("SHOPIFY PAYMENTS TRANSFER", merchant="Shopify", amount=20000), "dtc_sales", 0.9
    )
    # processor redirect first, then the payout redirect on the new slug
    assert res.guardrails_applied == ("processor_block", "shopify_payout_redirect")
    assert res.final_slug == PAYOUT_CLEARING_SLUG
    assert res.final_confidence == pytest.approx(0.5)
    assert len(res.violations) == 2


def test_non_revenue_category_is_untouched_by_revenue_check():
    res = apply_guardrails(_tx("refund on ad spend", amount=-100), "marketing", 0.7)
    assert res.final_slug == "marketing"
    assert res.final_confidence == pytest.approx(0.7)


def test_unknown_slug_passes_through():
    res = apply_guardrails(_tx("order"), "not_a_real_slug", 0.7)
    assert res.final_slug == "not_a_real_slug"


def test_penalty_never_drops_below_zero():
    res = apply_guardrails(_tx("chargeback", amount=-100), "dtc_sales", 0.2)
    assert res.final_confidence == 0.0


@pytest.mark.parametrize("bad", [float("nan"), float("inf"), float("-inf"), None])
def test_non_finite_confidence_is_sanitized(bad):
    res = apply_guardrails(_tx("order"), "dtc_sales", bad)
    assert res.final_confidence == 0.0


def test_confidence_is_clamped_to_one():
    assert apply_guardrails(_tx("order"), "dtc_sales", 1.5).final_confidence == 1.0


def test_missing_slug_skips_checks():
    res = apply_guardrails(_tx("REFUND", amount=-100), None, 0.4)
    assert res.final_slug is None
    assert res.final_confidence == pytest.approx(0.4)
    assert res.guardrails_applied == ()


@pytest.mark.parametrize(
    "description",
    [
        "REFUNDING CUSTOMER ORDER 991",
        "PAYMENT REVERSALS BATCH 12",
        "AUTOREFUND ORDER #12345",
        "CHARGEBACKS WEEK 3",
        "ORDER CANCELED BY BUYER",
        "DISPUTED CHARGE 4410",
    ],
)
def test_refund_keyword_variants_never_stay_revenue(description):
    res = apply_guardrails(_tx(description), "dtc_sales", 0.9)
    assert res.final_slug == REFUNDS_SLUG
    assert res.guardrails_applied[0] == "revenue_block"
    assert res.violations


@pytest.mark.parametrize(
    ("description", "merchant"),
    [
        ("SHOPIFY PAYOUTS 2024-01-02", None),
        ("SHOPIFY PAYMENTS DEPOSITS", None),
        ("SETTLEMENTS 2024-01", "Shopify"),
    ],
)
def test_payout_variants_go_to_clearing(description, merchant):
    res = apply_guardrails(_tx(description, merchant=merchant), "dtc_sales", 0.9)
    assert res.final_slug == PAYOUT_CLEARING_SLUG
    assert res.guardrails_applied[-1] == "shopify_payout_redirect"
