"""Prompt construction for Pass-2 (LLM) categorization.

Builds:
- The system instructions.
- The per-transaction user content: merchant, description (hard-capped at
  160 characters), signed amount, MCC, industry, optional prior category and
  the prompt-eligible slugs grouped by accounting type.
- The JSON Schema ``text.format`` object for the OpenAI Responses API.

Output is deterministic for a given transaction and taxonomy.
"""

from __future__ import annotations

from collections.abc import Sequence

from openai.types.responses.response_format_text_json_schema_config_param import (
    ResponseFormatTextJSONSchemaConfigParam,
)

from .models import AccountingType, CategoryNode, NormalizedTransaction
from .taxonomy import PAYMENT_PROCESSING_SLUG, REFUNDS_SLUG, TaxonomyRegistry, group_by_type

DESCRIPTION_MAX_CHARS: int = 160
_ELLIPSIS = "..."

# Section label per accounting type, in prompt order.
_GROUP_LABELS: tuple[tuple[AccountingType, str], ...] = (
    (AccountingType.REVENUE, "Revenue"),
    (AccountingType.COGS, "COGS"),
    (AccountingType.OPEX, "Expenses"),
    (AccountingType.LIABILITY, "Liabilities"),
    (AccountingType.CLEARING, "Clearing"),
)


def truncate_description(description: str | None, limit: int = DESCRIPTION_MAX_CHARS) -> str:
    """Cap ``description`` at ``limit`` characters, ending in ``...`` when cut.

    A string of exactly ``limit`` characters is returned unchanged; longer
    ones become the first ``limit - 3`` characters plus the ellipsis, so the
    result is never longer than ``limit``.
    """

    text = (description or "").strip()
    if len(text) <= limit:
        return text
    return text[: limit - len(_ELLIPSIS)] + _ELLIPSIS


def format_amount(amount_cents: int) -> str:
    """Render signed cents as dollars with two decimals (``-1299`` -> ``-$12.99``)."""

    sign = "-" if amount_cents < 0 else ""
    dollars, cents = divmod(abs(int(amount_cents)), 100)
    return f"{sign}${dollars}.{cents:02d}"


def build_system_instructions() -> str:
    return (
        "You are a bookkeeping assistant that assigns exactly one profit-and-loss "
        "category to a business transaction. Choose only from the category slugs "
        "provided. Never invent categories. Respond with a single JSON object: "
        '{"category_slug": string, "confidence": number between 0 and 1, '
        '"rationale": short string}.'
    )


def _grouped_slug_lines(nodes: Sequence[CategoryNode]) -> list[str]:
    grouped = group_by_type(nodes)
    lines: list[str] = []
    for kind, label in _GROUP_LABELS:
        members = grouped.get(kind)
        if members:
            lines.append(f"{label}: {', '.join(n.slug for n in members)}")
    return lines


def build_user_content(
    tx: NormalizedTransaction,
    taxonomy: TaxonomyRegistry,
    *,
    industry: str = "ecommerce",
) -> str:
    """Render the user message for one transaction."""

    lines: list[str] = [
        "Categorize this business transaction.",
        "",
        f"Merchant: {tx.merchant_name or 'Unknown'}",
        f"Description: {truncate_description(tx.description)}",
        f"Amount: {format_amount(tx.amount_cents)} {tx.currency}",
        f"MCC: {tx.mcc or 'Not provided'}",
        f"Industry: {industry}",
    ]
    prior = taxonomy.get_by_id(tx.prior_category_id)
    if prior is not None:
        lines.append(f"Prior category: {prior.slug}")

    lines.extend(["", "Available categories:"])
    lines.extend(_grouped_slug_lines(taxonomy.prompt_categories()))
    lines.extend(
        [
            "",
            "Rules:",
            f"- Refunds, returns and chargebacks use {REFUNDS_SLUG}, never positive revenue.",
            f"- Payment processors (Stripe, PayPal, Shop Pay) are {PAYMENT_PROCESSING_SLUG}, "
            "not revenue.",
            "- Use the most specific slug that fits; use other_ops only when nothing fits.",
        ]
    )
    return "\n".join(lines)


def build_response_format(
    taxonomy: TaxonomyRegistry,
) -> ResponseFormatTextJSONSchemaConfigParam:
    """Return the JSON Schema ``text.format`` object for one decision.

    Shape::

        {"category_slug": <enum of prompt slugs>, "confidence": number,
         "rationale": string}
    """

    slugs = [n.slug for n in taxonomy.prompt_categories()]
    if not slugs:
        raise ValueError("taxonomy has no prompt-eligible categories")

    return {
        "type": "json_schema",
        "name": "transaction_category",
        "schema": {
            "type": "object",
            "properties": {
                "category_slug": {"type": "string", "enum": slugs},
                "confidence": {"type": "number", "minimum": 0, "maximum": 1},
                "rationale": {"type": "string"},
            },
            "required": ["category_slug", "confidence", "rationale"],
            "additionalProperties": False,
        },
        "strict": True,
    }


__all__ = [
    "DESCRIPTION_MAX_CHARS",
    "build_response_format",
    "build_system_instructions",
    "build_user_content",
    "format_amount",
    "truncate_description",
]
