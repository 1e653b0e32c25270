"""Static category taxonomy and its lookup registry.

The table below is the single source of truth for category ids. Ids are
stable UUIDs: ledgers, vendor rules and audit decisions reference them, so an
id is never reused or renumbered. Slugs are what the LLM sees and returns.

``TaxonomyRegistry`` validates the table once at construction and is
read-only afterwards. ``map_slug_to_id`` is total: any input, including
``None`` or model gibberish, resolves to a valid id (``other_ops`` when
nothing matches).
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from types import MappingProxyType

from .errors import TaxonomyError
from .models import AccountingType, CategoryNode

REVENUE = AccountingType.REVENUE
COGS = AccountingType.COGS
OPEX = AccountingType.OPEX
LIABILITY = AccountingType.LIABILITY
CLEARING = AccountingType.CLEARING

OTHER_SLUG = "other_ops"
REFUNDS_SLUG = "refunds_allowances_contra"
PAYMENT_PROCESSING_SLUG = "payment_processing_fees"
SALES_TAX_SLUG = "sales_tax_payable"
PAYOUT_CLEARING_SLUG = "shopify_payouts_clearing"
HAIR_SERVICES_SLUG = "hair_services"

_ID_PREFIX = "550e8400-e29b-41d4-a716-4466554"


def _id(suffix: str) -> str:
    return f"{_ID_PREFIX}{suffix}"


def _node(
    suffix: str,
    slug: str,
    name: str,
    parent: str | None,
    kind: AccountingType,
    *,
    pnl: bool = True,
    prompt: bool = True,
) -> CategoryNode:
    return CategoryNode(
        id=_id(suffix),
        slug=slug,
        name=name,
        parent_id=_id(parent) if parent else None,
        accounting_type=kind,
        is_pnl=pnl,
        include_in_prompt=prompt,
    )


# Liability and clearing nodes stay out of the P&L and the prompt.
_OFF_PNL: dict[str, bool] = {"pnl": False, "prompt": False}

# (id suffix, slug, name, parent suffix, type, flags). Parents are hidden from
# the prompt; the model picks leaves only.
ECOMMERCE_TAXONOMY: tuple[CategoryNode, ...] = (
    # ---- Parents ----
    _node("01100", "revenue", "Revenue", None, REVENUE, prompt=False),
    _node("01200", "cogs", "Cost of Goods Sold", None, COGS, prompt=False),
    _node("01300", "operating_expenses", "Operating Expenses", None, OPEX, prompt=False),
    _node("01400", "taxes_liabilities", "Taxes & Liabilities", None, LIABILITY, **_OFF_PNL),
    _node("01500", "clearing", "Clearing", None, CLEARING, **_OFF_PNL),
    # ---- Revenue ----
    _node("01101", "dtc_sales", "DTC Sales", "01100", REVENUE),
    _node("01102", "shipping_income", "Shipping Income", "01100", REVENUE),
    _node("01103", "discounts_contra", "Discounts (Contra-Revenue)", "01100", REVENUE),
    _node("01104", REFUNDS_SLUG, "Refunds & Allowances (Contra-Revenue)", "01100", REVENUE),
    # Service revenue used by MCC lookups for appointment-based merchants;
    # hidden from the e-commerce prompt.
    _node("40002", HAIR_SERVICES_SLUG, "Hair Services", "01100", REVENUE, prompt=False),
    _node("40004", "skin_care_services", "Skin Care Services", "01100", REVENUE, prompt=False),
    # ---- COGS ----
    _node("01201", "inventory_purchases", "Inventory Purchases", "01200", COGS),
    _node("01202", "inbound_freight", "Inbound Freight", "01200", COGS),
    _node("01203", "packaging_supplies", "Packaging Supplies", "01200", COGS),
    _node("01204", "manufacturing_costs", "Manufacturing Costs", "01200", COGS),
    # ---- Operating expenses: payment processing ----
    _node("01301", PAYMENT_PROCESSING_SLUG, "Payment Processing Fees", "01300", OPEX),
    _node("01311", "stripe_fees", "Stripe Fees", "01301", OPEX),
    _node("01312", "paypal_fees", "PayPal Fees", "01301", OPEX),
    _node("01313", "shop_pay_fees", "Shop Pay Fees", "01301", OPEX),
    _node("01314", "bnpl_fees", "BNPL Fees", "01301", OPEX),
    # ---- Operating expenses: marketing ----
    _node("01302", "marketing", "Marketing", "01300", OPEX),
    _node("01321", "ads_meta", "Meta Ads", "01302", OPEX),
    _node("01322", "ads_google", "Google Ads", "01302", OPEX),
    _node("01323", "ads_tiktok", "TikTok Ads", "01302", OPEX),
    _node("01324", "ads_other", "Other Advertising", "01302", OPEX),
    # ---- Operating expenses: platform and tools ----
    _node("01331", "shopify_platform", "Shopify Platform", "01300", OPEX),
    _node("01332", "app_subscriptions", "App Subscriptions", "01300", OPEX),
    _node("01333", "email_sms_tools", "Email & SMS Tools", "01300", OPEX),
    # ---- Operating expenses: fulfillment ----
    _node("01341", "fulfillment_3pl_fees", "Fulfillment & 3PL Fees", "01300", OPEX),
    _node("01342", "warehouse_storage", "Warehouse Storage", "01300", OPEX),
    _node("01343", "shipping_expense", "Shipping Expense", "01300", OPEX),
    _node("01344", "returns_processing", "Returns Processing", "01300", OPEX),
    # ---- Operating expenses: general ----
    _node("01351", "software_general", "Software (General)", "01300", OPEX),
    _node("01352", "professional_services", "Professional Services", "01300", OPEX),
    _node("01353", "rent_utilities", "Rent & Utilities", "01300", OPEX),
    _node("01354", "insurance", "Insurance", "01300", OPEX),
    _node("01355", "payroll_contractors", "Payroll & Contractors", "01300", OPEX),
    _node("01356", "office_supplies", "Office Supplies", "01300", OPEX),
    _node("01357", "travel", "Travel", "01300", OPEX),
    _node("01358", "bank_fees", "Bank Fees", "01300", OPEX),
    _node("01359", OTHER_SLUG, "Other Operating Expenses", "01300", OPEX),
    _node("01360", "amazon_fees", "Amazon Fees", "01300", OPEX, prompt=False),
    # ---- Taxes, liabilities, clearing ----
    _node("01401", SALES_TAX_SLUG, "Sales Tax Payable", "01400", LIABILITY, **_OFF_PNL),
    _node("01402", "duties_import_taxes", "Duties & Import Taxes", "01300", OPEX),
    _node("01501", PAYOUT_CLEARING_SLUG, "Shopify Payouts Clearing", "01500", CLEARING, **_OFF_PNL),
    _node("01502", "amazon_payouts", "Amazon Payouts Clearing", "01500", CLEARING, **_OFF_PNL),
)

_SLUG_CLEAN_RE = re.compile(r"[\s\-/]+")
_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$")


def _clean_slug(value: object) -> str:
    if not isinstance(value, str):
        return ""
    s = _SLUG_CLEAN_RE.sub("_", value.strip().lower())
    return s.strip("_`'\"")


class TaxonomyRegistry:
    """Immutable lookup tables over a category node list.

    Raises ``TaxonomyError`` at construction when ids or slugs collide, a
    parent id does not resolve, an id is not a UUID, or the fallback slug is
    missing.
    """

    __slots__ = ("_by_id", "_by_slug", "_children", "_nodes", "_other_id")

    def __init__(self, nodes: Iterable[CategoryNode], *, other_slug: str = OTHER_SLUG) -> None:
        ordered = tuple(nodes)
        by_id: dict[str, CategoryNode] = {}
        by_slug: dict[str, CategoryNode] = {}
        for node in ordered:
            if not _UUID_RE.match(node.id):
                raise TaxonomyError(f"category id is not a UUID: {node.id!r} ({node.slug})")
            if node.id in by_id:
                raise TaxonomyError(f"duplicate category id {node.id}")
            if node.slug in by_slug:
                raise TaxonomyError(f"duplicate category slug {node.slug!r}")
            by_id[node.id] = node
            by_slug[node.slug] = node

        children: dict[str, list[CategoryNode]] = {}
        for node in ordered:
            if node.parent_id is None:
                continue
            if node.parent_id not in by_id:
                raise TaxonomyError(
                    f"category {node.slug!r} references unknown parent {node.parent_id}"
                )
            children.setdefault(node.parent_id, []).append(node)

        if other_slug not in by_slug:
            raise TaxonomyError(f"fallback slug {other_slug!r} missing from taxonomy")

        self._nodes = ordered
        self._by_id = MappingProxyType(by_id)
        self._by_slug = MappingProxyType(by_slug)
        self._children = MappingProxyType({k: tuple(v) for k, v in children.items()})
        self._other_id = by_slug[other_slug].id

    # ---- Lookups ----

    @property
    def nodes(self) -> tuple[CategoryNode, ...]:
        return self._nodes

    @property
    def other_id(self) -> str:
        return self._other_id

    def get_by_slug(self, slug: str) -> CategoryNode | None:
        return self._by_slug.get(slug)

    def get_by_id(self, category_id: str | None) -> CategoryNode | None:
        if category_id is None:
            return None
        return self._by_id.get(category_id)

    def children_of(self, parent_slug: str) -> tuple[CategoryNode, ...]:
        parent = self._by_slug.get(parent_slug)
        if parent is None:
            return ()
        return self._children.get(parent.id, ())

    def prompt_categories(self) -> tuple[CategoryNode, ...]:
        return tuple(n for n in self._nodes if n.include_in_prompt)

    def categories_by_type(self, kind: AccountingType) -> tuple[CategoryNode, ...]:
        return tuple(n for n in self._nodes if n.accounting_type is kind)

    def map_slug_to_id(self, slug: object) -> str:
        """Resolve ``slug`` to a category id; never raises.

        Tolerates case, surrounding quotes and space/hyphen separators
        (``"Other-Ops"`` resolves like ``"other_ops"``). Anything that still
        does not resolve maps to the fallback category.
        """

        node = self._by_slug.get(_clean_slug(slug))
        return node.id if node is not None else self._other_id

    def slug_for(self, category_id: str | None) -> str | None:
        node = self.get_by_id(category_id)
        return node.slug if node is not None else None

    def is_pnl(self, category_id: str | None) -> bool:
        node = self.get_by_id(category_id)
        return bool(node and node.is_pnl)

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, category_id: object) -> bool:
        return isinstance(category_id, str) and category_id in self._by_id


DEFAULT_TAXONOMY = TaxonomyRegistry(ECOMMERCE_TAXONOMY)


def group_by_type(nodes: Sequence[CategoryNode]) -> dict[AccountingType, list[CategoryNode]]:
    """Bucket ``nodes`` by accounting type, preserving table order."""

    out: dict[AccountingType, list[CategoryNode]] = {}
    for n in nodes:
        out.setdefault(n.accounting_type, []).append(n)
    return out


__all__ = [
    "DEFAULT_TAXONOMY",
    "ECOMMERCE_TAXONOMY",
    "HAIR_SERVICES_SLUG",
    "OTHER_SLUG",
    "PAYMENT_PROCESSING_SLUG",
    "PAYOUT_CLEARING_SLUG",
    "REFUNDS_SLUG",
    "SALES_TAX_SLUG",
    "TaxonomyRegistry",
    "group_by_type",
]
