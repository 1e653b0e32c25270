import re

import pytest

from pnl_categorizer.errors import TaxonomyError
from pnl_categorizer.models import AccountingType, CategoryNode
from pnl_categorizer.taxonomy import (
    DEFAULT_TAXONOMY,
    ECOMMERCE_TAXONOMY,
    HAIR_SERVICES_SLUG,
    OTHER_SLUG,
    SALES_TAX_SLUG,
    TaxonomyRegistry,
)

_UUID = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$")


def _n(id_: str, slug: str, parent: str | None = None) -> CategoryNode:
    return CategoryNode(
        id=id_,
        slug=slug,
        name=slug.title(),
        parent_id=parent,
        accounting_type=AccountingType.OPEX,
        is_pnl=True,
        include_in_prompt=True,
    )


_A = "00000000-0000-4000-8000-000000000001"
_B = "00000000-0000-4000-8000-000000000002"


def test_every_id_is_a_unique_uuid():
    ids = [n.id for n in ECOMMERCE_TAXONOMY]
    assert len(ids) == len(set(ids))
    assert all(_UUID.match(i) for i in ids)
    assert len(DEFAULT_TAXONOMY) == len(ECOMMERCE_TAXONOMY)


def test_map_slug_to_id_resolves_known_slugs():
    node = DEFAULT_TAXONOMY.get_by_slug("marketing")
    assert node is not None
    assert DEFAULT_TAXONOMY.map_slug_to_id("marketing") == node.id
    assert DEFAULT_TAXONOMY.slug_for(node.id) == "marketing"


@pytest.mark.parametrize("raw", [" Marketing ", "MARKETING", '"marketing"', "`marketing`"])
def test_map_slug_to_id_tolerates_case_and_quotes(raw):
    assert DEFAULT_TAXONOMY.map_slug_to_id(raw) == DEFAULT_TAXONOMY.map_slug_to_id("marketing")


def test_map_slug_to_id_accepts_separator_variants():
    expected = DEFAULT_TAXONOMY.map_slug_to_id("payment_processing_fees")
    assert DEFAULT_TAXONOMY.map_slug_to_id("Payment-Processing Fees") == expected


@pytest.mark.parametrize("raw", [None, "", "made_up_category", 42, ["marketing"], "☃"])
def test_map_slug_to_id_is_total(raw):
    assert DEFAULT_TAXONOMY.map_slug_to_id(raw) == DEFAULT_TAXONOMY.other_id


def test_other_id_points_at_fallback():
    assert DEFAULT_TAXONOMY.slug_for(DEFAULT_TAXONOMY.other_id) == OTHER_SLUG


def test_prompt_categories_hide_parents_service_revenue_and_liabilities():
    slugs = {n.slug for n in DEFAULT_TAXONOMY.prompt_categories()}
    assert OTHER_SLUG in slugs
    assert "revenue" not in slugs
    assert "operating_expenses" not in slugs
    assert HAIR_SERVICES_SLUG not in slugs
    assert SALES_TAX_SLUG not in slugs


def test_liability_and_clearing_nodes_are_off_pnl():
    for kind in (AccountingType.LIABILITY, AccountingType.CLEARING):
        nodes = DEFAULT_TAXONOMY.categories_by_type(kind)
        assert nodes
        assert not any(DEFAULT_TAXONOMY.is_pnl(n.id) for n in nodes)


def test_children_of_returns_direct_children():
    children = {n.slug for n in DEFAULT_TAXONOMY.children_of("payment_processing_fees")}
    assert children == {"stripe_fees", "paypal_fees", "shop_pay_fees", "bnpl_fees"}
    assert DEFAULT_TAXONOMY.children_of("nope") == ()


def test_lookups_are_none_safe():
    assert DEFAULT_TAXONOMY.get_by_id(None) is None
    assert DEFAULT_TAXONOMY.slug_for("not-an-id") is None
    assert "not-an-id" not in DEFAULT_TAXONOMY
    assert DEFAULT_TAXONOMY.other_id in DEFAULT_TAXONOMY


def test_registry_rejects_duplicate_ids():
    with pytest.raises(TaxonomyError, match="duplicate category id"):
        TaxonomyRegistry([_n(_A, OTHER_SLUG), _n(_A, "x")])


def test_registry_rejects_duplicate_slugs():
    with pytest.raises(TaxonomyError, match="duplicate category slug"):
        TaxonomyRegistry([_n(_A, OTHER_SLUG), _n(_B, OTHER_SLUG)])


def test_registry_rejects_unknown_parent():
    with pytest.raises(TaxonomyError, match="unknown parent"):
        TaxonomyRegistry([_n(_A, OTHER_SLUG, parent=_B)])


def test_registry_rejects_non_uuid_ids():
    with pytest.raises(TaxonomyError, match="not a UUID"):
        TaxonomyRegistry([_n("other", OTHER_SLUG)])


def test_registry_requires_fallback_slug():
    with pytest.raises(TaxonomyError, match="fallback slug"):
        TaxonomyRegistry([_n(_A, "marketing")])
