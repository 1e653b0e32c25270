from datetime import date
from pathlib import Path

import pytest
from sqlalchemy import func, select

from db.client import session_scope
from db.models.categorization import Category, Decision as DecisionRow, Transaction
from db.models.categorization import VendorEmbedding as VendorEmbeddingRow
from db.models.categorization import VendorRule as VendorRuleRow
from pnl_categorizer.config import CategorizerConfig
from pnl_categorizer.models import CategoryUpdate
from pnl_categorizer.orchestrator import BatchOrchestrator
from pnl_categorizer.persistence import SqlCategorizationStore, seed_taxonomy
from pnl_categorizer.taxonomy import DEFAULT_TAXONOMY
from tests.helpers.db import bootstrap_sqlite_db


def _id(slug: str) -> str:
    return DEFAULT_TAXONOMY.map_slug_to_id(slug)


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    return bootstrap_sqlite_db(tmp_path / "pnl.sqlite3")


def _add_transactions(url: str, *rows: dict) -> None:
    with session_scope(database_url=url) as s:
        for r in rows:
            s.add(
                Transaction(
                    id=r["id"],
                    org_id=r.get("org_id", "org-1"),
                    date=r["date"],
                    amount_cents=r.get("amount_cents", -1000),
                    description=r.get("description", "misc"),
                    merchant_name=r.get("merchant_name"),
                    mcc=r.get("mcc"),
                    category_id=r.get("category_id"),
                )
            )


def test_seed_taxonomy_writes_every_node(db_url: str):
    with session_scope(database_url=db_url) as s:
        assert s.scalar(select(func.count(Category.id))) == len(DEFAULT_TAXONOMY)
        # idempotent
        assert seed_taxonomy(s) == len(DEFAULT_TAXONOMY)
    with session_scope(database_url=db_url) as s:
        assert s.scalar(select(func.count(Category.id))) == len(DEFAULT_TAXONOMY)


def test_pending_queue_ordering_and_counts(db_url: str):
    _add_transactions(
        db_url,
        {"id": "late", "date": date(2025, 3, 1)},
        {"id": "early", "date": date(2025, 1, 1)},
        {"id": "done", "date": date(2025, 2, 1), "category_id": _id("marketing")},
        {"id": "other-org", "org_id": "org-2", "date": date(2025, 1, 5)},
    )
    store = SqlCategorizationStore(db_url)

    assert [t.id for t in store.list_pending_transactions("org-1", limit=10)] == ["early", "late"]
    assert [t.id for t in store.list_pending_transactions(None, limit=2)] == ["early", "other-org"]
    assert store.count_pending("org-1") == 2
    assert store.count_pending(None) == 3
    backlog = store.orgs_with_backlog(limit=5)
    assert [(b.org_id, b.pending) for b in backlog] == [("org-1", 2), ("org-2", 1)]


def test_attempted_transaction_leaves_the_queue(db_url: str):
    _add_transactions(db_url, {"id": "t1", "date": date(2025, 1, 1)})
    store = SqlCategorizationStore(db_url)

    store.update_transaction_category("t1", CategoryUpdate(None, 0.0, needs_review=True))

    assert store.count_pending("org-1") == 0
    with session_scope(database_url=db_url) as s:
        row = s.get(Transaction, "t1")
        assert row is not None
        assert row.needs_review is True
        assert row.categorized_at is not None


def test_update_unknown_transaction_raises(db_url: str):
    store = SqlCategorizationStore(db_url)
    with pytest.raises(LookupError):
        store.update_transaction_category("missing", CategoryUpdate(None, 0.0, True))


def test_rules_and_embeddings_round_trip(db_url: str):
    with session_scope(database_url=db_url) as s:
        s.add_all(
            [
                VendorRuleRow(
                    id="r1",
                    org_id="org-1",
                    pattern={"vendor": "Acme", "descriptionTokens": ["PO"]},
                    category_id=_id("inventory_purchases"),
                    weight=3,
                    is_active=True,
                ),
                VendorRuleRow(
                    id="bad",
                    org_id="org-1",
                    pattern={"vendor": 123},
                    category_id=_id("marketing"),
                    weight=1,
                    is_active=True,
                ),
                VendorRuleRow(
                    id="off",
                    org_id="org-1",
                    pattern={"vendor": "Globex"},
                    category_id=_id("marketing"),
                    weight=1,
                    is_active=False,
                ),
                VendorEmbeddingRow(org_id="org-1", vendor="Acme", embedding=[0.1, 0.2]),
            ]
        )
    store = SqlCategorizationStore(db_url)

    [rule] = store.list_vendor_rules("org-1")
    assert rule.id == "r1"
    assert rule.pattern.description_tokens == ("po",)
    assert rule.weight == 3
    assert [r.id for r in store.list_all_vendor_rules()] == ["r1"]
    [emb] = store.list_vendor_embeddings("org-1")
    assert emb.vendor == "Acme"
    assert emb.embedding == (0.1, 0.2)


def test_history_query_paginates(db_url: str):
    _add_transactions(
        db_url,
        *({"id": f"t{i}", "date": date(2025, 1, 1 + i)} for i in range(5)),
        {"id": "old", "date": date(2024, 1, 1)},
    )
    store = SqlCategorizationStore(db_url)
    since = date(2025, 1, 1)
    first = store.list_transactions_since("org-1", since, limit=3, offset=0)
    rest = store.list_transactions_since("org-1", since, limit=3, offset=3)
    assert [t.id for t in first + rest] == ["t0", "t1", "t2", "t3", "t4"]


def test_batch_run_against_sqlite(db_url: str):
    _add_transactions(
        db_url,
        {"id": "ads", "date": date(2025, 1, 1), "mcc": "7311"},
        {"id": "unknown", "date": date(2025, 1, 2)},
    )
    store = SqlCategorizationStore(db_url)

    result = BatchOrchestrator(store, config=CategorizerConfig()).run_batch()

    assert result.processed == 2
    assert result.needs_another_call is False
    with session_scope(database_url=db_url) as s:
        ads = s.get(Transaction, "ads")
        unknown = s.get(Transaction, "unknown")
        assert ads is not None and unknown is not None
        assert ads.category_id == _id("marketing")
        assert ads.needs_review is False
        assert unknown.category_id is None
        assert unknown.needs_review is True
        decisions = s.scalars(select(DecisionRow).order_by(DecisionRow.id)).all()
        assert [(d.tx_id, d.source) for d in decisions] == [("ads", "pass1"), ("unknown", "pass1")]
        assert decisions[1].rationale[-1] == "No category found"
