# ruff: noqa: I001
"""SQLAlchemy adapter for the engine's storage interfaces.

``SqlCategorizationStore`` implements ``CategorizationStore`` and
``WorkQueue`` from :mod:`pnl_categorizer.store` on top of the ORM models in
``db.models.categorization``. Every call runs in its own short
``session_scope`` so the category write and the audit insert commit
independently.

A transaction is pending while it has no category and has never been
attempted (``categorized_at IS NULL``).
"""

from __future__ import annotations

from datetime import UTC, date, datetime

from pydantic import ValidationError
from sqlalchemy import ColumnElement, func, select
from sqlalchemy import update as sql_update
from sqlalchemy.orm import Session

from db.client import session_scope
from db.models.categorization import (
    Category as CategoryRow,
    Decision as DecisionRow,
    Transaction as TransactionRow,
    VendorEmbedding as VendorEmbeddingRow,
    VendorRule as VendorRuleRow,
)
from .logging_setup import get_logger
from .models import (
    CategoryNode,
    CategoryUpdate,
    Decision,
    NormalizedTransaction,
    VendorEmbedding,
    VendorRule,
)
from .store import OrgBacklog
from .taxonomy import DEFAULT_TAXONOMY, TaxonomyRegistry

_logger = get_logger("pnl_categorizer.persistence")


def _pending() -> ColumnElement[bool]:
    return TransactionRow.category_id.is_(None) & TransactionRow.categorized_at.is_(None)


def _to_transaction(row: TransactionRow) -> NormalizedTransaction:
    return NormalizedTransaction(
        id=row.id,
        org_id=row.org_id,
        date=row.date,
        amount_cents=row.amount_cents,
        currency=row.currency,
        description=row.description or "",
        merchant_name=row.merchant_name,
        mcc=row.mcc,
        prior_category_id=row.category_id,
        prior_confidence=row.confidence,
        source=row.source,
    )


def _to_rule(row: VendorRuleRow) -> VendorRule | None:
    try:
        return VendorRule(
            id=row.id,
            org_id=row.org_id,
            pattern=row.pattern or {},
            category_id=row.category_id,
            weight=row.weight,
        )
    except ValidationError as e:
        _logger.warning(
            "persistence:rule_skipped rule_id=%s org_id=%s errors=%d",
            row.id,
            row.org_id,
            e.error_count(),
        )
        return None


class SqlCategorizationStore:
    """Database-backed store; ``database_url`` defaults to ``$DATABASE_URL``."""

    def __init__(self, database_url: str | None = None) -> None:
        self._database_url = database_url

    # ---- Rule store reads ----

    def _rules(self, org_id: str | None) -> list[VendorRule]:
        stmt = select(VendorRuleRow).where(VendorRuleRow.is_active.is_(True))
        if org_id is not None:
            stmt = stmt.where(VendorRuleRow.org_id == org_id)
        stmt = stmt.order_by(VendorRuleRow.org_id, VendorRuleRow.created_at, VendorRuleRow.id)
        with session_scope(database_url=self._database_url) as session:
            rows = session.scalars(stmt).all()
            return [r for r in (_to_rule(row) for row in rows) if r is not None]

    def list_vendor_rules(self, org_id: str) -> list[VendorRule]:
        return self._rules(org_id)

    def list_all_vendor_rules(self, org_id: str | None = None) -> list[VendorRule]:
        """Every active rule (optionally one organization), for the validator."""

        return self._rules(org_id)

    def list_vendor_embeddings(self, org_id: str) -> list[VendorEmbedding]:
        stmt = select(VendorEmbeddingRow).where(VendorEmbeddingRow.org_id == org_id)
        with session_scope(database_url=self._database_url) as session:
            return [
                VendorEmbedding(vendor=row.vendor, embedding=tuple(row.embedding or ()))
                for row in session.scalars(stmt)
            ]

    # ---- Writes ----

    def update_transaction_category(self, tx_id: str, update: CategoryUpdate) -> None:
        stmt = (
            sql_update(TransactionRow)
            .where(TransactionRow.id == tx_id)
            .values(
                category_id=update.category_id,
                confidence=update.confidence,
                needs_review=update.needs_review,
                reviewed=update.reviewed,
                categorized_at=datetime.now(UTC),
            )
        )
        with session_scope(database_url=self._database_url) as session:
            result = session.execute(stmt)
            if result.rowcount == 0:
                raise LookupError(f"transaction {tx_id!r} not found")

    def insert_decision(self, decision: Decision) -> None:
        with session_scope(database_url=self._database_url) as session:
            session.add(
                DecisionRow(
                    tx_id=decision.tx_id,
                    org_id=decision.org_id,
                    source=decision.source.value,
                    category_id=decision.category_id,
                    confidence=decision.confidence,
                    rationale=list(decision.rationale),
                    decided_by=decision.decided_by,
                    created_at=decision.created_at,
                )
            )

    # ---- Work queue ----

    def orgs_with_backlog(self, limit: int) -> list[OrgBacklog]:
        pending = func.count(TransactionRow.id).label("pending")
        stmt = (
            select(TransactionRow.org_id, pending)
            .where(_pending())
            .group_by(TransactionRow.org_id)
            .order_by(pending.desc(), func.min(TransactionRow.date), TransactionRow.org_id)
            .limit(limit)
        )
        with session_scope(database_url=self._database_url) as session:
            return [OrgBacklog(org_id=org, pending=int(n)) for org, n in session.execute(stmt)]

    def list_pending_transactions(
        self, org_id: str | None, limit: int
    ) -> list[NormalizedTransaction]:
        stmt = select(TransactionRow).where(_pending())
        if org_id is not None:
            stmt = stmt.where(TransactionRow.org_id == org_id)
        stmt = stmt.order_by(
            TransactionRow.date, TransactionRow.created_at, TransactionRow.id
        ).limit(limit)
        with session_scope(database_url=self._database_url) as session:
            return [_to_transaction(row) for row in session.scalars(stmt)]

    def count_pending(self, org_id: str | None) -> int:
        stmt = select(func.count(TransactionRow.id)).where(_pending())
        if org_id is not None:
            stmt = stmt.where(TransactionRow.org_id == org_id)
        with session_scope(database_url=self._database_url) as session:
            return int(session.scalar(stmt) or 0)

    def list_transactions_since(
        self, org_id: str, since: date, *, limit: int, offset: int
    ) -> list[NormalizedTransaction]:
        stmt = (
            select(TransactionRow)
            .where((TransactionRow.org_id == org_id) & (TransactionRow.date >= since))
            .order_by(TransactionRow.date, TransactionRow.created_at, TransactionRow.id)
            .limit(limit)
            .offset(offset)
        )
        with session_scope(database_url=self._database_url) as session:
            return [_to_transaction(row) for row in session.scalars(stmt)]


def seed_taxonomy(session: Session, taxonomy: TaxonomyRegistry = DEFAULT_TAXONOMY) -> int:
    """Upsert every registry node into ``categories`` (parents first).

    Returns the number of nodes written. Existing rows with the same id are
    overwritten; ids are never renumbered.
    """

    def _depth(node: CategoryNode) -> int:
        depth = 0
        parent = taxonomy.get_by_id(node.parent_id)
        while parent is not None:
            depth += 1
            parent = taxonomy.get_by_id(parent.parent_id)
        return depth

    ordered = sorted(taxonomy.nodes, key=_depth)
    for node in ordered:
        session.merge(
            CategoryRow(
                id=node.id,
                slug=node.slug,
                name=node.name,
                parent_id=node.parent_id,
                accounting_type=node.accounting_type.value,
                is_pnl=node.is_pnl,
                include_in_prompt=node.include_in_prompt,
            )
        )
    session.flush()
    return len(ordered)


__all__ = ["SqlCategorizationStore", "seed_taxonomy"]
