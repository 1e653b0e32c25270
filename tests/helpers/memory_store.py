"""In-memory implementation of the engine's store protocols for tests.

Rows are ``NormalizedTransaction`` objects plus the categorization columns
the SQL adapter keeps. Failure injection flags make each call raise on
demand so degradation paths can be exercised without a database.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date

from pnl_categorizer.models import (
    CategoryUpdate,
    Decision,
    NormalizedTransaction,
    VendorEmbedding,
    VendorRule,
)
from pnl_categorizer.store import OrgBacklog


@dataclass
class Row:
    tx: NormalizedTransaction
    category_id: str | None = None
    confidence: float | None = None
    needs_review: bool = False
    reviewed: bool = False
    attempted: bool = False

    @property
    def pending(self) -> bool:
        return self.category_id is None and not self.attempted


@dataclass
class InMemoryStore:
    rules: dict[str, list[VendorRule]] = field(default_factory=dict)
    embeddings: dict[str, list[VendorEmbedding]] = field(default_factory=dict)
    rows: dict[str, Row] = field(default_factory=dict)
    decisions: list[Decision] = field(default_factory=list)

    fail_rules: bool = False
    fail_embeddings: bool = False
    fail_updates: bool = False
    fail_decisions: bool = False
    fail_backlog: bool = False

    rule_reads: list[str] = field(default_factory=list)
    embedding_reads: list[str] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    # ---- Seeding ----

    def add_transactions(self, txs: Iterable[NormalizedTransaction]) -> None:
        for tx in txs:
            self.rows[tx.id] = Row(
                tx=tx, category_id=tx.prior_category_id, confidence=tx.prior_confidence
            )

    def add_rule(self, rule: VendorRule) -> None:
        self.rules.setdefault(rule.org_id, []).append(rule)

    # ---- CategorizationStore ----

    def list_vendor_rules(self, org_id: str) -> list[VendorRule]:
        with self._lock:
            self.rule_reads.append(org_id)
        if self.fail_rules:
            raise ConnectionError("rules unavailable")
        return list(self.rules.get(org_id, []))

    def list_vendor_embeddings(self, org_id: str) -> list[VendorEmbedding]:
        with self._lock:
            self.embedding_reads.append(org_id)
        if self.fail_embeddings:
            raise ConnectionError("embeddings unavailable")
        return list(self.embeddings.get(org_id, []))

    def update_transaction_category(self, tx_id: str, update: CategoryUpdate) -> None:
        if self.fail_updates:
            raise ConnectionError("write failed")
        with self._lock:
            row = self.rows.get(tx_id)
            if row is None:
                raise LookupError(f"transaction {tx_id!r} not found")
            row.category_id = update.category_id
            row.confidence = update.confidence
            row.needs_review = update.needs_review
            row.reviewed = update.reviewed
            row.attempted = True

    def insert_decision(self, decision: Decision) -> None:
        if self.fail_decisions:
            raise ConnectionError("audit insert failed")
        with self._lock:
            self.decisions.append(decision)

    # ---- WorkQueue ----

    def _pending_rows(self, org_id: str | None) -> list[Row]:
        rows = [r for r in self.rows.values() if r.pending]
        if org_id is not None:
            rows = [r for r in rows if r.tx.org_id == org_id]
        return sorted(rows, key=lambda r: (r.tx.date, r.tx.id))

    def orgs_with_backlog(self, limit: int) -> list[OrgBacklog]:
        if self.fail_backlog:
            raise ConnectionError("backlog query failed")
        counts: dict[str, int] = {}
        with self._lock:
            for r in self._pending_rows(None):
                counts[r.tx.org_id] = counts.get(r.tx.org_id, 0) + 1
        ordered = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
        return [OrgBacklog(org_id=o, pending=n) for o, n in ordered[:limit]]

    def list_pending_transactions(
        self, org_id: str | None, limit: int
    ) -> list[NormalizedTransaction]:
        with self._lock:
            return [r.tx for r in self._pending_rows(org_id)[:limit]]

    def count_pending(self, org_id: str | None) -> int:
        with self._lock:
            return len(self._pending_rows(org_id))

    def list_transactions_since(
        self, org_id: str, since: date, *, limit: int, offset: int
    ) -> list[NormalizedTransaction]:
        with self._lock:
            rows = sorted(
                (r for r in self.rows.values() if r.tx.org_id == org_id and r.tx.date >= since),
                key=lambda r: (r.tx.date, r.tx.id),
            )
            # Reflect the stored category as the prior one, like the SQL adapter.
            return [
                r.tx.model_copy(
                    update={"prior_category_id": r.category_id, "prior_confidence": r.confidence}
                )
                for r in rows[offset : offset + limit]
            ]

    # ---- Assertion helpers ----

    def decisions_for(self, tx_id: str) -> list[Decision]:
        return [d for d in self.decisions if d.tx_id == tx_id]
