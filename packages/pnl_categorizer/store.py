"""Narrow storage interfaces used by the engine, and the per-run org cache.

The engine never sees a database client. It depends on two protocols:

- ``CategorizationStore``: the four calls the decision path needs (rule and
  embedding reads, the category write, the audit insert).
- ``WorkQueue``: backlog queries used by the batch orchestrator and the
  recategorization job.

``SqlCategorizationStore`` in :mod:`pnl_categorizer.persistence` implements
both; tests use an in-memory implementation.
"""

from __future__ import annotations

import threading
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date
from typing import Protocol

from .logging_setup import get_logger
from .models import CategoryUpdate, Decision, NormalizedTransaction, VendorEmbedding, VendorRule
from .normalizers import normalize_vendor

_logger = get_logger("pnl_categorizer.store")


class CategorizationStore(Protocol):
    def list_vendor_rules(self, org_id: str) -> Sequence[VendorRule]: ...

    def list_vendor_embeddings(self, org_id: str) -> Sequence[VendorEmbedding]: ...

    def update_transaction_category(self, tx_id: str, update: CategoryUpdate) -> None: ...

    def insert_decision(self, decision: Decision) -> None: ...


@dataclass(frozen=True, slots=True)
class OrgBacklog:
    org_id: str
    pending: int


class WorkQueue(Protocol):
    def orgs_with_backlog(self, limit: int) -> Sequence[OrgBacklog]: ...

    def list_pending_transactions(
        self, org_id: str | None, limit: int
    ) -> Sequence[NormalizedTransaction]: ...

    def count_pending(self, org_id: str | None) -> int: ...

    def list_transactions_since(
        self, org_id: str, since: date, *, limit: int, offset: int
    ) -> Sequence[NormalizedTransaction]: ...


class EngineStore(CategorizationStore, WorkQueue, Protocol):
    """Both interfaces; what the orchestrator is constructed with."""


# ---- Per-organization cache -------------------------------------------------


@dataclass(frozen=True, slots=True)
class OrgRuleCache:
    """Rules and embedding evidence for one organization, loaded once.

    ``rules`` keeps storage order, which is also rule precedence on equal
    confidence. ``embedding_vendors`` holds normalized vendor names.
    """

    org_id: str
    rules: tuple[VendorRule, ...] = ()
    embedding_vendors: frozenset[str] = frozenset()
    rules_error: str | None = None
    embeddings_error: str | None = None

    @property
    def has_embeddings(self) -> bool:
        return bool(self.embedding_vendors)


@dataclass
class OrgCacheArena:
    """Owns the ``OrgRuleCache`` of every organization touched in one run.

    A cache miss triggers exactly one fetch per organization, even when
    several threads ask concurrently; later lookups reuse the loaded value.
    Read failures degrade to empty rules/embeddings (and are cached as such so
    a dead store is not hammered for every transaction).
    """

    store: CategorizationStore
    _caches: dict[str, OrgRuleCache] = field(default_factory=dict, init=False)
    _locks: dict[str, threading.Lock] = field(default_factory=dict, init=False)
    _guard: threading.Lock = field(default_factory=threading.Lock, init=False)

    def get(self, org_id: str) -> OrgRuleCache:
        cached = self._caches.get(org_id)
        if cached is not None:
            return cached
        with self._guard:
            lock = self._locks.setdefault(org_id, threading.Lock())
        with lock:
            cached = self._caches.get(org_id)
            if cached is None:
                cached = self._load(org_id)
                self._caches[org_id] = cached
            return cached

    def loaded_orgs(self) -> tuple[str, ...]:
        return tuple(self._caches)

    def _load(self, org_id: str) -> OrgRuleCache:
        rules: tuple[VendorRule, ...] = ()
        vendors: frozenset[str] = frozenset()
        rules_error: str | None = None
        embeddings_error: str | None = None
        try:
            rules = tuple(self.store.list_vendor_rules(org_id))
        except Exception as e:  # noqa: BLE001 - degrade to "no rules"
            rules_error = e.__class__.__name__
            _logger.warning(
                "rule_cache:rules_failed org_id=%s error=%s detail=%s", org_id, rules_error, e
            )
        try:
            embeddings = self.store.list_vendor_embeddings(org_id)
            vendors = frozenset(k for k in (normalize_vendor(e.vendor) for e in embeddings) if k)
        except Exception as e:  # noqa: BLE001 - embeddings only boost confidence
            embeddings_error = e.__class__.__name__
            _logger.warning(
                "rule_cache:embeddings_failed org_id=%s error=%s", org_id, embeddings_error
            )
        _logger.debug(
            "rule_cache:loaded org_id=%s rules=%d embedding_vendors=%d",
            org_id,
            len(rules),
            len(vendors),
        )
        return OrgRuleCache(
            org_id=org_id,
            rules=rules,
            embedding_vendors=vendors,
            rules_error=rules_error,
            embeddings_error=embeddings_error,
        )


__all__ = [
    "CategorizationStore",
    "EngineStore",
    "OrgBacklog",
    "OrgCacheArena",
    "OrgRuleCache",
    "WorkQueue",
]
