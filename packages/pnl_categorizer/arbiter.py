"""Decision arbiter: run the passes, pick a winner, persist and audit.

Per transaction::

    Pass-1 (confidence >= threshold)  -> guardrails -> final
    Pass-1 (below threshold) -> Pass-2 -> keep the higher confidence
                                          (ties keep Pass-1)
                                       -> guardrails -> final

The category write and the audit insert are independent calls. Exactly one
``Decision`` is inserted per processed transaction, including "could not
categorize" outcomes; an audit failure is logged and swallowed.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum

from .config import CategorizerConfig
from .guardrails import apply_guardrails
from .logging_setup import get_logger
from .models import (
    CategorizationResult,
    CategoryUpdate,
    Decision,
    DecisionSource,
    NormalizedTransaction,
    TransactionOutcome,
)
from .pass1 import Pass1Context, categorize_pass1
from .pass2_llm import LlmClassifier
from .reporting import ErrorReporter, report_exception
from .store import CategorizationStore, OrgRuleCache
from .taxonomy import DEFAULT_TAXONOMY, TaxonomyRegistry

_logger = get_logger("pnl_categorizer.arbiter")

DECIDED_BY = "system"
RECATEGORIZATION_NOTE = "Historical recategorization"
NO_CATEGORY_NOTE = "No category found"


class Mode(StrEnum):
    INGEST = "ingest"
    RECATEGORIZE = "recategorize"


_SOURCES: dict[tuple[Mode, bool], DecisionSource] = {
    (Mode.INGEST, False): DecisionSource.PASS1,
    (Mode.INGEST, True): DecisionSource.LLM,
    (Mode.RECATEGORIZE, False): DecisionSource.RECATEGORIZATION_PASS1,
    (Mode.RECATEGORIZE, True): DecisionSource.RECATEGORIZATION_LLM,
}


@dataclass(frozen=True, slots=True)
class Verdict:
    """Final category choice for one transaction, before persistence."""

    category_id: str | None
    confidence: float
    source: DecisionSource
    rationale: tuple[str, ...]
    used_fallback: bool = False
    rate_limited: bool = False
    retry_after_ms: int | None = None
    guardrails_applied: tuple[str, ...] = ()


def _utcnow() -> datetime:
    return datetime.now(UTC)


class DecisionArbiter:
    """Categorize single transactions against one store.

    Parameters
    ----------
    store:
        Category write and audit insert target.
    config:
        Thresholds and model settings.
    llm:
        Pass-2 classifier; ``None`` disables Pass-2 (Pass-1 only).
    reporter:
        Optional error reporter for write failures.
    """

    def __init__(
        self,
        store: CategorizationStore,
        *,
        config: CategorizerConfig | None = None,
        taxonomy: TaxonomyRegistry = DEFAULT_TAXONOMY,
        llm: LlmClassifier | None = None,
        reporter: ErrorReporter | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._config = config or CategorizerConfig()
        self._taxonomy = taxonomy
        self._llm = llm
        self._reporter = reporter
        self._clock = clock

    # ---- Decision ----

    def _threshold(self, mode: Mode) -> float:
        if mode is Mode.RECATEGORIZE:
            return self._config.recategorize_pass2_threshold
        return self._config.pass2_threshold

    def _run_pass2(self, tx: NormalizedTransaction) -> CategorizationResult | None:
        if self._llm is None:
            return None
        try:
            return self._llm.categorize(tx)
        except Exception as e:  # noqa: BLE001 - keep the Pass-1 result
            _logger.error("arbiter:pass2_raised tx_id=%s error=%s", tx.id, e.__class__.__name__)
            return None

    def decide(
        self, tx: NormalizedTransaction, cache: OrgRuleCache, *, mode: Mode = Mode.INGEST
    ) -> Verdict:
        """Pick the category for ``tx`` without writing anything."""

        pass1 = categorize_pass1(tx, Pass1Context(tx.org_id, cache, self._taxonomy))
        winner = pass1
        from_llm = False
        notes: list[str] = []

        if pass1.confidence_or_zero() < self._threshold(mode):
            pass2 = self._run_pass2(tx)
            if pass2 is not None and not pass2.is_empty:
                if pass2.confidence_or_zero() > pass1.confidence_or_zero():
                    winner, from_llm = pass2, True
                else:
                    notes.append(f"Pass-2 ({pass2.confidence_or_zero():.2f}) kept Pass-1")
        else:
            pass2 = None

        rationale = list(winner.rationale) + notes
        category_id = winner.category_id
        confidence = 0.0
        applied: tuple[str, ...] = ()
        if category_id is not None:
            proposed = self._taxonomy.slug_for(category_id) or category_id
            guarded = apply_guardrails(
                tx, proposed, winner.confidence, taxonomy=self._taxonomy
            )
            if guarded.final_slug is not None and guarded.final_slug != proposed:
                category_id = self._taxonomy.map_slug_to_id(guarded.final_slug)
            rationale.extend(f"Guardrail: {v}" for v in guarded.violations)
            confidence = guarded.final_confidence
            applied = guarded.guardrails_applied
        else:
            rationale.append(NO_CATEGORY_NOTE)

        return Verdict(
            category_id=category_id,
            confidence=confidence,
            source=_SOURCES[(mode, from_llm)],
            rationale=tuple(rationale),
            used_fallback=from_llm and winner.used_fallback,
            rate_limited=bool(pass2 and pass2.rate_limited),
            retry_after_ms=pass2.retry_after_ms if pass2 else None,
            guardrails_applied=applied,
        )

    # ---- Decision + persistence ----

    def process(
        self, tx: NormalizedTransaction, cache: OrgRuleCache, *, mode: Mode = Mode.INGEST
    ) -> TransactionOutcome:
        """Decide, write the category and insert the audit record."""

        try:
            verdict = self.decide(tx, cache, mode=mode)
        except Exception as e:  # noqa: BLE001 - still audited below
            _logger.error("arbiter:decide_failed tx_id=%s error=%s", tx.id, e.__class__.__name__)
            verdict = Verdict(
                category_id=None,
                confidence=0.0,
                source=_SOURCES[(mode, False)],
                rationale=(f"Categorization failed: {e.__class__.__name__}",),
            )

        rationale = list(verdict.rationale)
        if mode is Mode.RECATEGORIZE:
            changed = (
                verdict.category_id is not None and verdict.category_id != tx.prior_category_id
            )
            needs_review = changed
            previous = self._taxonomy.slug_for(tx.prior_category_id) or tx.prior_category_id
            rationale[:0] = [RECATEGORIZATION_NOTE, f"Previous category: {previous or 'none'}"]
        else:
            changed = True
            needs_review = not (
                verdict.category_id is not None
                and verdict.confidence >= self._config.auto_apply_threshold
            )

        applied = False
        error: str | None = None
        if changed:
            update = CategoryUpdate(
                category_id=verdict.category_id,
                confidence=verdict.confidence,
                needs_review=needs_review,
                reviewed=False,
            )
            try:
                self._store.update_transaction_category(tx.id, update)
                applied = True
            except Exception as e:  # noqa: BLE001 - reported per transaction
                error = f"update failed: {e.__class__.__name__}: {e}"
                _logger.error(
                    "arbiter:update_failed tx_id=%s org_id=%s error=%s",
                    tx.id,
                    tx.org_id,
                    e.__class__.__name__,
                )
                report_exception(self._reporter, e, tx_id=tx.id, org_id=tx.org_id, stage="update")

        self._insert_decision(tx, verdict, tuple(rationale))

        _logger.info(
            "arbiter:decided tx_id=%s org_id=%s source=%s category_id=%s confidence=%.3f "
            "needs_review=%s applied=%s",
            tx.id,
            tx.org_id,
            verdict.source.value,
            verdict.category_id,
            verdict.confidence,
            needs_review,
            applied,
        )
        return TransactionOutcome(
            tx_id=tx.id,
            category_id=verdict.category_id,
            confidence=verdict.confidence,
            source=verdict.source,
            needs_review=needs_review,
            used_fallback=verdict.used_fallback,
            changed=changed,
            applied=applied,
            rate_limited=verdict.rate_limited,
            retry_after_ms=verdict.retry_after_ms,
            error=error,
            rationale=tuple(rationale),
        )

    def _insert_decision(
        self, tx: NormalizedTransaction, verdict: Verdict, rationale: tuple[str, ...]
    ) -> None:
        decision = Decision(
            tx_id=tx.id,
            org_id=tx.org_id,
            source=verdict.source,
            category_id=verdict.category_id,
            confidence=verdict.confidence,
            rationale=rationale,
            decided_by=DECIDED_BY,
            created_at=self._clock(),
        )
        try:
            self._store.insert_decision(decision)
        except Exception as e:  # noqa: BLE001 - audit loss never blocks categorization
            _logger.error(
                "arbiter:audit_failed tx_id=%s org_id=%s error=%s",
                tx.id,
                tx.org_id,
                e.__class__.__name__,
            )
            report_exception(self._reporter, e, tx_id=tx.id, org_id=tx.org_id, stage="audit")


__all__ = [
    "DECIDED_BY",
    "DecisionArbiter",
    "Mode",
    "NO_CATEGORY_NOTE",
    "RECATEGORIZATION_NOTE",
    "Verdict",
]
