"""Historical recategorization of already-categorized transactions.

Re-runs the arbiter in ``RECATEGORIZE`` mode (stricter Pass-2 threshold)
over an organization's recent history. Only changed categories are written,
and always flagged for review so settled books are never silently rewritten.
Every attempt is audited with a ``recategorization_*`` source.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, date, datetime, timedelta
from typing import Any

from .arbiter import DecisionArbiter, Mode
from .config import CategorizerConfig
from .logging_setup import get_logger
from .pass2_llm import LlmClassifier
from .reporting import ErrorReporter
from .store import EngineStore, OrgCacheArena
from .taxonomy import DEFAULT_TAXONOMY, TaxonomyRegistry

_logger = get_logger("pnl_categorizer.recategorize")

DEFAULT_DAYS_BACK = 180
DEFAULT_BATCH_SIZE = 50
MAX_BATCH_SIZE = 100
_PAUSE_BETWEEN_BATCHES_SEC = 0.1


@dataclass(slots=True)
class RecategorizationResult:
    org_id: str
    processed: int = 0
    recategorized: int = 0
    marked_for_review: int = 0
    errors: list[str] = field(default_factory=list)
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def recategorize_org(
    store: EngineStore,
    org_id: str,
    *,
    days_back: int = DEFAULT_DAYS_BACK,
    batch_size: int = DEFAULT_BATCH_SIZE,
    config: CategorizerConfig | None = None,
    taxonomy: TaxonomyRegistry = DEFAULT_TAXONOMY,
    llm: LlmClassifier | None = None,
    reporter: ErrorReporter | None = None,
    today: date | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> RecategorizationResult:
    """Recategorize ``org_id``'s transactions dated within ``days_back`` days.

    ``batch_size`` is capped at 100. Per-transaction failures are collected
    in ``errors``; this function only raises for invalid arguments.
    """

    if days_back < 1:
        raise ValueError("days_back must be >= 1")
    if batch_size < 1:
        raise ValueError("batch_size must be >= 1")
    batch_size = min(batch_size, MAX_BATCH_SIZE)

    t0 = time.perf_counter()
    since = (today or datetime.now(UTC).date()) - timedelta(days=days_back)
    arbiter = DecisionArbiter(
        store, config=config, taxonomy=taxonomy, llm=llm, reporter=reporter
    )
    cache = OrgCacheArena(store).get(org_id)
    result = RecategorizationResult(org_id=org_id)

    offset = 0
    while True:
        try:
            page = list(
                store.list_transactions_since(org_id, since, limit=batch_size, offset=offset)
            )
        except Exception as e:  # noqa: BLE001 - stop, keep what was done
            result.errors.append(f"history read failed: {e.__class__.__name__}: {e}")
            _logger.error(
                "recategorize:read_failed org_id=%s offset=%d error=%s", org_id, offset, e
            )
            break
        if not page:
            break

        for tx in page:
            outcome = arbiter.process(tx, cache, mode=Mode.RECATEGORIZE)
            result.processed += 1
            if outcome.error:
                result.errors.append(f"{tx.id}: {outcome.error}")
            elif outcome.changed and outcome.applied:
                result.recategorized += 1
                if outcome.needs_review:
                    result.marked_for_review += 1

        _logger.info(
            "recategorize:batch org_id=%s offset=%d size=%d recategorized=%d",
            org_id,
            offset,
            len(page),
            result.recategorized,
        )
        if len(page) < batch_size:
            break
        offset += len(page)
        sleep(_PAUSE_BETWEEN_BATCHES_SEC)

    result.duration_ms = int((time.perf_counter() - t0) * 1000)
    _logger.info(
        "recategorize:done org_id=%s processed=%d recategorized=%d errors=%d duration_ms=%d",
        org_id,
        result.processed,
        result.recategorized,
        len(result.errors),
        result.duration_ms,
    )
    return result


__all__ = [
    "DEFAULT_BATCH_SIZE",
    "DEFAULT_DAYS_BACK",
    "MAX_BATCH_SIZE",
    "RecategorizationResult",
    "recategorize_org",
]
