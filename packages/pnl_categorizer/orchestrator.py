"""Batch orchestrator and worker loop.

``BatchOrchestrator.run_batch`` is the unit an external scheduler calls: it
pulls up to ``max_batches`` pages of pending transactions (oldest first),
groups them by organization and drains each group through the decision
arbiter. Organizations run concurrently up to the global ceiling; inside one
organization transactions are processed sequentially. Admission goes through
a ``RateLimiter`` so neither ceiling is exceeded, and a refused organization
is reported as rate limited rather than raised.

``run_worker`` repeats ``run_batch`` per organization with known backlog
until it drains, hits the per-organization call ceiling, or fails. Upstream
rate limiting makes it wait ``min(retry_after, max_wait)`` before retrying.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Sequence
from dataclasses import asdict, dataclass, field
from typing import Any

from .arbiter import DecisionArbiter, Mode
from .config import CategorizerConfig
from .fanout import fan_out
from .logging_setup import get_logger
from .models import NormalizedTransaction
from .pass2_llm import LlmClassifier
from .rate_limit import RateLimiter
from .reporting import ErrorReporter, report_exception
from .store import EngineStore, OrgCacheArena
from .taxonomy import DEFAULT_TAXONOMY, TaxonomyRegistry

_logger = get_logger("pnl_categorizer.orchestrator")


@dataclass(slots=True)
class OrgBatchResult:
    org_id: str
    processed: int = 0
    auto_applied: int = 0
    needs_review: int = 0
    fallbacks: int = 0
    deferred: int = 0
    rate_limited: bool = False
    retry_after_ms: int | None = None
    errors: list[str] = field(default_factory=list)


@dataclass(slots=True)
class BatchResult:
    processed: int
    organizations: int
    results: list[OrgBatchResult]
    needs_another_call: bool
    rate_limited: bool = False
    retry_after_ms: int | None = None
    fallback_count: int = 0
    remaining: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class OrgRunSummary:
    org_id: str
    calls: int = 0
    processed: int = 0
    fallbacks: int = 0
    errors: list[str] = field(default_factory=list)
    stopped_reason: str = "drained"


@dataclass(slots=True)
class WorkerRunResult:
    organizations: list[OrgRunSummary]
    processed: int = 0
    fallbacks: int = 0
    duration_ms: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def group_by_org(
    transactions: Sequence[NormalizedTransaction],
) -> dict[str, list[NormalizedTransaction]]:
    """Group preserving input order, both across and within organizations."""

    groups: dict[str, list[NormalizedTransaction]] = {}
    for tx in transactions:
        groups.setdefault(tx.org_id, []).append(tx)
    return groups


class BatchOrchestrator:
    """Drive pending transactions through the arbiter with admission control.

    One instance corresponds to one orchestrator run: its ``RateLimiter`` and
    ``OrgCacheArena`` are created here (or injected) and shared by every
    ``run_batch`` call made through it, so each organization's rules and
    embeddings are fetched at most once per run.
    """

    def __init__(
        self,
        store: EngineStore,
        *,
        config: CategorizerConfig | None = None,
        taxonomy: TaxonomyRegistry = DEFAULT_TAXONOMY,
        llm: LlmClassifier | None = None,
        reporter: ErrorReporter | None = None,
        limiter: RateLimiter | None = None,
        caches: OrgCacheArena | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._config = config or CategorizerConfig()
        self._reporter = reporter
        self._limiter = limiter or RateLimiter(
            org_limit=self._config.org_concurrency,
            global_limit=self._config.global_concurrency,
        )
        self._caches = caches or OrgCacheArena(store)
        self._arbiter = DecisionArbiter(
            store, config=self._config, taxonomy=taxonomy, llm=llm, reporter=reporter
        )
        self._sleep = sleep

    @property
    def limiter(self) -> RateLimiter:
        return self._limiter

    @property
    def caches(self) -> OrgCacheArena:
        return self._caches

    # ---- One organization, one page ----

    def _process_org(self, org_id: str, txs: list[NormalizedTransaction]) -> OrgBatchResult:
        result = OrgBatchResult(org_id=org_id)
        with self._limiter.admit(org_id) as token:
            if token is None:
                result.rate_limited = True
                result.retry_after_ms = self._config.retry_after_ms
                result.deferred = len(txs)
                _logger.info(
                    "orchestrator:org_deferred org_id=%s transactions=%d org_in_flight=%d "
                    "global_in_flight=%d",
                    org_id,
                    len(txs),
                    self._limiter.in_flight(org_id),
                    self._limiter.global_in_flight,
                )
                return result

            cache = self._caches.get(org_id)
            for pos, tx in enumerate(txs):
                try:
                    outcome = self._arbiter.process(tx, cache, mode=Mode.INGEST)
                except Exception as e:  # noqa: BLE001 - one transaction never aborts the batch
                    result.errors.append(f"{tx.id}: {e.__class__.__name__}: {e}")
                    _logger.error(
                        "orchestrator:tx_failed org_id=%s tx_id=%s error=%s",
                        org_id,
                        tx.id,
                        e.__class__.__name__,
                    )
                    continue
                result.processed += 1
                if outcome.error:
                    result.errors.append(f"{tx.id}: {outcome.error}")
                if outcome.used_fallback:
                    result.fallbacks += 1
                if outcome.needs_review:
                    result.needs_review += 1
                elif outcome.applied:
                    result.auto_applied += 1
                if outcome.rate_limited:
                    # Stop calling the provider for this org; the rest stays pending.
                    result.rate_limited = True
                    result.retry_after_ms = outcome.retry_after_ms or self._config.retry_after_ms
                    result.deferred = len(txs) - pos - 1
                    break
        return result

    # ---- Batch step ----

    def run_batch(self, *, org_id: str | None = None, max_batches: int = 1) -> BatchResult:
        """Process up to ``max_batches`` pages of pending work.

        Parameters
        ----------
        org_id:
            Restrict work to one organization; ``None`` takes the global queue.
        max_batches:
            Page budget for this call (each page is ``config.batch_size``).

        Returns
        -------
        BatchResult
            ``needs_another_call`` is true while pending work remains;
            ``rate_limited``/``retry_after_ms`` tell the caller to back off.
        """

        if max_batches < 1:
            raise ValueError("max_batches must be >= 1")

        t0 = time.perf_counter()
        per_org: dict[str, OrgBatchResult] = {}
        rate_limited = False
        retry_after: int | None = None
        last_page_full = False

        for batch_no in range(max_batches):
            page = list(
                self._store.list_pending_transactions(org_id, limit=self._config.batch_size)
            )
            last_page_full = len(page) >= self._config.batch_size
            if not page:
                break
            groups = group_by_org(page)
            _logger.info(
                "orchestrator:batch batch_no=%d transactions=%d organizations=%d",
                batch_no,
                len(page),
                len(groups),
            )
            for org, outcome in self._run_groups(groups):
                merged = per_org.setdefault(org, OrgBatchResult(org_id=org))
                _merge(merged, outcome)
                if outcome.rate_limited:
                    rate_limited = True
                    retry_after = max(retry_after or 0, outcome.retry_after_ms or 0)
            if rate_limited:
                break

        remaining = self._count_remaining(org_id)
        needs_another = remaining > 0 if remaining is not None else (last_page_full or rate_limited)
        results = list(per_org.values())
        processed = sum(r.processed for r in results)
        fallbacks = sum(r.fallbacks for r in results)
        _logger.info(
            "orchestrator:batch_done processed=%d organizations=%d fallbacks=%d remaining=%s "
            "rate_limited=%s latency_ms=%.2f",
            processed,
            len(results),
            fallbacks,
            remaining,
            rate_limited,
            (time.perf_counter() - t0) * 1000.0,
        )
        return BatchResult(
            processed=processed,
            organizations=len(results),
            results=results,
            needs_another_call=needs_another,
            rate_limited=rate_limited,
            retry_after_ms=retry_after if rate_limited else None,
            fallback_count=fallbacks,
            remaining=remaining,
        )

    def _run_groups(
        self, groups: dict[str, list[NormalizedTransaction]]
    ) -> list[tuple[str, OrgBatchResult]]:
        items = list(groups.items())
        if len(items) == 1:
            org, txs = items[0]
            return [(org, self._process_org(org, txs))]

        settled = fan_out(
            items,
            lambda pair: self._process_org(pair[0], pair[1]),
            concurrency=self._config.global_concurrency,
        )
        out: list[tuple[str, OrgBatchResult]] = []
        for (org, _txs), s in zip(items, settled, strict=True):
            if s.ok and s.value is not None:
                out.append((org, s.value))
            else:
                failed = OrgBatchResult(org_id=org, errors=[f"org failed: {s.error!r}"])
                out.append((org, failed))
        return out

    def _count_remaining(self, org_id: str | None) -> int | None:
        try:
            return self._store.count_pending(org_id)
        except Exception as e:  # noqa: BLE001 - fall back to the page-size heuristic
            _logger.warning("orchestrator:count_failed org_id=%s error=%s", org_id, e)
            return None

    # ---- Worker loop ----

    def _drain_org(self, org_id: str) -> OrgRunSummary:
        cfg = self._config
        summary = OrgRunSummary(org_id=org_id, stopped_reason="call_ceiling")
        try:
            while summary.calls < cfg.max_calls_per_org:
                result = self.run_batch(org_id=org_id)
                summary.calls += 1
                summary.processed += result.processed
                summary.fallbacks += result.fallback_count
                for r in result.results:
                    summary.errors.extend(r.errors)
                if result.rate_limited:
                    wait_ms = min(result.retry_after_ms or cfg.retry_after_ms, cfg.max_wait_ms)
                    _logger.info(
                        "worker:rate_limited org_id=%s call=%d wait_ms=%d",
                        org_id,
                        summary.calls,
                        wait_ms,
                    )
                    self._sleep(wait_ms / 1000.0)
                    continue
                if not result.needs_another_call:
                    summary.stopped_reason = "drained"
                    break
        except Exception as e:  # noqa: BLE001 - skip this org, keep the run going
            summary.stopped_reason = "error"
            summary.errors.append(f"{e.__class__.__name__}: {e}")
            _logger.error(
                "worker:org_failed org_id=%s calls=%d error=%s",
                org_id,
                summary.calls,
                e.__class__.__name__,
            )
            report_exception(self._reporter, e, org_id=org_id, stage="worker")
        return summary

    def run_worker(self) -> WorkerRunResult:
        """One bounded pass over organizations with pending work."""

        cfg = self._config
        t0 = time.perf_counter()
        try:
            backlog = list(self._store.orgs_with_backlog(cfg.max_orgs_per_run))
        except Exception as e:  # noqa: BLE001 - nothing to do this run
            _logger.error("worker:backlog_failed error=%s", e.__class__.__name__)
            report_exception(self._reporter, e, stage="worker_backlog")
            return WorkerRunResult(organizations=[], error=f"{e.__class__.__name__}: {e}")

        orgs = [b.org_id for b in backlog[: cfg.max_orgs_per_run]]
        _logger.info("worker:start organizations=%d", len(orgs))
        summaries: list[OrgRunSummary] = []
        for org, s in zip(
            orgs, fan_out(orgs, self._drain_org, concurrency=cfg.global_concurrency), strict=True
        ):
            # _drain_org catches its own errors; a failed slot means the thread itself died.
            summaries.append(
                s.value
                if s.ok and s.value is not None
                else OrgRunSummary(org_id=org, errors=[repr(s.error)], stopped_reason="error")
            )

        result = WorkerRunResult(
            organizations=summaries,
            processed=sum(s.processed for s in summaries),
            fallbacks=sum(s.fallbacks for s in summaries),
            duration_ms=int((time.perf_counter() - t0) * 1000),
        )
        _logger.info(
            "worker:done organizations=%d processed=%d fallbacks=%d duration_ms=%d",
            len(summaries),
            result.processed,
            result.fallbacks,
            result.duration_ms,
        )
        return result


def _merge(into: OrgBatchResult, other: OrgBatchResult) -> None:
    into.processed += other.processed
    into.auto_applied += other.auto_applied
    into.needs_review += other.needs_review
    into.fallbacks += other.fallbacks
    into.deferred += other.deferred
    into.errors.extend(other.errors)
    if other.rate_limited:
        into.rate_limited = True
        into.retry_after_ms = max(into.retry_after_ms or 0, other.retry_after_ms or 0)


__all__ = [
    "BatchOrchestrator",
    "BatchResult",
    "OrgBatchResult",
    "OrgRunSummary",
    "WorkerRunResult",
    "group_by_org",
]
