"""Bounded, order-preserving fan-out over a thread pool.

Used for cross-organization work: each item runs ``worker(item)`` on a pool
of at most ``concurrency`` threads, a submission window keeps only that many
calls in flight, and results come back in input order. A failing item never
cancels the others; its exception is returned in its ``Settled`` slot so the
caller decides what one organization's failure means for the run.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Settled[T]:
    """Outcome of one worker call: exactly one of ``value``/``error`` is meaningful."""

    value: T | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def fan_out[InT, OutT](
    items: Iterable[InT],
    worker: Callable[[InT], OutT],
    *,
    concurrency: int,
) -> list[Settled[OutT]]:
    """Run ``worker`` over ``items`` with at most ``concurrency`` calls at once."""

    if not isinstance(concurrency, int) or concurrency < 1:
        raise ValueError("concurrency must be a positive integer")

    pending = enumerate(items)
    settled: dict[int, Settled[OutT]] = {}
    index_of: dict[Future[OutT], int] = {}

    def _submit_next(pool: ThreadPoolExecutor) -> Future[OutT] | None:
        try:
            idx, item = next(pending)
        except StopIteration:
            return None
        fut = pool.submit(worker, item)
        index_of[fut] = idx
        return fut

    with ThreadPoolExecutor(max_workers=concurrency) as pool:
        active: set[Future[OutT]] = set()
        for _ in range(concurrency):
            fut = _submit_next(pool)
            if fut is None:
                break
            active.add(fut)

        while active:
            done, active = wait(active, return_when=FIRST_COMPLETED)
            for fut in done:
                idx = index_of.pop(fut)
                try:
                    settled[idx] = Settled(value=fut.result())
                except Exception as e:  # noqa: BLE001 - surfaced per item
                    settled[idx] = Settled(error=e)
                nxt = _submit_next(pool)
                if nxt is not None:
                    active.add(nxt)

    return [settled[i] for i in sorted(settled)]


__all__ = ["Settled", "fan_out"]
