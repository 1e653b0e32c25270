"""In-process admission control for per-organization batch work.

``RateLimiter`` holds two counters, in-flight batches per organization and
in flight overall, behind one lock. ``try_acquire`` either admits (returns a
token and increments both) or refuses (returns ``None``) without blocking.
``admit`` wraps the pair in a context manager so the release happens on
every exit path. Counters are process-local and reset with the process.
"""

from __future__ import annotations

import itertools
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class AdmissionToken:
    org_id: str
    serial: int


class RateLimiter:
    def __init__(self, *, org_limit: int, global_limit: int) -> None:
        if org_limit < 1 or global_limit < 1:
            raise ValueError("limits must be positive integers")
        self._org_limit = org_limit
        self._global_limit = global_limit
        self._lock = threading.Lock()
        self._per_org: dict[str, int] = {}
        self._global = 0
        self._live: set[AdmissionToken] = set()
        self._serials = itertools.count(1)

    @property
    def org_limit(self) -> int:
        return self._org_limit

    @property
    def global_limit(self) -> int:
        return self._global_limit

    def try_acquire(self, org_id: str) -> AdmissionToken | None:
        """Admit one unit of work for ``org_id`` if both ceilings allow it."""

        with self._lock:
            current = self._per_org.get(org_id, 0)
            if current >= self._org_limit or self._global >= self._global_limit:
                return None
            self._per_org[org_id] = current + 1
            self._global += 1
            token = AdmissionToken(org_id=org_id, serial=next(self._serials))
            self._live.add(token)
            return token

    def release(self, token: AdmissionToken) -> None:
        """Return ``token``'s slot. Releasing the same token twice is a no-op."""

        with self._lock:
            if token not in self._live:
                return
            self._live.discard(token)
            remaining = self._per_org.get(token.org_id, 0) - 1
            if remaining > 0:
                self._per_org[token.org_id] = remaining
            else:
                self._per_org.pop(token.org_id, None)
            self._global -= 1

    @contextmanager
    def admit(self, org_id: str) -> Iterator[AdmissionToken | None]:
        """Scoped ``try_acquire``; yields ``None`` when refused."""

        token = self.try_acquire(org_id)
        try:
            yield token
        finally:
            if token is not None:
                self.release(token)

    def in_flight(self, org_id: str) -> int:
        with self._lock:
            return self._per_org.get(org_id, 0)

    @property
    def global_in_flight(self) -> int:
        with self._lock:
            return self._global

    def is_saturated(self) -> bool:
        with self._lock:
            return self._global >= self._global_limit


__all__ = ["AdmissionToken", "RateLimiter"]
