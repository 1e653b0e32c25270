"""Pytest configuration for test isolation.

Makes the workspace packages importable without an install and resets the
process-wide SQLAlchemy engine between tests so each test can bind its own
temporary SQLite database.
"""

from __future__ import annotations

import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

_ROOT = Path(__file__).resolve().parents[1]
# Ensure `packages/` and the db library precede the repo root on sys.path so
# local packages resolve first.
sys.path[:0] = [
    p
    for p in (str(_ROOT / "packages"), str(_ROOT / "libs" / "db" / "src"), str(_ROOT))
    if p not in sys.path
]

from db.client import dispose_engine  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_engine(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Drop any engine bound by a previous test and keep tests off real APIs."""

    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    dispose_engine()
    yield
    dispose_engine()
