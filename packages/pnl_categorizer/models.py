"""Data models shared across the categorization engine.

Inbound records (``NormalizedTransaction``, ``VendorRule``) are pydantic
models so that rows coming from storage or JSON files are validated once at
the boundary. Values produced inside the engine (results, outcomes, audit
decisions) are frozen, slotted dataclasses.
"""

from __future__ import annotations

import datetime as dt
import math
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

# ---------------------------------------------------------------------------
# Taxonomy
# ---------------------------------------------------------------------------


class AccountingType(StrEnum):
    REVENUE = "revenue"
    COGS = "cogs"
    OPEX = "opex"
    LIABILITY = "liability"
    CLEARING = "clearing"


@dataclass(frozen=True, slots=True)
class CategoryNode:
    """One node of the category tree.

    ``id`` is a stable UUID string that never changes once published;
    ``slug`` is the human/LLM facing key. Nodes are immutable.
    """

    id: str
    slug: str
    name: str
    parent_id: str | None
    accounting_type: AccountingType
    is_pnl: bool
    include_in_prompt: bool


# ---------------------------------------------------------------------------
# Inbound records
# ---------------------------------------------------------------------------


class NormalizedTransaction(BaseModel):
    """A transaction as handed over by ingestion (read-only to the engine).

    ``amount_cents`` is an exact signed integer; integer-valued strings are
    accepted (``"-1299"``), fractional values are rejected.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    org_id: str
    date: dt.date
    amount_cents: int
    currency: str = "USD"
    description: str = ""
    merchant_name: str | None = None
    mcc: str | None = None
    prior_category_id: str | None = None
    prior_confidence: float | None = None
    source: str = "unknown"

    @field_validator("amount_cents", mode="before")
    @classmethod
    def _exact_integer(cls, v: Any) -> Any:
        if isinstance(v, bool):
            raise ValueError("amount_cents must be an integer, not a boolean")
        if isinstance(v, str):
            s = v.strip()
            sign = s[:1] if s[:1] in "+-" else ""
            digits = s[len(sign) :]
            if not digits.isdigit():
                raise ValueError(f"amount_cents must be an integer string, got {v!r}")
            return int(s)
        if isinstance(v, float):
            if not v.is_integer():
                raise ValueError(f"amount_cents must be integral, got {v!r}")
            return int(v)
        return v

    @field_validator("mcc", mode="before")
    @classmethod
    def _mcc_as_text(cls, v: Any) -> Any:
        if v is None:
            return None
        s = str(v).strip()
        return s or None


class RulePattern(BaseModel):
    """Match criteria of a vendor rule; every present field must match."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    vendor: str | None = None
    mcc: str | None = None
    description_tokens: tuple[str, ...] = Field(default=(), alias="descriptionTokens")

    @field_validator("mcc", mode="before")
    @classmethod
    def _mcc_as_text(cls, v: Any) -> Any:
        if v is None:
            return None
        s = str(v).strip()
        return s or None

    @field_validator("description_tokens", mode="before")
    @classmethod
    def _tokens(cls, v: Any) -> Any:
        if v is None:
            return ()
        if isinstance(v, str):
            v = v.split()
        return tuple(str(t).strip().lower() for t in v if str(t).strip())

    def is_empty(self) -> bool:
        return not self.vendor and not self.mcc and not self.description_tokens


class VendorRule(BaseModel):
    """An organization's learned mapping from a pattern to a category."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    id: str
    org_id: str = Field(alias="orgId")
    pattern: RulePattern
    category_id: str = Field(alias="categoryId")
    weight: int = Field(default=1, ge=1)


@dataclass(frozen=True, slots=True)
class VendorEmbedding:
    vendor: str
    embedding: tuple[float, ...] = ()


# ---------------------------------------------------------------------------
# Engine outputs
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CategorizationResult:
    """Outcome of one pass for one transaction.

    ``category_id`` and ``confidence`` are both ``None`` when the pass found
    nothing. Pass-2 results additionally flag whether the safe fallback was
    used and whether the provider rate limited the call.
    """

    category_id: str | None = None
    confidence: float | None = None
    rationale: tuple[str, ...] = ()
    used_fallback: bool = False
    rate_limited: bool = False
    retry_after_ms: int | None = None

    @property
    def is_empty(self) -> bool:
        return self.category_id is None

    def confidence_or_zero(self) -> float:
        c = self.confidence
        if c is None or not math.isfinite(c):
            return 0.0
        return c


@dataclass(frozen=True, slots=True)
class GuardrailOutcome:
    """Verdict of a single guardrail check."""

    allowed: bool
    reason: str | None = None
    suggested_category_slug: str | None = None
    confidence_penalty: float | None = None
    tag: str | None = None


@dataclass(frozen=True, slots=True)
class GuardrailResult:
    final_slug: str | None
    final_confidence: float
    guardrails_applied: tuple[str, ...] = ()
    violations: tuple[str, ...] = ()


class DecisionSource(StrEnum):
    PASS1 = "pass1"
    LLM = "llm"
    RECATEGORIZATION_PASS1 = "recategorization_pass1"
    RECATEGORIZATION_LLM = "recategorization_llm"


@dataclass(frozen=True, slots=True)
class Decision:
    """Append-only audit entry written after every categorization attempt."""

    tx_id: str
    org_id: str
    source: DecisionSource
    category_id: str | None
    confidence: float
    rationale: tuple[str, ...]
    decided_by: str
    created_at: dt.datetime


@dataclass(frozen=True, slots=True)
class CategoryUpdate:
    """Write applied to a transaction row after a decision."""

    category_id: str | None
    confidence: float | None
    needs_review: bool
    reviewed: bool = False


@dataclass(slots=True)
class TransactionOutcome:
    """Per-transaction summary reported by the arbiter to its callers."""

    tx_id: str
    category_id: str | None
    confidence: float
    source: DecisionSource
    needs_review: bool
    used_fallback: bool = False
    changed: bool = True
    applied: bool = True
    rate_limited: bool = False
    retry_after_ms: int | None = None
    error: str | None = None
    rationale: tuple[str, ...] = field(default_factory=tuple)


__all__ = [
    "AccountingType",
    "CategorizationResult",
    "CategoryNode",
    "CategoryUpdate",
    "Decision",
    "DecisionSource",
    "GuardrailOutcome",
    "GuardrailResult",
    "NormalizedTransaction",
    "RulePattern",
    "TransactionOutcome",
    "VendorEmbedding",
    "VendorRule",
]
