from __future__ import annotations

from datetime import UTC, date, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    pass


# ---------------------------
# Reference: categories
# ---------------------------


class Category(Base):
    """Taxonomy node mirrored from the static registry (ids are stable UUIDs)."""

    __tablename__ = "categories"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    slug: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    parent_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("categories.id", deferrable=True, initially="DEFERRED"),
        nullable=True,
    )
    accounting_type: Mapped[str] = mapped_column(String, nullable=False)
    is_pnl: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("true"))
    include_in_prompt: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("true")
    )

    __table_args__ = (
        CheckConstraint(
            "accounting_type IN ('revenue','cogs','opex','liability','clearing')",
            name="ck_categories_accounting_type",
        ),
    )


# ---------------------------
# Core: transactions
# ---------------------------


class Transaction(Base):
    """Normalized transaction plus the engine's categorization columns.

    A row is pending while ``category_id`` and ``categorized_at`` are both
    NULL; the engine sets ``categorized_at`` on every write so a transaction
    that could not be categorized leaves the queue (flagged for review).
    """

    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    org_id: Mapped[str] = mapped_column(String(64), nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, server_default=text("'USD'"))
    description: Mapped[str] = mapped_column(Text, nullable=False, server_default=text("''"))
    merchant_name: Mapped[str | None] = mapped_column(String, nullable=True)
    mcc: Mapped[str | None] = mapped_column(String(4), nullable=True)
    source: Mapped[str] = mapped_column(String, nullable=False, server_default=text("'unknown'"))

    category_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    needs_review: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("false")
    )
    reviewed: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("false"))
    categorized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "confidence IS NULL OR (confidence >= 0 AND confidence <= 1)",
            name="ck_transactions_confidence_range",
        ),
        Index("ix_transactions_org_date", "org_id", "date"),
        Index("ix_transactions_pending", "org_id", "category_id", "categorized_at"),
    )


# ---------------------------
# Learned: vendor rules and embeddings
# ---------------------------


class VendorRule(Base):
    __tablename__ = "vendor_rules"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    org_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    # {"vendor": str?, "mcc": str?, "descriptionTokens": [str]?}
    pattern: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    category_id: Mapped[str] = mapped_column(String(36), nullable=False)
    weight: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("1"))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (CheckConstraint("weight >= 1", name="ck_vendor_rules_weight_positive"),)


class VendorEmbedding(Base):
    __tablename__ = "vendor_embeddings"

    org_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    vendor: Mapped[str] = mapped_column(String, primary_key=True)
    embedding: Mapped[list[float]] = mapped_column(JSON, nullable=False)
    last_refreshed: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


# ---------------------------
# Audit: decisions (append-only)
# ---------------------------


class Decision(Base):
    __tablename__ = "decisions"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    tx_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    org_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    source: Mapped[str] = mapped_column(String, nullable=False)
    category_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    rationale: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    decided_by: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "source IN ('pass1','llm','recategorization_pass1','recategorization_llm')",
            name="ck_decisions_source",
        ),
    )
