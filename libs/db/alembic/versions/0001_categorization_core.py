# ruff: noqa: I001
"""Categorization core tables.

Revision ID: 0001_categorization_core
Revises: None
Create Date: 2026-10-19

Categories are seeded separately from the static registry
(``pnl-categorizer seed-taxonomy``) so ids have a single source of truth.
"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op


# revision identifiers, used by Alembic.
revision: str = "0001_categorization_core"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _created_at(name: str = "created_at") -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("CURRENT_TIMESTAMP"),
    )


def upgrade() -> None:
    op.create_table(
        "categories",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("slug", sa.String(), nullable=False, unique=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("parent_id", sa.String(36), nullable=True),
        sa.Column("accounting_type", sa.String(), nullable=False),
        sa.Column("is_pnl", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("include_in_prompt", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.ForeignKeyConstraint(
            ["parent_id"],
            ["categories.id"],
            name="fk_categories_parent",
            deferrable=True,
            initially="DEFERRED",
        ),
        sa.CheckConstraint(
            "accounting_type IN ('revenue','cogs','opex','liability','clearing')",
            name="ck_categories_accounting_type",
        ),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("org_id", sa.String(64), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default=sa.text("'USD'")),
        sa.Column("description", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("merchant_name", sa.String(), nullable=True),
        sa.Column("mcc", sa.String(4), nullable=True),
        sa.Column("source", sa.String(), nullable=False, server_default=sa.text("'unknown'")),
        sa.Column("category_id", sa.String(36), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=True),
        sa.Column("needs_review", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("reviewed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("categorized_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.CheckConstraint(
            "confidence IS NULL OR (confidence >= 0 AND confidence <= 1)",
            name="ck_transactions_confidence_range",
        ),
    )
    op.create_index("ix_transactions_org_date", "transactions", ["org_id", "date"])
    op.create_index(
        "ix_transactions_pending", "transactions", ["org_id", "category_id", "categorized_at"]
    )

    op.create_table(
        "vendor_rules",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("org_id", sa.String(64), nullable=False),
        sa.Column("pattern", sa.JSON(), nullable=False),
        sa.Column("category_id", sa.String(36), nullable=False),
        sa.Column("weight", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
        sa.CheckConstraint("weight >= 1", name="ck_vendor_rules_weight_positive"),
    )
    op.create_index("ix_vendor_rules_org_id", "vendor_rules", ["org_id"])

    op.create_table(
        "vendor_embeddings",
        sa.Column("org_id", sa.String(64), primary_key=True),
        sa.Column("vendor", sa.String(), primary_key=True),
        sa.Column("embedding", sa.JSON(), nullable=False),
        _created_at("last_refreshed"),
    )

    op.create_table(
        "decisions",
        sa.Column("id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), primary_key=True),
        sa.Column("tx_id", sa.String(64), nullable=False),
        sa.Column("org_id", sa.String(64), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("category_id", sa.String(36), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("rationale", sa.JSON(), nullable=False),
        sa.Column("decided_by", sa.String(), nullable=False),
        _created_at(),
        sa.CheckConstraint(
            "source IN ('pass1','llm','recategorization_pass1','recategorization_llm')",
            name="ck_decisions_source",
        ),
    )
    op.create_index("ix_decisions_tx_id", "decisions", ["tx_id"])
    op.create_index("ix_decisions_org_id", "decisions", ["org_id"])


def downgrade() -> None:
    op.drop_index("ix_decisions_org_id", table_name="decisions")
    op.drop_index("ix_decisions_tx_id", table_name="decisions")
    op.drop_table("decisions")
    op.drop_table("vendor_embeddings")
    op.drop_index("ix_vendor_rules_org_id", table_name="vendor_rules")
    op.drop_table("vendor_rules")
    op.drop_index("ix_transactions_pending", table_name="transactions")
    op.drop_index("ix_transactions_org_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("categories")
