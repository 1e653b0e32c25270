"""db: shared database library (SQLAlchemy/Alembic).

Public exports
--------------
- ``Base`` and ``metadata`` for Alembic autogenerate/targeting
- ORM models in ``db.models.categorization`` (re-exported for convenience)
- Engine/session helpers in ``db.client``
"""

from __future__ import annotations

from .models.categorization import (
    Base,
    Category,
    Decision,
    Transaction,
    VendorEmbedding,
    VendorRule,
)

# Re-export SQLAlchemy metadata for Alembic's env.py
metadata = Base.metadata

__all__ = [
    "Base",
    "Category",
    "Decision",
    "Transaction",
    "VendorEmbedding",
    "VendorRule",
    "metadata",
]
