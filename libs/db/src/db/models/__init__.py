"""Shared SQLAlchemy models registry for the workspace database.

Currently includes the categorization engine's tables used by
``pnl_categorizer``.
"""

from .categorization import Base, Category, Decision, Transaction, VendorEmbedding, VendorRule

__all__ = [
    "Base",
    "Category",
    "Decision",
    "Transaction",
    "VendorEmbedding",
    "VendorRule",
]
