"""Exception types raised by ``pnl_categorizer``.

The categorization hot path converts failures into fallbacks instead of
raising; these types surface only at construction time (bad configuration or
taxonomy tables) and from the offline rule validator's input loading.
"""

from __future__ import annotations


class PnlCategorizerError(Exception):
    """Base class for package errors."""


class ConfigurationError(PnlCategorizerError, ValueError):
    """Invalid engine settings (thresholds, limits, model options)."""


class TaxonomyError(PnlCategorizerError):
    """The static category table violates a registry invariant."""


class RuleValidationError(PnlCategorizerError):
    """Rule input for the offline validator could not be read."""


__all__ = [
    "ConfigurationError",
    "PnlCategorizerError",
    "RuleValidationError",
    "TaxonomyError",
]
