"""Public interface for the ``pnl_categorizer`` package.

Re-exports the engine's stable import surface: the taxonomy registry, the
two passes, guardrails, the decision arbiter, the batch orchestrator and the
offline rule validator. There is no runtime logic here, only symbol
re-exports.
"""

from .arbiter import DecisionArbiter, Mode
from .config import CategorizerConfig
from .errors import ConfigurationError, PnlCategorizerError, RuleValidationError, TaxonomyError
from .guardrails import apply_guardrails
from .models import (
    AccountingType,
    CategorizationResult,
    CategoryNode,
    Decision,
    DecisionSource,
    NormalizedTransaction,
    VendorRule,
)
from .orchestrator import BatchOrchestrator, BatchResult, WorkerRunResult
from .pass1 import Pass1Context, categorize_pass1
from .pass2_llm import LlmClassifier, parse_llm_response
from .rate_limit import RateLimiter
from .recategorize import RecategorizationResult, recategorize_org
from .taxonomy import DEFAULT_TAXONOMY, TaxonomyRegistry
from .validator import ValidationReport, validate_rules

__all__ = [
    # Engine
    "BatchOrchestrator",
    "DecisionArbiter",
    "LlmClassifier",
    "Mode",
    "RateLimiter",
    "apply_guardrails",
    "categorize_pass1",
    "parse_llm_response",
    "recategorize_org",
    "validate_rules",
    # Models / types
    "AccountingType",
    "BatchResult",
    "CategorizationResult",
    "CategorizerConfig",
    "CategoryNode",
    "DEFAULT_TAXONOMY",
    "Decision",
    "DecisionSource",
    "NormalizedTransaction",
    "Pass1Context",
    "RecategorizationResult",
    "TaxonomyRegistry",
    "ValidationReport",
    "VendorRule",
    "WorkerRunResult",
    # Errors
    "ConfigurationError",
    "PnlCategorizerError",
    "RuleValidationError",
    "TaxonomyError",
]
