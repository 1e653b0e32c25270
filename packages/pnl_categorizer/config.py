"""Engine settings.

``CategorizerConfig`` carries every tunable of the two-pass pipeline and the
batch orchestrator. Defaults match production; ``from_env()`` overlays
``PNL_*`` environment variables (the CLI loads ``.env`` first).
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .errors import ConfigurationError

# Environment variable -> field name
_ENV_FIELDS: dict[str, str] = {
    "PNL_PASS2_THRESHOLD": "pass2_threshold",
    "PNL_RECATEGORIZE_PASS2_THRESHOLD": "recategorize_pass2_threshold",
    "PNL_AUTO_APPLY_THRESHOLD": "auto_apply_threshold",
    "PNL_ORG_CONCURRENCY": "org_concurrency",
    "PNL_GLOBAL_CONCURRENCY": "global_concurrency",
    "PNL_BATCH_SIZE": "batch_size",
    "PNL_MAX_ORGS_PER_RUN": "max_orgs_per_run",
    "PNL_MAX_CALLS_PER_ORG": "max_calls_per_org",
    "PNL_MAX_WAIT_MS": "max_wait_ms",
    "PNL_RETRY_AFTER_MS": "retry_after_ms",
    "PNL_LLM_MODEL": "llm_model",
    "PNL_LLM_TEMPERATURE": "llm_temperature",
    "PNL_LLM_MAX_TOKENS": "llm_max_tokens",
    "PNL_LLM_MAX_ATTEMPTS": "llm_max_attempts",
    "PNL_LLM_ENABLED": "llm_enabled",
    "PNL_INDUSTRY": "industry",
}


class CategorizerConfig(BaseModel):
    """Immutable settings for one engine/orchestrator instance."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    # Pass-2 runs when Pass-1 confidence is below the threshold for the mode.
    pass2_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    recategorize_pass2_threshold: float = Field(default=0.95, ge=0.0, le=1.0)
    auto_apply_threshold: float = Field(default=0.85, ge=0.0, le=1.0)

    org_concurrency: int = Field(default=2, ge=1)
    global_concurrency: int = Field(default=5, ge=1)
    batch_size: int = Field(default=10, ge=1)

    max_orgs_per_run: int = Field(default=5, ge=1)
    max_calls_per_org: int = Field(default=20, ge=1)
    max_wait_ms: int = Field(default=5000, ge=0)
    retry_after_ms: int = Field(default=1000, ge=0)

    llm_model: str = Field(default="gpt-4o-mini", min_length=1)
    llm_temperature: float = Field(default=0.1, ge=0.0, le=2.0)
    llm_max_tokens: int = Field(default=200, ge=1)
    llm_max_attempts: int = Field(default=3, ge=1)
    llm_enabled: bool = True
    industry: str = Field(default="ecommerce", min_length=1)

    @model_validator(mode="after")
    def _check_thresholds(self) -> Self:
        if self.recategorize_pass2_threshold < self.pass2_threshold:
            raise ValueError(
                "recategorize_pass2_threshold must be >= pass2_threshold "
                "(historical recategorization is the stricter mode)"
            )
        if self.org_concurrency > self.global_concurrency:
            raise ValueError("org_concurrency cannot exceed global_concurrency")
        return self

    @classmethod
    def build(cls, **values: Any) -> CategorizerConfig:
        """Validate ``values`` and raise ``ConfigurationError`` on failure."""

        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigurationError(str(e)) from e

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> CategorizerConfig:
        """Build settings from ``PNL_*`` variables (unset ones keep defaults)."""

        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for var, field in _ENV_FIELDS.items():
            raw = env.get(var)
            if raw is None or raw.strip() == "":
                continue
            values[field] = raw.strip()
        return cls.build(**values)


__all__ = ["CategorizerConfig"]
