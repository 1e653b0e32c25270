"""Pass-2: LLM categorization through the OpenAI Responses API.

Public API:
    - :class:`LlmClassifier`
    - :func:`parse_llm_response`

Model output is untrusted text. ``parse_llm_response`` returns a tagged
``ParseSuccess | ParseFailure`` and never raises; the returned slug always
goes through the taxonomy's total ``map_slug_to_id``. Transport errors,
exhausted retries and parse failures all collapse into the same safe
fallback (``other_ops`` at confidence 0.5), so ``LlmClassifier.categorize``
never raises either.
"""

from __future__ import annotations

import json
import math
import random
import re
import time
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

from openai import OpenAI
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from . import prompting
from .config import CategorizerConfig
from .logging_setup import get_logger
from .models import CategorizationResult, NormalizedTransaction
from .reporting import ErrorReporter, report_event, report_exception
from .taxonomy import DEFAULT_TAXONOMY, OTHER_SLUG, TaxonomyRegistry

# ---- Tunables (private) ------------------------------------------------------

_BACKOFF_SCHEDULE_SEC: tuple[float, ...] = (0.5, 2.0)
_JITTER_PCT: float = 0.20

FALLBACK_CONFIDENCE: float = 0.5
FALLBACK_RATIONALE = "LLM categorization failed, using fallback"
PARSE_FAILURE_RATIONALE = "LLM response could not be parsed, using fallback"

_logger = get_logger("pnl_categorizer.pass2_llm")


# ---- Response parsing --------------------------------------------------------


class LlmPayload(BaseModel):
    """The structured decision the model is asked to return."""

    model_config = ConfigDict(extra="ignore")

    category_slug: str
    confidence: float = FALLBACK_CONFIDENCE
    rationale: str = ""

    @field_validator("category_slug", mode="before")
    @classmethod
    def _slug_text(cls, v: Any) -> Any:
        if not isinstance(v, str) or not v.strip():
            raise ValueError("category_slug must be a non-empty string")
        return v.strip()

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v: Any) -> Any:
        if v is None:
            return FALLBACK_CONFIDENCE
        if isinstance(v, bool):
            raise ValueError("confidence must be a number")
        try:
            f = float(v)
        except (TypeError, ValueError) as e:
            raise ValueError(f"confidence is not numeric: {v!r}") from e
        if not math.isfinite(f):
            raise ValueError("confidence must be finite")
        return max(0.0, min(1.0, f))

    @field_validator("rationale", mode="before")
    @classmethod
    def _rationale_text(cls, v: Any) -> Any:
        return "" if v is None else str(v)


@dataclass(frozen=True, slots=True)
class ParseSuccess:
    payload: LlmPayload


@dataclass(frozen=True, slots=True)
class ParseFailure:
    reason: str


type ParseOutcome = ParseSuccess | ParseFailure

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def _first_brace_span(text: str) -> str | None:
    """Return the first balanced ``{...}`` span, honoring JSON string quoting."""

    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            ch = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start : i + 1]
        start = text.find("{", start + 1)
    return None


def _json_candidates(text: str) -> Iterator[str]:
    yield text
    fenced = _FENCE_RE.search(text)
    if fenced:
        yield fenced.group(1).strip()
    span = _first_brace_span(text)
    if span:
        yield span


def parse_llm_response(text: str | None) -> ParseOutcome:
    """Extract ``{category_slug, confidence, rationale}`` from model text.

    Tries, in order: the whole text as JSON, the first fenced code block,
    then the first balanced brace span. The first candidate that decodes to
    an object and validates wins.
    """

    if not text or not text.strip():
        return ParseFailure("empty response")

    last_reason = "no JSON object found"
    for candidate in _json_candidates(text.strip()):
        try:
            decoded = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if not isinstance(decoded, dict):
            last_reason = f"expected a JSON object, got {type(decoded).__name__}"
            continue
        try:
            return ParseSuccess(LlmPayload.model_validate(decoded))
        except ValidationError as e:
            last_reason = f"invalid decision object ({e.error_count()} errors)"
    return ParseFailure(last_reason)


def extract_response_text(resp: Any) -> str | None:
    """Locate the text output of a Responses API result.

    Prefers ``resp.output_text`` and falls back to
    ``resp.output[0].content[0].text`` (string or object with ``value``).
    """

    text = getattr(resp, "output_text", None)
    if isinstance(text, str) and text:
        return text
    try:
        first = resp.output[0] if getattr(resp, "output", None) else None
        content = getattr(first, "content", None)
        if content:
            txt_obj = getattr(content[0], "text", None)
            if isinstance(txt_obj, str):
                return txt_obj
            maybe_val = getattr(txt_obj, "value", None)
            if isinstance(maybe_val, str):
                return maybe_val
    except Exception:  # noqa: BLE001 - tolerate SDK shape differences
        return None
    return None


# ---- Transport helpers -------------------------------------------------------


def _status_code(exc: BaseException) -> int | None:
    sc = getattr(exc, "status_code", None)
    return sc if isinstance(sc, int) else None


def _is_retryable(exc: BaseException) -> bool:
    """Only HTTP 429 and 5xx are retried; everything else falls back at once."""

    sc = _status_code(exc)
    return sc is not None and (sc == 429 or 500 <= sc < 600)


def _retry_after_ms(exc: BaseException) -> int | None:
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None)
    if headers is None:
        return None
    try:
        raw_ms = headers.get("retry-after-ms")
        if raw_ms is not None:
            return max(0, int(float(raw_ms)))
        raw = headers.get("retry-after")
        if raw is not None:
            return max(0, int(float(raw) * 1000))
    except (TypeError, ValueError):
        return None
    return None


def _sleep_backoff(attempt_no: int) -> None:
    base = _BACKOFF_SCHEDULE_SEC[min(attempt_no - 1, len(_BACKOFF_SCHEDULE_SEC) - 1)]
    jitter = base * _JITTER_PCT
    time.sleep(max(0.0, base + random.uniform(-jitter, jitter)))


# ---- Classifier --------------------------------------------------------------


class LlmClassifier:
    """Score one transaction at a time with the configured model.

    One client is created lazily and reused. Instances are safe to share
    across threads (the OpenAI client is).
    """

    def __init__(
        self,
        config: CategorizerConfig | None = None,
        *,
        taxonomy: TaxonomyRegistry = DEFAULT_TAXONOMY,
        reporter: ErrorReporter | None = None,
    ) -> None:
        self._config = config or CategorizerConfig()
        self._taxonomy = taxonomy
        self._reporter = reporter
        self._client: OpenAI | None = None
        self._instructions = prompting.build_system_instructions()
        self._text_cfg = {"format": prompting.build_response_format(taxonomy)}

    @property
    def model(self) -> str:
        return self._config.llm_model

    def _get_client(self) -> OpenAI:
        if self._client is None:
            self._client = OpenAI()
        return self._client

    def _fallback(
        self,
        note: str,
        *,
        rate_limited: bool = False,
        retry_after_ms: int | None = None,
    ) -> CategorizationResult:
        return CategorizationResult(
            category_id=self._taxonomy.map_slug_to_id(OTHER_SLUG),
            confidence=FALLBACK_CONFIDENCE,
            rationale=(note,),
            used_fallback=True,
            rate_limited=rate_limited,
            retry_after_ms=retry_after_ms,
        )

    def _call(self, user_content: str) -> Any:
        cfg = self._config
        return self._get_client().responses.create(
            model=cfg.llm_model,
            instructions=self._instructions,
            input=user_content,
            text=self._text_cfg,
            temperature=cfg.llm_temperature,
            max_output_tokens=cfg.llm_max_tokens,
        )

    def categorize(self, tx: NormalizedTransaction) -> CategorizationResult:
        """Return the model's decision for ``tx``, or the safe fallback."""

        cfg = self._config
        t0 = time.perf_counter()
        attempt = 1
        while True:
            try:
                user_content = prompting.build_user_content(
                    tx, self._taxonomy, industry=cfg.industry
                )
                resp = self._call(user_content)
                break
            except Exception as e:  # noqa: BLE001 - converted to fallback below
                if attempt < cfg.llm_max_attempts and _is_retryable(e):
                    _logger.warning(
                        "pass2:retry tx_id=%s attempt=%d status=%s error=%s",
                        tx.id,
                        attempt,
                        _status_code(e),
                        e.__class__.__name__,
                    )
                    _sleep_backoff(attempt)
                    attempt += 1
                    continue
                latency_ms = int((time.perf_counter() - t0) * 1000)
                rate_limited = _status_code(e) == 429
                _logger.error(
                    "pass2:failed tx_id=%s org_id=%s attempts=%d latency_ms=%d error=%s",
                    tx.id,
                    tx.org_id,
                    attempt,
                    latency_ms,
                    e.__class__.__name__,
                )
                report_exception(
                    self._reporter, e, tx_id=tx.id, org_id=tx.org_id, stage="pass2"
                )
                report_event(
                    self._reporter,
                    "categorization_llm_error",
                    tx_id=tx.id,
                    org_id=tx.org_id,
                    model=cfg.llm_model,
                    error=e.__class__.__name__,
                    latency_ms=latency_ms,
                )
                return self._fallback(
                    FALLBACK_RATIONALE,
                    rate_limited=rate_limited,
                    retry_after_ms=_retry_after_ms(e) if rate_limited else None,
                )

        latency_ms = int((time.perf_counter() - t0) * 1000)
        outcome = parse_llm_response(extract_response_text(resp))
        if isinstance(outcome, ParseFailure):
            _logger.warning(
                "pass2:parse_failed tx_id=%s org_id=%s reason=%s",
                tx.id,
                tx.org_id,
                outcome.reason,
            )
            report_event(
                self._reporter,
                "categorization_llm_error",
                tx_id=tx.id,
                org_id=tx.org_id,
                model=cfg.llm_model,
                error="parse_failure",
                latency_ms=latency_ms,
            )
            return self._fallback(f"{PARSE_FAILURE_RATIONALE}: {outcome.reason}")

        payload = outcome.payload
        category_id = self._taxonomy.map_slug_to_id(payload.category_slug)
        rationale = [f"LLM: {payload.rationale or 'no rationale given'}"]
        if self._taxonomy.slug_for(category_id) != payload.category_slug:
            rationale.append(
                f"Slug '{payload.category_slug}' resolved to "
                f"{self._taxonomy.slug_for(category_id)}"
            )
        rationale.append(f"Model: {cfg.llm_model} ({latency_ms}ms)")

        _logger.info(
            "pass2:done tx_id=%s slug=%s confidence=%.3f latency_ms=%d",
            tx.id,
            payload.category_slug,
            payload.confidence,
            latency_ms,
        )
        report_event(
            self._reporter,
            "categorization_llm_success",
            tx_id=tx.id,
            org_id=tx.org_id,
            model=cfg.llm_model,
            confidence=payload.confidence,
            latency_ms=latency_ms,
        )
        return CategorizationResult(
            category_id=category_id,
            confidence=payload.confidence,
            rationale=tuple(rationale),
        )


__all__ = [
    "FALLBACK_CONFIDENCE",
    "FALLBACK_RATIONALE",
    "LlmClassifier",
    "LlmPayload",
    "PARSE_FAILURE_RATIONALE",
    "ParseFailure",
    "ParseOutcome",
    "ParseSuccess",
    "extract_response_text",
    "parse_llm_response",
]
