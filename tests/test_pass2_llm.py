from datetime import date
from typing import Any

import pytest

import pnl_categorizer.pass2_llm as pass2_mod
from pnl_categorizer.config import CategorizerConfig
from pnl_categorizer.models import NormalizedTransaction
from pnl_categorizer.pass2_llm import (
    FALLBACK_RATIONALE,
    PARSE_FAILURE_RATIONALE,
    LlmClassifier,
    ParseFailure,
    ParseSuccess,
    parse_llm_response,
)
from pnl_categorizer.taxonomy import DEFAULT_TAXONOMY
from tests.helpers.openai_stub import APIStatusErrorStub, OpenAIStub, decision

OTHER_ID = DEFAULT_TAXONOMY.other_id


def _tx(**kw) -> NormalizedTransaction:
    base = {
        "id": "t1",
        "org_id": "org-1",
        "date": date(2025, 3, 2),
        "amount_cents": -4200,
        "description": "META PLATFORMS ADS",
        "merchant_name": "Meta",
    }
    base.update(kw)
    return NormalizedTransaction(**base)


class _RecordingReporter:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []
        self.exceptions: list[BaseException] = []

    def capture_exception(self, exc: BaseException, **context: Any) -> None:
        self.exceptions.append(exc)

    def capture_event(self, name: str, **properties: Any) -> None:
        self.events.append((name, properties))


def _classifier(
    monkeypatch: pytest.MonkeyPatch,
    script: list[Any],
    *,
    reporter: _RecordingReporter | None = None,
    **config: Any,
) -> tuple[LlmClassifier, OpenAIStub]:
    stub = OpenAIStub(script)
    monkeypatch.setattr(pass2_mod, "OpenAI", lambda: stub)
    monkeypatch.setattr(pass2_mod, "_sleep_backoff", lambda attempt_no: None)
    return LlmClassifier(CategorizerConfig(**config), reporter=reporter), stub


# ---- Response parsing --------------------------------------------------------


def test_parse_plain_json():
    out = parse_llm_response('{"category_slug": "marketing", "confidence": 0.9, "rationale": "ad"}')
    assert isinstance(out, ParseSuccess)
    assert out.payload.category_slug == "marketing"
    assert out.payload.confidence == 0.9


def test_parse_fenced_json():
    text = 'Here you go:\n```json\n{"category_slug": "ads_meta", "confidence": 0.8}\n```'
    out = parse_llm_response(text)
    assert isinstance(out, ParseSuccess)
    assert out.payload.category_slug == "ads_meta"


def test_parse_json_embedded_in_prose():
    text = 'Sure! {"category_slug": "travel", "confidence": 0.7, "rationale": "a {b} c"} Done.'
    out = parse_llm_response(text)
    assert isinstance(out, ParseSuccess)
    assert out.payload.rationale == "a {b} c"


def test_parse_defaults_and_clamps_confidence():
    missing = parse_llm_response('{"category_slug": "travel"}')
    high = parse_llm_response('{"category_slug": "travel", "confidence": 1.7}')
    assert isinstance(missing, ParseSuccess) and missing.payload.confidence == 0.5
    assert isinstance(high, ParseSuccess) and high.payload.confidence == 1.0


@pytest.mark.parametrize(
    "text",
    [
        None,
        "",
        "I think this is marketing.",
        "[1, 2, 3]",
        '{"confidence": 0.9}',
        '{"category_slug": "", "confidence": 0.9}',
        '{"category_slug": "travel", "confidence": NaN}',
        '{"category_slug": "travel", "confidence": "high"}',
        '{"category_slug": "travel"',
    ],
)
def test_parse_failures_never_raise(text):
    assert isinstance(parse_llm_response(text), ParseFailure)


# ---- Classifier --------------------------------------------------------------


def test_classifier_success(monkeypatch):
    reporter = _RecordingReporter()
    script = [decision("ads_meta", 0.92, "meta ads")]
    clf, stub = _classifier(monkeypatch, script, reporter=reporter)

    res = clf.categorize(_tx())

    assert res.category_id == DEFAULT_TAXONOMY.map_slug_to_id("ads_meta")
    assert res.confidence == pytest.approx(0.92)
    assert res.used_fallback is False
    assert res.rationale[0] == "LLM: meta ads"
    assert res.rationale[-1].startswith("Model: gpt-4o-mini")

    call = stub.calls[0]
    assert call["model"] == "gpt-4o-mini"
    assert call["max_output_tokens"] == 200
    assert call["text"]["format"]["strict"] is True
    assert "Merchant: Meta" in call["input"]
    assert [name for name, _ in reporter.events] == ["categorization_llm_success"]


def test_unknown_slug_resolves_to_fallback_category(monkeypatch):
    clf, _ = _classifier(monkeypatch, [decision("crypto_mining", 0.9)])
    res = clf.categorize(_tx())
    assert res.category_id == OTHER_ID
    assert res.used_fallback is False
    assert any("resolved to other_ops" in r for r in res.rationale)


def test_unparseable_output_falls_back(monkeypatch):
    reporter = _RecordingReporter()
    clf, _ = _classifier(monkeypatch, ["no json here"], reporter=reporter)
    res = clf.categorize(_tx())
    assert res.category_id == OTHER_ID
    assert res.confidence == 0.5
    assert res.used_fallback is True
    assert res.rationale[0].startswith(PARSE_FAILURE_RATIONALE)
    assert reporter.events[0][0] == "categorization_llm_error"


def test_rate_limit_falls_back_and_flags(monkeypatch):
    err = APIStatusErrorStub(429, {"retry-after-ms": "1500"})
    clf, stub = _classifier(monkeypatch, [err], llm_max_attempts=1)
    res = clf.categorize(_tx())
    assert len(stub.calls) == 1
    assert res.category_id == OTHER_ID
    assert res.confidence == 0.5
    assert res.rationale == (FALLBACK_RATIONALE,)
    assert res.used_fallback is True
    assert res.rate_limited is True
    assert res.retry_after_ms == 1500


def test_server_errors_are_retried(monkeypatch):
    clf, stub = _classifier(monkeypatch, [APIStatusErrorStub(503), decision("travel", 0.8)])
    res = clf.categorize(_tx())
    assert len(stub.calls) == 2
    assert res.category_id == DEFAULT_TAXONOMY.map_slug_to_id("travel")
    assert res.used_fallback is False


def test_client_errors_are_not_retried(monkeypatch):
    reporter = _RecordingReporter()
    clf, stub = _classifier(monkeypatch, [APIStatusErrorStub(400)], reporter=reporter)
    res = clf.categorize(_tx())
    assert len(stub.calls) == 1
    assert res.used_fallback is True
    assert res.rate_limited is False
    assert len(reporter.exceptions) == 1


def test_retries_stop_at_max_attempts(monkeypatch):
    clf, stub = _classifier(monkeypatch, [APIStatusErrorStub(500)], llm_max_attempts=3)
    res = clf.categorize(_tx())
    assert len(stub.calls) == 3
    assert res.used_fallback is True


def test_transport_exception_without_status_falls_back(monkeypatch):
    clf, _ = _classifier(monkeypatch, [ConnectionError("reset")])
    res = clf.categorize(_tx())
    assert res.category_id == OTHER_ID
    assert res.used_fallback is True
