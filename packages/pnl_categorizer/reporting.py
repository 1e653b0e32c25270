"""Fire-and-forget error and analytics reporting.

The engine reports exceptions and analytics events through an
``ErrorReporter``. Hosts can plug in their own implementation (an APM client,
an event bus); the default writes structured log lines. Reporting never
affects categorization: ``report_exception`` and ``report_event`` swallow
anything the reporter raises.
"""

from __future__ import annotations

from typing import Any, Protocol

from .logging_setup import get_logger

_logger = get_logger("pnl_categorizer.reporting")


class ErrorReporter(Protocol):
    def capture_exception(self, exc: BaseException, **context: Any) -> None: ...

    def capture_event(self, name: str, **properties: Any) -> None: ...


def _kv(values: dict[str, Any]) -> str:
    return " ".join(f"{k}={v}" for k, v in sorted(values.items()))


class LoggingReporter:
    """Default reporter: exceptions at WARNING, events at INFO."""

    def capture_exception(self, exc: BaseException, **context: Any) -> None:
        _logger.warning("report:exception error=%s %s", exc.__class__.__name__, _kv(context))

    def capture_event(self, name: str, **properties: Any) -> None:
        _logger.info("report:event name=%s %s", name, _kv(properties))


def report_exception(reporter: ErrorReporter | None, exc: BaseException, **context: Any) -> None:
    if reporter is None:
        return
    try:
        reporter.capture_exception(exc, **context)
    except Exception as e:  # noqa: BLE001 - reporting is best effort
        _logger.debug("report:failed kind=exception error=%s", e.__class__.__name__)


def report_event(reporter: ErrorReporter | None, name: str, **properties: Any) -> None:
    if reporter is None:
        return
    try:
        reporter.capture_event(name, **properties)
    except Exception as e:  # noqa: BLE001 - reporting is best effort
        _logger.debug("report:failed kind=event name=%s error=%s", name, e.__class__.__name__)


__all__ = ["ErrorReporter", "LoggingReporter", "report_event", "report_exception"]
