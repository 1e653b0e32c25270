# ruff: noqa: I001
"""CLI for the ``pnl_categorizer`` package.

Typer console interface over the engine. The root callback loads a local
``.env`` with ``python-dotenv`` (never overriding variables already set) and
configures logging; commands then build the store, the LLM classifier and
the orchestrator from ``CategorizerConfig.from_env()``.

Exit codes: ``validate-rules`` returns 0 when clean and 1 when critical
conflicts or regex issues were found; every command returns 2 on input or
configuration errors.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import typer
from dotenv import load_dotenv
from sqlalchemy.exc import SQLAlchemyError
from typer.models import OptionInfo

from .config import CategorizerConfig
from .errors import ConfigurationError, RuleValidationError
from .logging_setup import configure_logging, get_logger

_logger = get_logger("pnl_categorizer.cli")

DEFAULT_REPORT_DIR = Path("reports")


# ---- Small module-level helpers used by CLI commands -------------------------


def _echo_json(payload: dict[str, Any]) -> None:
    typer.echo(json.dumps(payload, indent=2, default=str))


def _load_config() -> CategorizerConfig:
    try:
        return CategorizerConfig.from_env()
    except ConfigurationError as e:
        typer.echo(f"Error: invalid configuration: {e}", err=True)
        raise typer.Exit(2) from e


def _build_llm(config: CategorizerConfig):
    """Return a Pass-2 classifier, or ``None`` when disabled or unconfigured."""

    from .pass2_llm import LlmClassifier
    from .reporting import LoggingReporter

    if not config.llm_enabled:
        _logger.info("cli:llm_disabled reason=config")
        return None
    if not os.getenv("OPENAI_API_KEY"):
        _logger.warning("cli:llm_disabled reason=missing_openai_api_key")
        typer.echo("Warning: OPENAI_API_KEY is not set; running Pass-1 only.", err=True)
        return None
    return LlmClassifier(config, reporter=LoggingReporter())


def _build_orchestrator(database_url: str | None):
    from .orchestrator import BatchOrchestrator
    from .persistence import SqlCategorizationStore
    from .reporting import LoggingReporter

    config = _load_config()
    store = SqlCategorizationStore(database_url)
    return BatchOrchestrator(
        store, config=config, llm=_build_llm(config), reporter=LoggingReporter()
    )


# Module-level option object to satisfy ruff B008 (no calls in parameter
# defaults).
RULES_FILE_OPTION: OptionInfo = typer.Option(
    None,
    "--rules-file",
    help="JSON array of vendor rules to validate instead of reading the database.",
    dir_okay=False,
    file_okay=True,
)


# ---- Typer-based console interface -------------------------------------------


app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help=(
        "Hybrid transaction categorization: deterministic rules first, then an LLM "
        "(OpenAI Responses API) for low-confidence transactions. Loads .env first."
    ),
)


@app.command("validate-rules")
def validate_rules_cmd(
    rules_file: Path | None = RULES_FILE_OPTION,
    *,
    output_dir: Path = typer.Option(
        DEFAULT_REPORT_DIR,
        help="Directory for rule-validation-report.json and RULE_CONFLICTS.md.",
        file_okay=False,
    ),
    org_id: str | None = typer.Option(None, help="Validate one organization only."),
    database_url: str | None = typer.Option(
        None, help="Override DATABASE_URL (falls back to env var)."
    ),
) -> None:
    """Statically check vendor rules for conflicts, unsafe regexes and dead rules."""

    from .validator import load_rules_file, validate_rules, write_reports

    try:
        if rules_file is not None:
            rules = load_rules_file(rules_file)
            if org_id is not None:
                rules = [r for r in rules if r.org_id == org_id]
        else:
            from .persistence import SqlCategorizationStore

            rules = SqlCategorizationStore(database_url).list_all_vendor_rules(org_id)
    except RuleValidationError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(2) from e
    except RuntimeError as e:
        # db.client raises RuntimeError when DATABASE_URL is missing
        typer.echo(f"Error: cannot load rules from the database: {e}", err=True)
        raise typer.Exit(2) from e
    except SQLAlchemyError as e:
        typer.echo(
            f"Error: cannot load rules from the database: {e.__class__.__name__}: {e}", err=True
        )
        raise typer.Exit(2) from e

    report = validate_rules(rules)
    json_path, md_path = write_reports(report, output_dir)

    summary = report.summary()
    typer.echo("Rule validation summary")
    for key, value in summary.items():
        typer.echo(f"  {key}: {value}")
    typer.echo(f"Wrote {json_path} and {md_path}")
    if report.exit_code:
        typer.echo("Critical rule issues found.", err=True)
    raise typer.Exit(report.exit_code)


@app.command("categorize")
def categorize_cmd(
    *,
    org_id: str | None = typer.Option(None, help="Only process this organization."),
    max_batches: int = typer.Option(1, min=1, help="Page budget for this call."),
    database_url: str | None = typer.Option(
        None, help="Override DATABASE_URL (falls back to env var)."
    ),
) -> None:
    """Run one batch-orchestrator call over the pending queue."""

    orchestrator = _build_orchestrator(database_url)
    result = orchestrator.run_batch(org_id=org_id, max_batches=max_batches)
    _echo_json(result.to_dict())


@app.command("worker")
def worker_cmd(
    *,
    database_url: str | None = typer.Option(
        None, help="Override DATABASE_URL (falls back to env var)."
    ),
) -> None:
    """Drain organizations with backlog, bounded by the per-org call ceiling."""

    orchestrator = _build_orchestrator(database_url)
    result = orchestrator.run_worker()
    _echo_json(result.to_dict())
    if result.error:
        raise typer.Exit(1)


@app.command("recategorize")
def recategorize_cmd(
    *,
    org_id: str = typer.Option(..., help="Organization to recategorize."),
    days_back: int = typer.Option(180, min=1, help="History window in days."),
    batch_size: int = typer.Option(50, min=1, max=100, help="Transactions per batch."),
    database_url: str | None = typer.Option(
        None, help="Override DATABASE_URL (falls back to env var)."
    ),
) -> None:
    """Re-run categorization over recent history; changes are flagged for review."""

    from .persistence import SqlCategorizationStore
    from .recategorize import recategorize_org
    from .reporting import LoggingReporter

    config = _load_config()
    result = recategorize_org(
        SqlCategorizationStore(database_url),
        org_id,
        days_back=days_back,
        batch_size=batch_size,
        config=config,
        llm=_build_llm(config),
        reporter=LoggingReporter(),
    )
    _echo_json(result.to_dict())


@app.command("seed-taxonomy")
def seed_taxonomy_cmd(
    *,
    database_url: str | None = typer.Option(
        None, help="Override DATABASE_URL (falls back to env var)."
    ),
) -> None:
    """Write the static category taxonomy into the ``categories`` table."""

    from db.client import session_scope

    from .persistence import seed_taxonomy

    with session_scope(database_url=database_url) as session:
        count = seed_taxonomy(session)
    typer.echo(f"Seeded {count} categories")


@app.callback(invoke_without_command=True)
def _root(ctx: typer.Context) -> None:
    """Root command.

    Loads ``.env`` from the current working directory (without overriding any
    already-set environment variables) and configures logging for every
    subcommand.
    """

    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)
    configure_logging()

    if ctx.invoked_subcommand is None:
        typer.echo("No subcommand provided. Use --help to see available commands.")
        raise typer.Exit(1)


def main() -> None:  # pragma: no cover - console script entry
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
