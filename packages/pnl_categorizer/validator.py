"""Offline static analysis of vendor rules.

Findings:

- conflicts: two rules of one organization that can match the same
  transaction but map to different categories. Severity follows how much the
  patterns overlap: ``critical`` for identical normalized patterns, ``high``
  when one pattern subsumes the other, ``medium`` for related vendors (one
  normalized name contains the other).
- regex issues: description patterns that fail to compile, match the empty
  string, or nest quantifiers (catastrophic backtracking); and rules whose
  vendor normalizes to the empty string.
- dead rules: a rule whose every possible match is also matched by a rule
  that outranks it (higher weight, or equal weight and earlier position).

``ValidationReport.exit_code`` is 1 when a critical conflict or any regex
issue exists, else 0.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterable, Sequence
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from pydantic import TypeAdapter, ValidationError

from .errors import RuleValidationError
from .logging_setup import get_logger
from .models import VendorRule
from .normalizers import normalize_vendor
from .pass1 import DESCRIPTION_PATTERNS

_logger = get_logger("pnl_categorizer.validator")

JSON_REPORT_NAME = "rule-validation-report.json"
MARKDOWN_REPORT_NAME = "RULE_CONFLICTS.md"


class Severity(StrEnum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"


@dataclass(frozen=True, slots=True)
class Conflict:
    org_id: str
    severity: Severity
    rule_ids: tuple[str, str]
    category_ids: tuple[str, str]
    detail: str


@dataclass(frozen=True, slots=True)
class RegexIssue:
    source: str
    pattern: str
    problem: str


@dataclass(frozen=True, slots=True)
class DeadRule:
    org_id: str
    rule_id: str
    shadowed_by: str
    detail: str


@dataclass(slots=True)
class ValidationReport:
    total_rules: int
    conflicts: list[Conflict] = field(default_factory=list)
    regex_issues: list[RegexIssue] = field(default_factory=list)
    dead_rules: list[DeadRule] = field(default_factory=list)
    generated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def count(self, severity: Severity) -> int:
        return sum(1 for c in self.conflicts if c.severity is severity)

    @property
    def has_critical(self) -> bool:
        return self.count(Severity.CRITICAL) > 0 or bool(self.regex_issues)

    @property
    def exit_code(self) -> int:
        return 1 if self.has_critical else 0

    def summary(self) -> dict[str, int]:
        return {
            "total_rules": self.total_rules,
            "conflict_count": len(self.conflicts),
            "critical_conflicts": self.count(Severity.CRITICAL),
            "high_conflicts": self.count(Severity.HIGH),
            "medium_conflicts": self.count(Severity.MEDIUM),
            "regex_issues": len(self.regex_issues),
            "dead_rules": len(self.dead_rules),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "generated_at": self.generated_at.isoformat(),
            "summary": self.summary(),
            "conflicts": [asdict(c) for c in self.conflicts],
            "regex_issues": [asdict(r) for r in self.regex_issues],
            "dead_rules": [asdict(d) for d in self.dead_rules],
        }


# ---- Pattern algebra ---------------------------------------------------------


@dataclass(frozen=True, slots=True)
class _Key:
    """Normalized constraint set of a rule pattern (``None`` = unconstrained)."""

    vendor: str | None
    mcc: str | None
    tokens: frozenset[str]

    def fields(self) -> int:
        return (self.vendor is not None) + (self.mcc is not None) + len(self.tokens)


def _key(rule: VendorRule) -> _Key:
    p = rule.pattern
    vendor = normalize_vendor(p.vendor) if p.vendor is not None else None
    return _Key(vendor=vendor, mcc=p.mcc, tokens=frozenset(p.description_tokens))


def _implies(a: _Key, b: _Key) -> bool:
    """Every transaction matching ``a`` also matches ``b``."""

    if b.vendor is not None and a.vendor != b.vendor:
        return False
    if b.mcc is not None and a.mcc != b.mcc:
        return False
    return b.tokens <= a.tokens


def _can_overlap(a: _Key, b: _Key) -> bool:
    if a.mcc is not None and b.mcc is not None and a.mcc != b.mcc:
        return False
    if a.vendor is not None and b.vendor is not None:
        return a.vendor == b.vendor or a.vendor in b.vendor or b.vendor in a.vendor
    return True


def _matchable(k: _Key) -> bool:
    if k.vendor == "":
        return False
    return k.fields() > 0


def _describe(k: _Key) -> str:
    parts = []
    if k.vendor is not None:
        parts.append(f"vendor='{k.vendor}'")
    if k.mcc is not None:
        parts.append(f"mcc={k.mcc}")
    if k.tokens:
        parts.append(f"tokens={sorted(k.tokens)}")
    return ", ".join(parts) or "<empty>"


# ---- Checks ------------------------------------------------------------------

# A quantified group whose body itself ends in a quantifier: (a+)+, (\w*)*, (x+){2,}
_NESTED_QUANTIFIER_RE = re.compile(r"\((?:[^()\\]|\\.)*[+*}]\)(?:[+*]|\{\d+,\d*\})")
# A quantified alternation with an empty branch: (a|)*, (|b)+
_EMPTY_ALTERNATIVE_RE = re.compile(r"\((?:\?:)?(?:\|[^()]*|[^()]*\|)\)(?:[+*]|\{\d+,\d*\})")


def lint_regex(source: str, pattern: str) -> list[RegexIssue]:
    """Return problems with one regex (compile error, empty match, backtracking)."""

    try:
        compiled = re.compile(pattern)
    except re.error as e:
        return [RegexIssue(source, pattern, f"does not compile: {e}")]
    issues: list[RegexIssue] = []
    if compiled.fullmatch("") is not None:
        issues.append(RegexIssue(source, pattern, "matches the empty string"))
    if _NESTED_QUANTIFIER_RE.search(pattern):
        issues.append(RegexIssue(source, pattern, "nested quantifier (catastrophic backtracking)"))
    elif _EMPTY_ALTERNATIVE_RE.search(pattern):
        issues.append(RegexIssue(source, pattern, "quantified empty alternative"))
    return issues


def _conflicts_for_org(org_id: str, rules: Sequence[VendorRule]) -> list[Conflict]:
    keys = [_key(r) for r in rules]
    out: list[Conflict] = []
    for i, a in enumerate(rules):
        for j in range(i + 1, len(rules)):
            b = rules[j]
            if a.category_id == b.category_id:
                continue
            ka, kb = keys[i], keys[j]
            if not (_matchable(ka) and _matchable(kb)) or not _can_overlap(ka, kb):
                continue
            if ka == kb:
                severity = Severity.CRITICAL
            elif _implies(ka, kb) or _implies(kb, ka):
                severity = Severity.HIGH
            elif ka.vendor is not None and kb.vendor is not None:
                severity = Severity.MEDIUM
            else:
                continue
            out.append(
                Conflict(
                    org_id=org_id,
                    severity=severity,
                    rule_ids=(a.id, b.id),
                    category_ids=(a.category_id, b.category_id),
                    detail=f"{_describe(ka)} vs {_describe(kb)}",
                )
            )
    return out


def _outranks(winner: VendorRule, w_pos: int, loser: VendorRule, l_pos: int) -> bool:
    if winner.weight != loser.weight:
        return winner.weight > loser.weight
    return w_pos < l_pos


def _dead_rules_for_org(org_id: str, rules: Sequence[VendorRule]) -> list[DeadRule]:
    keys = [_key(r) for r in rules]
    out: list[DeadRule] = []
    for i, rule in enumerate(rules):
        if not _matchable(keys[i]):
            continue
        for j, other in enumerate(rules):
            if i == j or not _matchable(keys[j]):
                continue
            if _implies(keys[i], keys[j]) and _outranks(other, j, rule, i):
                out.append(
                    DeadRule(
                        org_id=org_id,
                        rule_id=rule.id,
                        shadowed_by=other.id,
                        detail=(
                            f"{_describe(keys[i])} (weight {rule.weight}) is always overridden "
                            f"by {_describe(keys[j])} (weight {other.weight})"
                        ),
                    )
                )
                break
    return out


def validate_rules(
    rules: Iterable[VendorRule],
    *,
    description_patterns: Iterable[tuple[str, str]] | None = None,
) -> ValidationReport:
    """Analyze ``rules`` (any number of organizations) and built-in patterns.

    Parameters
    ----------
    rules:
        Vendor rules; analysis is per organization, order is precedence.
    description_patterns:
        ``(label, regex)`` pairs to lint. Defaults to Pass-1's description
        patterns.
    """

    by_org: dict[str, list[VendorRule]] = {}
    total = 0
    for r in rules:
        by_org.setdefault(r.org_id, []).append(r)
        total += 1

    report = ValidationReport(total_rules=total)

    if description_patterns is None:
        description_patterns = [
            (f"description_pattern:{dp.slug}", dp.pattern.pattern) for dp in DESCRIPTION_PATTERNS
        ]
    for label, regex in description_patterns:
        report.regex_issues.extend(lint_regex(label, regex))

    for org_id, org_rules in by_org.items():
        for r in org_rules:
            if r.pattern.vendor is not None and normalize_vendor(r.pattern.vendor) == "":
                report.regex_issues.append(
                    RegexIssue(
                        f"rule:{r.id}",
                        r.pattern.vendor,
                        "vendor normalizes to the empty string",
                    )
                )
        report.conflicts.extend(_conflicts_for_org(org_id, org_rules))
        report.dead_rules.extend(_dead_rules_for_org(org_id, org_rules))

    report.conflicts.sort(key=lambda c: list(Severity).index(c.severity))
    _logger.info(
        "validator:done %s",
        " ".join(f"{k}={v}" for k, v in report.summary().items()),
    )
    return report


# ---- Input / output ----------------------------------------------------------

_RULES_ADAPTER = TypeAdapter(list[VendorRule])


def load_rules_file(path: Path) -> list[VendorRule]:
    """Read a JSON array of rules (``orgId``/``categoryId`` or snake_case keys)."""

    try:
        raw = path.read_text(encoding="utf-8")
        return _RULES_ADAPTER.validate_json(raw)
    except OSError as e:
        raise RuleValidationError(f"cannot read rules file {path}: {e}") from e
    except ValidationError as e:
        raise RuleValidationError(f"invalid rules file {path}: {e}") from e


def render_markdown(report: ValidationReport) -> str:
    s = report.summary()
    lines = [
        "# Rule Conflicts",
        "",
        f"Generated: {report.generated_at.isoformat()}",
        "",
        "| Metric | Count |",
        "| --- | --- |",
    ]
    lines.extend(f"| {k} | {v} |" for k, v in s.items())
    for severity in Severity:
        items = [c for c in report.conflicts if c.severity is severity]
        if not items:
            continue
        lines.extend(["", f"## {severity.value.title()} conflicts", ""])
        for c in items:
            lines.append(
                f"- org `{c.org_id}`: rules `{c.rule_ids[0]}` -> `{c.category_ids[0]}` and "
                f"`{c.rule_ids[1]}` -> `{c.category_ids[1]}` ({c.detail})"
            )
    if report.regex_issues:
        lines.extend(["", "## Regex issues", ""])
        lines.extend(f"- `{r.source}`: `{r.pattern}` {r.problem}" for r in report.regex_issues)
    if report.dead_rules:
        lines.extend(["", "## Dead rules", ""])
        lines.extend(
            f"- org `{d.org_id}`: rule `{d.rule_id}` shadowed by `{d.shadowed_by}`: {d.detail}"
            for d in report.dead_rules
        )
    if not (report.conflicts or report.regex_issues or report.dead_rules):
        lines.extend(["", "No issues found."])
    return "\n".join(lines) + "\n"


def write_reports(report: ValidationReport, output_dir: Path) -> tuple[Path, Path]:
    """Write the JSON and Markdown reports; return their paths."""

    output_dir.mkdir(parents=True, exist_ok=True)
    json_path = output_dir / JSON_REPORT_NAME
    md_path = output_dir / MARKDOWN_REPORT_NAME
    json_path.write_text(json.dumps(report.to_dict(), indent=2) + "\n", encoding="utf-8")
    md_path.write_text(render_markdown(report), encoding="utf-8")
    return json_path, md_path


__all__ = [
    "Conflict",
    "DeadRule",
    "JSON_REPORT_NAME",
    "MARKDOWN_REPORT_NAME",
    "RegexIssue",
    "Severity",
    "ValidationReport",
    "lint_regex",
    "load_rules_file",
    "render_markdown",
    "validate_rules",
    "write_reports",
]
