import json
from pathlib import Path

import pytest

from pnl_categorizer.errors import RuleValidationError
from pnl_categorizer.models import VendorRule
from pnl_categorizer.validator import (
    JSON_REPORT_NAME,
    MARKDOWN_REPORT_NAME,
    Severity,
    lint_regex,
    load_rules_file,
    validate_rules,
    write_reports,
)


def _rule(rule_id: str, category: str, *, org: str = "org-1", weight: int = 1, **pattern):
    return VendorRule(id=rule_id, org_id=org, pattern=pattern, category_id=category, weight=weight)


# ---- Conflicts ---------------------------------------------------------------


def test_identical_normalized_patterns_are_critical():
    report = validate_rules(
        [_rule("r1", "cat-a", vendor="Acme Inc"), _rule("r2", "cat-b", vendor="ACME")]
    )

    [conflict] = report.conflicts
    assert conflict.severity is Severity.CRITICAL
    assert conflict.rule_ids == ("r1", "r2")
    assert report.exit_code == 1


def test_subsumed_pattern_is_high():
    report = validate_rules(
        [
            _rule("broad", "cat-a", vendor="acme"),
            _rule("narrow", "cat-b", weight=5, vendor="acme", mcc="5734"),
        ]
    )
    [conflict] = report.conflicts
    assert conflict.severity is Severity.HIGH
    assert report.dead_rules == []
    assert report.exit_code == 0


def test_related_vendors_are_medium():
    report = validate_rules(
        [_rule("r1", "cat-a", vendor="Amazon"), _rule("r2", "cat-b", vendor="Amazon Web Services")]
    )
    [conflict] = report.conflicts
    assert conflict.severity is Severity.MEDIUM
    assert report.exit_code == 0


def test_same_category_or_other_org_is_not_a_conflict():
    report = validate_rules(
        [
            _rule("r1", "cat-a", vendor="acme"),
            _rule("r2", "cat-a", vendor="acme"),
            _rule("r3", "cat-b", org="org-2", vendor="acme"),
        ]
    )
    assert report.conflicts == []


def test_disjoint_mccs_do_not_conflict():
    report = validate_rules(
        [
            _rule("r1", "cat-a", vendor="acme", mcc="5734"),
            _rule("r2", "cat-b", vendor="acme", mcc="4215"),
        ]
    )
    assert report.conflicts == []


def test_conflicts_sorted_by_severity():
    report = validate_rules(
        [
            _rule("m1", "cat-a", vendor="amazon"),
            _rule("m2", "cat-b", vendor="amazon web services"),
            _rule("c1", "cat-a", vendor="globex"),
            _rule("c2", "cat-b", vendor="Globex LLC"),
        ]
    )
    assert [c.severity for c in report.conflicts] == [Severity.CRITICAL, Severity.MEDIUM]


# ---- Dead rules --------------------------------------------------------------


def test_rule_shadowed_by_heavier_broader_rule_is_dead():
    report = validate_rules(
        [
            _rule("narrow", "cat-a", weight=1, vendor="acme", descriptionTokens=["invoice"]),
            _rule("broad", "cat-b", weight=4, vendor="acme"),
        ]
    )
    [dead] = report.dead_rules
    assert dead.rule_id == "narrow"
    assert dead.shadowed_by == "broad"


def test_later_duplicate_is_dead_on_equal_weight():
    report = validate_rules(
        [_rule("first", "cat-a", vendor="acme"), _rule("dup", "cat-a", vendor="ACME")]
    )
    assert [d.rule_id for d in report.dead_rules] == ["dup"]
    assert report.conflicts == []


def test_empty_patterns_are_ignored():
    report = validate_rules([_rule("empty", "cat-a"), _rule("r2", "cat-b", vendor="acme")])
    assert report.conflicts == []
    assert report.dead_rules == []


# ---- Regex and vendor lint ---------------------------------------------------


@pytest.mark.parametrize(
    ("pattern", "problem"),
    [
        ("(a+)+", "nested quantifier"),
        (r"(\w*)*x", "nested quantifier"),
        ("(ab|)*c", "empty alternative"),
        ("(unclosed", "does not compile"),
        ("a*", "empty string"),
    ],
)
def test_lint_regex_flags_problems(pattern, problem):
    issues = lint_regex("test", pattern)
    assert any(problem in i.problem for i in issues)


def test_lint_regex_accepts_plain_patterns():
    assert lint_regex("test", r"\bstripe\b[^\n]*\bfees?\b") == []


def test_builtin_description_patterns_are_clean():
    assert validate_rules([]).regex_issues == []


def test_vendor_that_normalizes_to_nothing_is_flagged():
    report = validate_rules([_rule("r1", "cat-a", vendor="LLC")])
    [issue] = report.regex_issues
    assert issue.source == "rule:r1"
    assert report.exit_code == 1


def test_custom_description_patterns_are_linted():
    report = validate_rules([], description_patterns=[("custom", "(x+)+")])
    assert report.summary()["regex_issues"] == 1


# ---- Reports -----------------------------------------------------------------


def test_write_reports(tmp_path: Path):
    report = validate_rules(
        [_rule("r1", "cat-a", vendor="acme"), _rule("r2", "cat-b", vendor="acme")]
    )
    json_path, md_path = write_reports(report, tmp_path / "reports")

    assert json_path.name == JSON_REPORT_NAME
    assert md_path.name == MARKDOWN_REPORT_NAME
    data = json.loads(json_path.read_text())
    assert data["summary"] == {
        "total_rules": 2,
        "conflict_count": 1,
        "critical_conflicts": 1,
        "high_conflicts": 0,
        "medium_conflicts": 0,
        "regex_issues": 0,
        "dead_rules": 1,
    }
    assert data["conflicts"][0]["severity"] == "critical"
    md = md_path.read_text()
    assert md.startswith("# Rule Conflicts")
    assert "## Critical conflicts" in md
    assert "## Dead rules" in md


def test_clean_report_markdown(tmp_path: Path):
    _, md_path = write_reports(validate_rules([]), tmp_path)
    assert "No issues found." in md_path.read_text()


# ---- Loading -----------------------------------------------------------------


def test_load_rules_file_accepts_camel_case(tmp_path: Path):
    p = tmp_path / "rules.json"
    p.write_text(
        json.dumps(
            [
                {
                    "id": "r1",
                    "orgId": "org-1",
                    "categoryId": "cat-a",
                    "weight": 2,
                    "pattern": {"vendor": "Acme", "descriptionTokens": ["PO"]},
                }
            ]
        )
    )
    [rule] = load_rules_file(p)
    assert rule.org_id == "org-1"
    assert rule.pattern.description_tokens == ("po",)


@pytest.mark.parametrize("content", ["not json", '[{"id": "r1"}]', '{"id": "r1"}'])
def test_load_rules_file_rejects_invalid_input(tmp_path: Path, content: str):
    p = tmp_path / "rules.json"
    p.write_text(content)
    with pytest.raises(RuleValidationError):
        load_rules_file(p)


def test_load_rules_file_missing(tmp_path: Path):
    with pytest.raises(RuleValidationError):
        load_rules_file(tmp_path / "missing.json")
