"""Tests for issue models and the auto-fixable rule."""

from __future__ import annotations

from qawatch.core.models import (
    DEFAULT_SAFE_PATTERNS,
    Issue,
    Severity,
    auto_fixable_for_file,
    count_auto_fixable,
    group_by_file,
    issue_type_counts,
    same_file,
    severity_counts,
)


def _issue(file="src/a.ts", line=1, type="console-log", severity=Severity.MEDIUM, auto_fixable=None):
    return Issue(file=file, line=line, severity=severity, type=type, auto_fixable=auto_fixable)


class TestSeverity:
    def test_parse_known(self):
        assert Severity.parse("CRITICAL") is Severity.CRITICAL
        assert Severity.parse("low") is Severity.LOW

    def test_unknown_defaults_to_medium(self):
        assert Severity.parse("catastrophic") is Severity.MEDIUM
        assert Severity.parse(None) is Severity.MEDIUM


class TestIssue:
    def test_id_is_file_and_line(self):
        assert _issue(line=42).id == "src/a.ts:42"

    def test_safe_pattern_membership(self):
        assert _issue(type="console-log").is_auto_fixable(DEFAULT_SAFE_PATTERNS)
        assert not _issue(type="api-key").is_auto_fixable(DEFAULT_SAFE_PATTERNS)

    def test_explicit_flag_wins(self):
        assert _issue(type="api-key", auto_fixable=True).is_auto_fixable(DEFAULT_SAFE_PATTERNS)
        assert not _issue(type="console-log", auto_fixable=False).is_auto_fixable(DEFAULT_SAFE_PATTERNS)

    def test_from_dict_reviewer_payload(self):
        issue = Issue.from_dict({
            "file": "src/api.ts",
            "line": "7",
            "severity": "high",
            "type": "hardcoded-localhost",
            "message": "localhost URL",
            "current": "fetch('http://localhost:3000')",
            "fix": "process.env.NEXT_PUBLIC_APP_URL",
            "autoFixable": True,
        })
        assert issue.line == 7
        assert issue.severity is Severity.HIGH
        assert issue.current_snippet == "fetch('http://localhost:3000')"
        assert issue.auto_fixable is True

    def test_from_dict_tolerates_garbage(self):
        issue = Issue.from_dict({"line": "n/a", "autoFixable": "yes"})
        assert issue.line == 0
        assert issue.type == "unknown"
        assert issue.auto_fixable is None

    def test_to_dict_resolves_flag(self):
        data = _issue(type="debugger-statement").to_dict(DEFAULT_SAFE_PATTERNS)
        assert data["auto_fixable"] is True
        assert data["id"] == "src/a.ts:1"
        assert data["severity"] == "medium"


class TestHelpers:
    def test_same_file_suffix_match(self):
        assert same_file("/home/me/project/src/a.ts", "src/a.ts")
        assert same_file("./src/a.ts", "src/a.ts")
        assert not same_file("src/a.ts", "src/b.ts")
        assert not same_file("lib/xa.ts", "a.ts")

    def test_count_auto_fixable(self):
        issues = [_issue(type="console-log"), _issue(type="api-key"), _issue(type="api-key", auto_fixable=True)]
        assert count_auto_fixable(issues, DEFAULT_SAFE_PATTERNS) == 2

    def test_auto_fixable_for_file(self):
        issues = [
            _issue(file="/abs/src/a.ts", type="console-log"),
            _issue(file="src/a.ts", type="api-key"),
            _issue(file="src/b.ts", type="console-log"),
        ]
        found = auto_fixable_for_file(issues, "src/a.ts", DEFAULT_SAFE_PATTERNS)
        assert [i.file for i in found] == ["/abs/src/a.ts"]

    def test_group_by_file_keeps_first_appearance_order(self):
        issues = [
            _issue(file="src/b.ts", line=1),
            _issue(file="./src/a.ts", line=2),
            _issue(file="src/b.ts", line=3),
            _issue(file="src/a.ts", line=4),
        ]
        groups = group_by_file(issues)
        assert list(groups) == ["src/b.ts", "./src/a.ts"]
        assert [i.line for i in groups["./src/a.ts"]] == [2, 4]

    def test_severity_counts_fold_low_into_medium(self):
        issues = [
            _issue(severity=Severity.CRITICAL),
            _issue(severity=Severity.LOW),
            _issue(severity=Severity.MEDIUM),
        ]
        assert severity_counts(issues) == {"critical": 1, "high": 0, "medium": 2}

    def test_issue_type_counts(self):
        issues = [_issue(type="console-log"), _issue(type="console-log"), _issue(type="api-key")]
        assert issue_type_counts(issues) == {"console-log": 2, "api-key": 1}
