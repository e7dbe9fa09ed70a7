"""Shared data models used across qawatch modules."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Iterable


class Severity(enum.Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @classmethod
    def parse(cls, value: Any) -> Severity:
        """Map a reviewer-supplied severity to the enum, defaulting to medium."""
        try:
            return cls(str(value or "medium").lower())
        except ValueError:
            return cls.MEDIUM


class IssueStatus(enum.Enum):
    DETECTED = "detected"
    FIXING = "fixing"
    FAILED = "failed"


DEFAULT_SAFE_PATTERNS = (
    "hardcoded-localhost",
    "console-log",
    "debugger-statement",
)


def normalize_path(path: str) -> str:
    return path.replace("\\", "/").removeprefix("./")


def same_file(a: str, b: str) -> bool:
    """True when two reviewer-reported paths refer to the same file.

    The engine sometimes reports absolute paths, sometimes paths relative to
    the project root, so suffix matches count as well.
    """
    a, b = normalize_path(a), normalize_path(b)
    if not a or not b:
        return False
    return a == b or a.endswith("/" + b) or b.endswith("/" + a)


@dataclass
class Issue:
    """A single issue reported by a detection pass."""

    file: str
    line: int
    severity: Severity
    type: str
    message: str = ""
    current_snippet: str = ""
    suggested_fix: str = ""
    auto_fixable: bool | None = None

    @property
    def id(self) -> str:
        return f"{self.file}:{self.line}"

    def is_auto_fixable(self, safe_patterns: Iterable[str]) -> bool:
        """Explicit flag wins when set, otherwise safe-pattern membership."""
        if self.auto_fixable is not None:
            return self.auto_fixable
        return self.type in set(safe_patterns)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Issue:
        flag = data.get("autoFixable", data.get("auto_fixable"))
        try:
            line = int(data.get("line") or 0)
        except (TypeError, ValueError):
            line = 0
        return cls(
            file=str(data.get("file", "")),
            line=line,
            severity=Severity.parse(data.get("severity")),
            type=str(data.get("type", "unknown")),
            message=str(data.get("message", "")),
            current_snippet=str(data.get("current", data.get("current_snippet", "")) or ""),
            suggested_fix=str(data.get("fix", data.get("suggested_fix", "")) or ""),
            auto_fixable=flag if isinstance(flag, bool) else None,
        )

    def to_dict(self, safe_patterns: Iterable[str] | None = None) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "file": self.file,
            "line": self.line,
            "severity": self.severity.value,
            "type": self.type,
            "message": self.message,
            "current": self.current_snippet,
            "fix": self.suggested_fix,
            "auto_fixable": self.auto_fixable,
        }
        if safe_patterns is not None:
            data["auto_fixable"] = self.is_auto_fixable(safe_patterns)
        return data


def count_auto_fixable(issues: Iterable[Issue], safe_patterns: Iterable[str]) -> int:
    patterns = tuple(safe_patterns)
    return sum(1 for i in issues if i.is_auto_fixable(patterns))


def auto_fixable_for_file(
    issues: Iterable[Issue], file: str, safe_patterns: Iterable[str]
) -> list[Issue]:
    patterns = tuple(safe_patterns)
    return [i for i in issues if same_file(i.file, file) and i.is_auto_fixable(patterns)]


def group_by_file(issues: Iterable[Issue]) -> dict[str, list[Issue]]:
    """Group issues by file, keyed by the first spelling seen for each path.

    Keys keep the order in which files first appear.
    """
    keys: dict[str, str] = {}
    groups: dict[str, list[Issue]] = {}
    for issue in issues:
        if not issue.file:
            continue
        key = keys.setdefault(normalize_path(issue.file), issue.file)
        groups.setdefault(key, []).append(issue)
    return groups


def severity_counts(issues: Iterable[Issue]) -> dict[str, int]:
    """Counts keyed critical/high/medium; low folds into medium."""
    counts = {"critical": 0, "high": 0, "medium": 0}
    for issue in issues:
        key = issue.severity.value
        counts[key if key in counts else "medium"] += 1
    return counts


def issue_type_counts(issues: Iterable[Issue]) -> dict[str, int]:
    counts: dict[str, int] = {}
    for issue in issues:
        if issue.type:
            counts[issue.type] = counts.get(issue.type, 0) + 1
    return counts


@dataclass
class DetectionResult:
    """Outcome of one reviewer detection pass."""

    issues: list[Issue] = field(default_factory=list)
    cost: float = 0.0
    duration: float = 0.0


@dataclass
class FixReport:
    """Outcome of one reviewer fix call."""

    fixed: bool
    lines_modified: list[int] = field(default_factory=list)
    cost: float = 0.0
    env_vars_needed: list[str] = field(default_factory=list)
