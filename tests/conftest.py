"""Shared fakes for qawatch tests."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from qawatch.core.config import QAWatchConfig
from qawatch.core.models import DetectionResult, FixReport, Issue, Severity

# (marker, type, severity)
PATTERNS = (
    ("sk_live_", "api-key", Severity.CRITICAL),
    ("localhost", "hardcoded-localhost", Severity.HIGH),
    ("console.log", "console-log", Severity.MEDIUM),
    ("debugger", "debugger-statement", Severity.MEDIUM),
)


def scan_line(line: str) -> tuple[str, Severity] | None:
    for marker, issue_type, severity in PATTERNS:
        if marker in line:
            return issue_type, severity
    return None


class FakeReviewer:
    """Reviewer that works on real files.

    ``detect`` reports one issue per line containing a known marker.
    ``fix`` behaviour depends on ``mode``:

    - ``"honest"``: removes console.log/debugger lines and rewrites localhost.
    - ``"liar"``: claims success without touching the file.
    - ``"vandal"``: scribbles on the file but leaves the issues in place.
    - ``"decline"``: reports ``fixed=False``.
    """

    def __init__(
        self,
        root: Path,
        *,
        mode: str = "honest",
        detect_cost: float = 0.01,
        fix_cost: float = 0.02,
        detect_errors: list[BaseException] | None = None,
        fix_errors: dict[str, BaseException] | None = None,
    ):
        self.root = root
        self.mode = mode
        self.detect_cost = detect_cost
        self.fix_cost = fix_cost
        self.detect_errors = list(detect_errors or [])
        self.fix_errors = dict(fix_errors or {})
        self.detect_calls: list[list[str]] = []
        self.fix_calls: list[tuple[str, list[str]]] = []

    async def detect(self, files):
        self.detect_calls.append(list(files))
        if self.detect_errors:
            raise self.detect_errors.pop(0)

        issues = []
        for file in files:
            path = self.root / file
            if not path.exists():
                continue
            for number, line in enumerate(path.read_text().splitlines(), start=1):
                found = scan_line(line)
                if found:
                    issue_type, severity = found
                    issues.append(Issue(
                        file=file,
                        line=number,
                        severity=severity,
                        type=issue_type,
                        message=f"{issue_type} on line {number}",
                        current_snippet=line.strip(),
                    ))
        return DetectionResult(issues=issues, cost=self.detect_cost)

    async def fix(self, file, issues):
        self.fix_calls.append((file, [i.id for i in issues]))
        if file in self.fix_errors:
            raise self.fix_errors[file]

        path = self.root / file
        if self.mode == "decline":
            return FixReport(fixed=False, cost=self.fix_cost)
        if self.mode == "liar":
            return FixReport(fixed=True, lines_modified=[i.line for i in issues], cost=self.fix_cost)
        if self.mode == "vandal":
            path.write_text(path.read_text() + "// touched\n")
            return FixReport(fixed=True, cost=self.fix_cost)

        targets = {i.line for i in issues}
        kept = []
        for number, line in enumerate(path.read_text().splitlines(keepends=True), start=1):
            if number not in targets:
                kept.append(line)
            elif "localhost" in line:
                kept.append(line.replace("http://localhost:3000", "${process.env.APP_URL}"))
        path.write_text("".join(kept))
        return FixReport(fixed=True, lines_modified=sorted(targets), cost=self.fix_cost)


class RecordingObserver:
    def __init__(self, fail: bool = False):
        self.messages: list[dict[str, Any]] = []
        self.fail = fail

    async def send(self, message: dict[str, Any]) -> None:
        if self.fail:
            raise ConnectionResetError("client went away")
        self.messages.append(message)

    def types(self) -> list[str]:
        return [m["type"] for m in self.messages]

    def of_type(self, type_: str) -> list[dict[str, Any]]:
        return [m for m in self.messages if m["type"] == type_]


async def no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """A project with one source directory."""
    (tmp_path / "src").mkdir()
    return tmp_path


@pytest.fixture
def fast_config() -> QAWatchConfig:
    """Config with pauses and retry delays turned off."""
    config = QAWatchConfig()
    config.loop.cycle_pause = 0
    config.reviewer.base_delay = 0
    return config


@pytest.fixture
def fake_reviewer():
    return FakeReviewer


@pytest.fixture
def recorder():
    return RecordingObserver


@pytest.fixture
def sleepless():
    return no_sleep
