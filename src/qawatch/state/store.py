"""Authoritative run state and the reducer that evolves it.

``apply(state, event)`` never mutates its input; every event class has
exactly one handler registered on ``_reduce``.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from functools import singledispatch
from typing import Any, Mapping

from qawatch.core.models import IssueStatus
from qawatch.state.events import (
    BudgetWarning,
    CostUpdate,
    CycleComplete,
    CycleStarted,
    DetectionComplete,
    DetectionStarted,
    Event,
    FixComplete,
    FixProgress,
    FixStarted,
    LogEntry,
    RunComplete,
    RunStarted,
    VerificationResult,
)

LOG_CAPACITY = 100


@dataclass(frozen=True)
class TrackedIssue:
    id: str
    file: str
    line: int
    severity: str
    type: str
    message: str = ""
    auto_fixable: bool = False
    status: IssueStatus = IssueStatus.DETECTED
    progress: int = 0

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> TrackedIssue:
        return cls(
            id=str(data.get("id") or f"{data.get('file')}:{data.get('line')}"),
            file=str(data.get("file", "")),
            line=int(data.get("line") or 0),
            severity=str(data.get("severity", "medium")),
            type=str(data.get("type", "")),
            message=str(data.get("message", "")),
            auto_fixable=bool(data.get("auto_fixable")),
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass(frozen=True)
class LogRecord:
    time: str
    message: str
    level: str = "info"


@dataclass(frozen=True)
class RunState:
    """Everything an observer needs to render a run."""

    started: bool = False
    status: str = "idle"
    reason: str = ""
    cycle_number: int = 0
    max_cycles: int = 0
    total_cost: float = 0.0
    total_fixed: int = 0
    budget_warning: float = 0.0
    budget_hard: float = 0.0
    start_time: str | None = None
    outstanding: Mapping[str, TrackedIssue] = field(default_factory=dict)
    fixing: frozenset[str] = frozenset()
    completed: frozenset[str] = frozenset()
    logs: tuple[LogRecord, ...] = ()

    @property
    def active(self) -> bool:
        return self.started and self.status == "running"

    def snapshot(self) -> dict[str, Any]:
        return {
            "started": self.started,
            "status": self.status,
            "reason": self.reason,
            "cycle": self.cycle_number,
            "max_cycles": self.max_cycles,
            "total_cost": self.total_cost,
            "total_fixed": self.total_fixed,
            "budget_warning": self.budget_warning,
            "budget_hard": self.budget_hard,
            "start_time": self.start_time,
            "outstanding_issues": [i.to_dict() for i in self.outstanding.values()],
            "fixing": sorted(self.fixing),
            "completed": sorted(self.completed),
            "logs": [asdict(r) for r in self.logs],
        }


def apply(state: RunState, event: Event) -> RunState:
    """Return the state that results from applying ``event`` to ``state``."""
    return _reduce(event, state)


@singledispatch
def _reduce(event: Any, state: RunState) -> RunState:
    raise TypeError(f"No reducer for event {type(event).__name__}")


@_reduce.register
def _(event: RunStarted, state: RunState) -> RunState:
    return RunState(
        started=True,
        status="running",
        max_cycles=event.max_cycles,
        budget_warning=event.budget_warning,
        budget_hard=event.budget_hard,
        start_time=event.start_time,
    )


@_reduce.register
def _(event: CycleStarted, state: RunState) -> RunState:
    return replace(state, cycle_number=event.cycle, max_cycles=event.max_cycles)


@_reduce.register
def _(event: DetectionStarted, state: RunState) -> RunState:
    return state


@_reduce.register
def _(event: DetectionComplete, state: RunState) -> RunState:
    outstanding: dict[str, TrackedIssue] = {}
    for payload in event.issues:
        issue = TrackedIssue.from_payload(payload)
        if issue.id not in state.completed:
            outstanding[issue.id] = issue
    return replace(
        state,
        outstanding=outstanding,
        fixing=frozenset(),
        total_cost=state.total_cost + max(event.cost, 0.0),
    )


@_reduce.register
def _(event: FixStarted, state: RunState) -> RunState:
    ids = [i for i in event.issue_ids if i in state.outstanding]
    outstanding = dict(state.outstanding)
    for issue_id in ids:
        outstanding[issue_id] = replace(outstanding[issue_id], status=IssueStatus.FIXING, progress=0)
    return replace(state, outstanding=outstanding, fixing=state.fixing | frozenset(ids))


@_reduce.register
def _(event: FixProgress, state: RunState) -> RunState:
    outstanding = {
        issue_id: (
            replace(issue, progress=event.progress)
            if issue.file == event.file and issue_id in state.fixing
            else issue
        )
        for issue_id, issue in state.outstanding.items()
    }
    return replace(state, outstanding=outstanding)


@_reduce.register
def _(event: VerificationResult, state: RunState) -> RunState:
    return state


@_reduce.register
def _(event: FixComplete, state: RunState) -> RunState:
    fixed = frozenset(event.fixed)
    failed = frozenset(event.failed) - fixed
    outstanding = {k: v for k, v in state.outstanding.items() if k not in fixed}
    for issue_id in failed:
        if issue_id in outstanding:
            outstanding[issue_id] = replace(outstanding[issue_id], status=IssueStatus.FAILED)
    return replace(
        state,
        outstanding=outstanding,
        fixing=state.fixing - fixed - failed,
        completed=state.completed | fixed,
        total_fixed=state.total_fixed + len(fixed),
    )


@_reduce.register
def _(event: CostUpdate, state: RunState) -> RunState:
    return replace(state, total_cost=max(state.total_cost, event.total_cost))


@_reduce.register
def _(event: BudgetWarning, state: RunState) -> RunState:
    return state


@_reduce.register
def _(event: CycleComplete, state: RunState) -> RunState:
    return replace(
        state,
        cycle_number=max(state.cycle_number, event.cycle),
        total_cost=max(state.total_cost, event.cost),
    )


@_reduce.register
def _(event: RunComplete, state: RunState) -> RunState:
    return replace(
        state,
        status=event.status,
        reason=event.reason,
        total_cost=max(state.total_cost, event.total_cost),
    )


@_reduce.register
def _(event: LogEntry, state: RunState) -> RunState:
    record = LogRecord(time=event.time, message=event.message, level=event.level)
    return replace(state, logs=(state.logs + (record,))[-LOG_CAPACITY:])


def has_reducer(event_type: type) -> bool:
    return _reduce.dispatch(event_type) is not _reduce.registry[object]


class StateStore:
    """Holds the current ``RunState`` for its owner."""

    def __init__(self, state: RunState | None = None):
        self._state = state or RunState()

    @property
    def state(self) -> RunState:
        return self._state

    def apply(self, event: Event) -> RunState:
        self._state = apply(self._state, event)
        return self._state

    def snapshot(self) -> dict[str, Any]:
        return self._state.snapshot()
