"""Tests for the run state reducer."""

from __future__ import annotations

import pytest

from qawatch.core.models import IssueStatus
from qawatch.state.events import (
    EVENT_TYPES,
    BudgetWarning,
    CostUpdate,
    CycleComplete,
    CycleStarted,
    DetectionComplete,
    FixComplete,
    FixProgress,
    FixStarted,
    LogEntry,
    RunComplete,
    RunStarted,
)
from qawatch.state.store import RunState, StateStore, apply, has_reducer


def _payload(file="src/a.ts", line=1, type="console-log", auto_fixable=True):
    return {
        "id": f"{file}:{line}",
        "file": file,
        "line": line,
        "severity": "medium",
        "type": type,
        "message": "",
        "auto_fixable": auto_fixable,
    }


def _started() -> RunState:
    return apply(RunState(), RunStarted(max_cycles=3, files=2, budget_hard=20, budget_warning=5))


def _detected(*payloads, cost=0.0) -> RunState:
    state = apply(_started(), CycleStarted(cycle=1, max_cycles=3))
    return apply(state, DetectionComplete(issues=tuple(payloads), auto_fixable=len(payloads), cost=cost))


class TestReducer:
    def test_every_event_type_has_a_reducer(self):
        for event_type in EVENT_TYPES:
            assert has_reducer(event_type), event_type.__name__

    def test_unknown_event_is_rejected(self):
        with pytest.raises(TypeError):
            apply(RunState(), object())

    def test_run_started_is_deterministic(self):
        event = RunStarted(max_cycles=3, files=2, budget_hard=20, budget_warning=5)

        first = apply(RunState(), event)
        second = apply(RunState(), event)

        assert first == second
        assert first.start_time == event.start_time

    def test_apply_does_not_mutate_input(self):
        before = _detected(_payload())
        after = apply(before, FixStarted(file="src/a.ts", issue_count=1, issue_ids=("src/a.ts:1",)))

        assert before.outstanding["src/a.ts:1"].status is IssueStatus.DETECTED
        assert after.outstanding["src/a.ts:1"].status is IssueStatus.FIXING

    def test_run_started_resets(self):
        state = _detected(_payload(), cost=1.0)
        state = apply(state, RunStarted(max_cycles=5, files=1, budget_hard=10, budget_warning=2))

        assert state.outstanding == {}
        assert state.total_cost == 0
        assert state.max_cycles == 5
        assert state.active

    def test_detection_complete_replaces_outstanding_and_adds_cost(self):
        state = _detected(_payload(line=1), _payload(line=2), cost=0.25)

        assert set(state.outstanding) == {"src/a.ts:1", "src/a.ts:2"}
        assert state.total_cost == 0.25
        assert state.cycle_number == 1

    def test_fix_started_ignores_unknown_ids(self):
        state = _detected(_payload())
        state = apply(state, FixStarted(file="src/a.ts", issue_count=2, issue_ids=("src/a.ts:1", "src/a.ts:99")))

        assert state.fixing == frozenset({"src/a.ts:1"})

    def test_fix_progress_updates_fixing_issues(self):
        state = _detected(_payload(line=1), _payload(file="src/b.ts", line=1))
        state = apply(state, FixStarted(file="src/a.ts", issue_count=1, issue_ids=("src/a.ts:1",)))
        state = apply(state, FixProgress(file="src/a.ts", progress=50))

        assert state.outstanding["src/a.ts:1"].progress == 50
        assert state.outstanding["src/b.ts:1"].progress == 0

    def test_fix_complete_moves_fixed_to_completed(self):
        state = _detected(_payload(line=1), _payload(line=2))
        state = apply(state, FixStarted(file="src/a.ts", issue_count=2, issue_ids=("src/a.ts:1", "src/a.ts:2")))
        state = apply(state, FixComplete(file="src/a.ts", success=True, fixed=("src/a.ts:1", "src/a.ts:2")))

        assert state.outstanding == {}
        assert state.completed == frozenset({"src/a.ts:1", "src/a.ts:2"})
        assert state.fixing == frozenset()
        assert state.total_fixed == 2

    def test_failed_fix_stays_outstanding(self):
        state = _detected(_payload())
        state = apply(state, FixStarted(file="src/a.ts", issue_count=1, issue_ids=("src/a.ts:1",)))
        state = apply(state, FixComplete(file="src/a.ts", success=False, failed=("src/a.ts:1",)))

        assert state.outstanding["src/a.ts:1"].status is IssueStatus.FAILED
        assert state.completed == frozenset()
        assert state.total_fixed == 0

    def test_completed_ids_never_return_to_outstanding(self):
        state = _detected(_payload())
        state = apply(state, FixComplete(file="src/a.ts", success=True, fixed=("src/a.ts:1",)))
        state = apply(state, DetectionComplete(issues=(_payload(),), auto_fixable=1, cost=0))

        assert "src/a.ts:1" not in state.outstanding
        assert not (state.completed & set(state.outstanding))

    def test_cost_is_monotonic(self):
        state = _detected(_payload(), cost=1.0)
        state = apply(state, CostUpdate(total_cost=0.5))
        assert state.total_cost == 1.0
        state = apply(state, CostUpdate(total_cost=1.5))
        state = apply(state, CycleComplete(cycle=1, fixed_this_cycle=0, total_fixed=0, remaining=1, cost=1.2))
        state = apply(state, RunComplete(status="stopped", reason="x", total_fixed=0, total_cost=0.1, duration=1))
        assert state.total_cost == 1.5

    def test_run_complete_ends_activity(self):
        state = apply(_started(), RunComplete(
            status="complete", reason="no issues found", total_fixed=0, total_cost=0, duration=1,
        ))
        assert state.status == "complete"
        assert state.reason == "no issues found"
        assert not state.active

    def test_budget_warning_is_informational(self):
        state = _started()
        assert apply(state, BudgetWarning(current_cost=6, warning_threshold=5)) == state

    def test_log_buffer_is_bounded(self):
        state = _started()
        for n in range(150):
            state = apply(state, LogEntry(message=f"line {n}"))

        assert len(state.logs) == 100
        assert state.logs[0].message == "line 50"
        assert state.logs[-1].message == "line 149"


class TestStateStore:
    def test_snapshot_shape(self):
        store = StateStore()
        store.apply(RunStarted(max_cycles=3, files=1, budget_hard=20, budget_warning=5))
        store.apply(CycleStarted(cycle=1, max_cycles=3))
        store.apply(DetectionComplete(issues=(_payload(),), auto_fixable=1, cost=0.1))

        snapshot = store.snapshot()

        assert snapshot["status"] == "running"
        assert snapshot["cycle"] == 1
        assert snapshot["total_cost"] == 0.1
        assert snapshot["outstanding_issues"][0]["id"] == "src/a.ts:1"
        assert snapshot["outstanding_issues"][0]["status"] == "detected"
        assert snapshot["completed"] == []
