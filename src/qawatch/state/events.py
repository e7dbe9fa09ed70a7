"""Run events.

Each event is a frozen dataclass whose ``type`` is the wire name observers
see. ``to_message`` produces the ``{type, data, timestamp}`` envelope.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar, Union


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class RunStarted:
    type: ClassVar[str] = "run_started"

    max_cycles: int
    files: int
    budget_hard: float
    budget_warning: float
    start_time: str = field(default_factory=_now)


@dataclass(frozen=True)
class CycleStarted:
    type: ClassVar[str] = "cycle_started"

    cycle: int
    max_cycles: int


@dataclass(frozen=True)
class DetectionStarted:
    type: ClassVar[str] = "detection_started"

    file_count: int


@dataclass(frozen=True)
class DetectionComplete:
    """``issues`` are issue dicts with ``auto_fixable`` already resolved."""

    type: ClassVar[str] = "detection_complete"

    issues: tuple[dict[str, Any], ...]
    auto_fixable: int
    cost: float


@dataclass(frozen=True)
class FixStarted:
    type: ClassVar[str] = "fix_started"

    file: str
    issue_count: int
    issue_ids: tuple[str, ...]


@dataclass(frozen=True)
class FixProgress:
    type: ClassVar[str] = "fix_progress"

    file: str
    progress: int


@dataclass(frozen=True)
class VerificationResult:
    type: ClassVar[str] = "verification_result"

    file: str
    verified: bool
    restored: bool


@dataclass(frozen=True)
class FixComplete:
    type: ClassVar[str] = "fix_complete"

    file: str
    success: bool
    fixed: tuple[str, ...] = ()
    failed: tuple[str, ...] = ()


@dataclass(frozen=True)
class CostUpdate:
    type: ClassVar[str] = "cost_update"

    total_cost: float
    cycle_cost: float = 0.0


@dataclass(frozen=True)
class BudgetWarning:
    type: ClassVar[str] = "budget_warning"

    current_cost: float
    warning_threshold: float


@dataclass(frozen=True)
class CycleComplete:
    type: ClassVar[str] = "cycle_complete"

    cycle: int
    fixed_this_cycle: int
    total_fixed: int
    remaining: int
    cost: float
    error: str | None = None


@dataclass(frozen=True)
class RunComplete:
    type: ClassVar[str] = "run_complete"

    status: str
    reason: str
    total_fixed: int
    total_cost: float
    duration: float
    remaining_issues: int = 0


@dataclass(frozen=True)
class LogEntry:
    type: ClassVar[str] = "log_entry"

    message: str
    level: str = "info"
    time: str = field(default_factory=_now)


Event = Union[
    RunStarted,
    CycleStarted,
    DetectionStarted,
    DetectionComplete,
    FixStarted,
    FixProgress,
    VerificationResult,
    FixComplete,
    CostUpdate,
    BudgetWarning,
    CycleComplete,
    RunComplete,
    LogEntry,
]

EVENT_TYPES: tuple[type, ...] = Event.__args__  # type: ignore[attr-defined]

# Message types the broadcaster sends that are not run events.
CONNECTED = "connected"
STATE_SYNC = "state_sync"
SERVER_SHUTDOWN = "server_shutdown"


def make_message(type_: str, data: dict[str, Any] | None = None) -> dict[str, Any]:
    return {"type": type_, "data": data or {}, "timestamp": _now()}


def to_message(event: Event) -> dict[str, Any]:
    data = dataclasses.asdict(event)
    for key, value in data.items():
        if isinstance(value, tuple):
            data[key] = list(value)
    return make_message(event.type, data)
