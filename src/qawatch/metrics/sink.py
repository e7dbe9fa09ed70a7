"""Per-cycle metrics persisted to ``.qawatch/metrics.json``."""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from qawatch.core.config import get_qawatch_dir

logger = logging.getLogger(__name__)

MAX_SESSIONS = 1000
MINUTES_SAVED_PER_FIX = 5


@dataclass
class MetricsSession:
    """One cycle (or one review) worth of numbers."""

    mode: str = "ralph"
    files_reviewed: int = 0
    issues_found: dict[str, int] = field(
        default_factory=lambda: {"critical": 0, "high": 0, "medium": 0}
    )
    issues_fixed: int = 0
    cost: float = 0.0
    duration: float = 0.0
    issue_types: dict[str, int] = field(default_factory=dict)
    files_with_issues: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "filesReviewed": self.files_reviewed,
            "issuesFound": dict(self.issues_found),
            "issuesFixed": self.issues_fixed,
            "cost": self.cost,
            "duration": self.duration,
            "issueTypes": dict(self.issue_types),
            "filesWithIssues": list(self.files_with_issues),
        }


class MetricsSink(Protocol):
    def record(self, session: MetricsSession) -> None: ...


class NullMetricsSink:
    """Discards everything."""

    def record(self, session: MetricsSession) -> None:
        return None


def empty_metrics() -> dict[str, Any]:
    return {
        "sessions": [],
        "aggregates": {
            "totalReviews": 0,
            "totalIssuesFound": 0,
            "totalIssuesFixed": 0,
            "totalCost": 0,
            "totalDuration": 0,
            "estimatedTimeSaved": 0,
        },
        "topFiles": {},
        "issueTypeBreakdown": {},
    }


def _well_formed(data: Any) -> bool:
    template = empty_metrics()
    if not isinstance(data, dict):
        return False
    if not isinstance(data.get("sessions"), list):
        return False
    for key in ("aggregates", "topFiles", "issueTypeBreakdown"):
        if not isinstance(data.get(key), dict):
            return False
    return all(
        isinstance(data["aggregates"].get(key), (int, float))
        for key in template["aggregates"]
    )


class JsonMetricsSink:
    """Appends sessions to a JSON file and keeps running aggregates.

    Only the newest ``MAX_SESSIONS`` sessions are retained; aggregates cover
    every session ever recorded.
    """

    def __init__(self, project_path: Path | None = None, path: Path | None = None):
        self.path = path or get_qawatch_dir(project_path) / "metrics.json"

    def load(self) -> dict[str, Any]:
        try:
            if self.path.exists():
                data = json.loads(self.path.read_text())
                if _well_formed(data):
                    return data
                logger.warning("Ignoring malformed metrics file %s", self.path)
        except (OSError, json.JSONDecodeError) as e:
            logger.debug("Could not load metrics: %s", e)
        return empty_metrics()

    def record(self, session: MetricsSession) -> None:
        metrics = self.load()
        entry = {
            "id": uuid.uuid4().hex[:12],
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **session.to_dict(),
        }
        entry.pop("filesWithIssues")

        metrics["sessions"].append(entry)
        metrics["sessions"] = metrics["sessions"][-MAX_SESSIONS:]

        agg = metrics["aggregates"]
        agg["totalReviews"] += 1
        agg["totalIssuesFound"] += sum(session.issues_found.values())
        agg["totalIssuesFixed"] += session.issues_fixed
        agg["totalCost"] = round(agg["totalCost"] + session.cost, 4)
        agg["totalDuration"] += session.duration
        agg["estimatedTimeSaved"] += session.issues_fixed * MINUTES_SAVED_PER_FIX

        breakdown = metrics["issueTypeBreakdown"]
        for issue_type, count in session.issue_types.items():
            breakdown[issue_type] = breakdown.get(issue_type, 0) + count

        top_files = metrics["topFiles"]
        for file in session.files_with_issues:
            top_files[file] = top_files.get(file, 0) + 1

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(metrics, indent=2))
            logger.debug("Metrics updated: session %s", entry["id"])
        except OSError as e:
            logger.warning("Could not save metrics: %s", e)
