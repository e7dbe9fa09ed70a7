"""The fix-until-clean loop.

``CycleController.run`` drives one run through
``IDLE -> BUDGET_CHECK -> DETECTING -> EVALUATING -> FIXING -> CYCLE_COMPLETE``
until it reaches ``RUN_COMPLETE`` or ``RUN_STOPPED``. Every state change is
published through the broadcaster, which owns the authoritative ``RunState``.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Sequence

from qawatch.core.config import QAWatchConfig
from qawatch.core.errors import ErrorKind, ErrorLog, QAWatchError, classify_error
from qawatch.core.models import (
    DetectionResult,
    Issue,
    count_auto_fixable,
    group_by_file,
    issue_type_counts,
    severity_counts,
)
from qawatch.loop.retry import RetryingReviewer
from qawatch.loop.transaction import BackupStore, FixTransaction, TransactionStatus
from qawatch.metrics.sink import MetricsSession, MetricsSink, NullMetricsSink
from qawatch.state.broadcaster import EventBroadcaster
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
from qawatch.state.store import RunState

logger = logging.getLogger(__name__)

REASON_NO_ISSUES = "no issues found"
REASON_NO_AUTO_FIXABLE = "no auto-fixable issues remaining"
REASON_BUDGET = "budget limit reached"
REASON_MAX_CYCLES = "max cycles reached"
REASON_INTERRUPTED = "user interrupted"


class Phase(enum.Enum):
    IDLE = "idle"
    BUDGET_CHECK = "budget_check"
    DETECTING = "detecting"
    EVALUATING = "evaluating"
    FIXING = "fixing"
    CYCLE_COMPLETE = "cycle_complete"
    RUN_COMPLETE = "run_complete"
    RUN_STOPPED = "run_stopped"


class RunInProgress(QAWatchError):
    """Raised when ``run`` is called while a run is already active."""


@dataclass
class RunOutcome:
    """Summary of a finished run."""

    status: str
    reason: str
    cycles: int = 0
    total_fixed: int = 0
    total_cost: float = 0.0
    duration: float = 0.0
    remaining_issues: list[Issue] = field(default_factory=list)
    errored_cycles: int = 0

    @property
    def completed(self) -> bool:
        return self.status == "complete"


@dataclass
class _Stop:
    status: str
    reason: str
    remaining: list[Issue] = field(default_factory=list)


class CycleController:
    """Runs detect/fix/verify cycles against a reviewer until the project is clean.

    Usage::

        controller = CycleController(reviewer, project_path=root, files=files,
                                     config=config, broadcaster=broadcaster)
        outcome = await controller.run()
    """

    def __init__(
        self,
        reviewer: Any,
        *,
        project_path: Path,
        files: Sequence[str],
        config: QAWatchConfig | None = None,
        broadcaster: EventBroadcaster | None = None,
        metrics: MetricsSink | None = None,
        error_log: ErrorLog | None = None,
        backups: BackupStore | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or QAWatchConfig()
        self.project_path = project_path
        self.files = list(files)
        self.broadcaster = broadcaster or EventBroadcaster()
        self.metrics = metrics or NullMetricsSink()
        self.error_log = error_log
        self.backups = backups
        if self.backups is None and self.config.fix.backup_files:
            self.backups = BackupStore(project_path)
        self.reviewer = RetryingReviewer.from_config(
            reviewer, self.config.reviewer, on_retry=self._on_retry, sleep=sleep,
        )
        self.phase = Phase.IDLE
        self._sleep = sleep
        self._clock = clock
        self._stop_requested = False
        self._running = False
        self._errored_cycles = 0
        self._last_issues: list[Issue] = []

    @property
    def state(self) -> RunState:
        return self.broadcaster.store.state

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def request_stop(self) -> None:
        """Ask the run to stop at the next checkpoint.

        The current reviewer call and file transaction are allowed to finish.
        """
        if not self._stop_requested:
            logger.info("Stop requested; finishing current step")
        self._stop_requested = True

    async def run(self) -> RunOutcome:
        if self._running:
            raise RunInProgress("A run is already in progress")
        self._running = True
        self._stop_requested = False
        self._errored_cycles = 0
        self._last_issues = []
        started = self._clock()
        loop_cfg = self.config.loop

        try:
            await self._publish(RunStarted(
                max_cycles=loop_cfg.max_cycles,
                files=len(self.files),
                budget_hard=loop_cfg.budget_hard,
                budget_warning=loop_cfg.budget_warning,
            ))
            await self._log(f"Starting run: up to {loop_cfg.max_cycles} cycles over {len(self.files)} files")

            while True:
                if self._stop_requested:
                    stop = _Stop("stopped", REASON_INTERRUPTED)
                    break

                stop = await self._check_budget()
                if stop is not None:
                    break

                stop = await self._run_cycle()
                if stop is not None:
                    break

                self.phase = Phase.CYCLE_COMPLETE
                if self._stop_requested:
                    stop = _Stop("stopped", REASON_INTERRUPTED)
                    break
                if self.state.cycle_number >= loop_cfg.max_cycles:
                    stop = _Stop("stopped", REASON_MAX_CYCLES)
                    break

                await self._sleep(loop_cfg.cycle_pause)

            return await self._finish(stop, started)
        finally:
            self._running = False

    async def _check_budget(self) -> _Stop | None:
        self.phase = Phase.BUDGET_CHECK
        state = self.state
        budget = self.config.loop
        if state.total_cost >= budget.budget_hard:
            logger.warning(
                "Budget limit reached ($%.2f >= $%.2f)", state.total_cost, budget.budget_hard,
            )
            return _Stop("stopped", REASON_BUDGET)
        if state.total_cost >= budget.budget_warning and state.cycle_number > 1:
            logger.warning("Budget warning: $%.2f spent", state.total_cost)
            await self._publish(BudgetWarning(
                current_cost=state.total_cost,
                warning_threshold=budget.budget_warning,
            ))
        return None

    async def _run_cycle(self) -> _Stop | None:
        cycle = self.state.cycle_number + 1
        max_cycles = self.config.loop.max_cycles
        cycle_started = self._clock()
        fixed_before = self.state.total_fixed
        cost_before = self.state.total_cost

        await self._publish(CycleStarted(cycle=cycle, max_cycles=max_cycles))
        await self._log(f"Cycle {cycle}/{max_cycles}: detecting issues...")

        # Detecting
        self.phase = Phase.DETECTING
        await self._publish(DetectionStarted(file_count=len(self.files)))
        try:
            detection = await self.reviewer.detect(self.files)
        except Exception as e:
            return await self._detection_failed(cycle, e)
        self._last_issues = list(detection.issues)

        patterns = self.config.fix.safe_patterns
        auto_fixable = count_auto_fixable(detection.issues, patterns)
        await self._publish(DetectionComplete(
            issues=tuple(i.to_dict(patterns) for i in detection.issues),
            auto_fixable=auto_fixable,
            cost=detection.cost,
        ))
        await self._publish(CostUpdate(total_cost=self.state.total_cost, cycle_cost=detection.cost))
        await self._log(
            f"Found {len(detection.issues)} issue(s), {auto_fixable} auto-fixable"
        )

        # Evaluating
        self.phase = Phase.EVALUATING
        if not detection.issues:
            self._record_metrics(detection, 0, cost_before, cycle_started)
            return _Stop("complete", REASON_NO_ISSUES)
        if auto_fixable == 0:
            self._record_metrics(detection, 0, cost_before, cycle_started)
            return _Stop("complete", REASON_NO_AUTO_FIXABLE, list(detection.issues))

        # Fixing
        self.phase = Phase.FIXING
        stop: _Stop | None = None
        for file, issues in group_by_file(detection.issues).items():
            if self._stop_requested:
                break
            if not any(i.is_auto_fixable(patterns) for i in issues):
                continue
            transaction = await self._fix_file(file, issues)
            if transaction.error_kind is ErrorKind.FATAL:
                stop = _Stop("stopped", f"fatal error: {transaction.error}")
                break

        fixed_this_cycle = self.state.total_fixed - fixed_before
        await self._publish(CycleComplete(
            cycle=cycle,
            fixed_this_cycle=fixed_this_cycle,
            total_fixed=self.state.total_fixed,
            remaining=len(self.state.outstanding),
            cost=self.state.total_cost,
        ))
        await self._log(
            f"Cycle {cycle} complete: fixed {fixed_this_cycle}, "
            f"{len(self.state.outstanding)} remaining"
        )
        self._record_metrics(detection, fixed_this_cycle, cost_before, cycle_started)
        return stop

    async def _fix_file(self, file: str, issues: list[Issue]) -> FixTransaction:
        patterns = self.config.fix.safe_patterns
        subset = [i for i in issues if i.is_auto_fixable(patterns)]
        ids = tuple(i.id for i in subset)

        await self._publish(FixStarted(file=file, issue_count=len(subset), issue_ids=ids))
        await self._log(f"Fixing {len(subset)} issue(s) in {file}")

        async def on_progress(percent: int) -> None:
            await self._publish(FixProgress(file=file, progress=percent))

        transaction = FixTransaction(file=file, issues=subset)
        await transaction.execute(
            self.reviewer,
            project_path=self.project_path,
            safe_patterns=patterns,
            backups=self.backups,
            verify=self.config.fix.verify_after_fix,
            on_progress=on_progress,
        )

        if transaction.cost:
            await self._publish(CostUpdate(
                total_cost=self.state.total_cost + transaction.cost,
                cycle_cost=transaction.cost,
            ))
        if transaction.verified is not None:
            await self._publish(VerificationResult(
                file=file, verified=transaction.verified, restored=transaction.restored,
            ))
        if transaction.error is not None:
            self._record_error(transaction.error, {"file": file, "action": "fix"})

        success = transaction.succeeded
        await self._publish(FixComplete(
            file=file,
            success=success,
            fixed=ids if success else (),
            failed=() if success else ids,
        ))
        if success:
            await self._log(f"Fixed {len(ids)} issue(s) in {file}", "success")
        elif transaction.status is TransactionStatus.ROLLEDBACK:
            await self._log(f"Verification failed for {file}; restored from backup", "warning")
        else:
            await self._log(f"Could not fix {file}", "warning")
        return transaction

    async def _detection_failed(self, cycle: int, error: Exception) -> _Stop | None:
        self._record_error(error, {"action": "detect", "cycle": cycle})
        if classify_error(error) is ErrorKind.FATAL:
            await self._log(f"Detection failed: {error}", "error")
            return _Stop("stopped", f"fatal error: {error}")

        self._errored_cycles += 1
        logger.error("Cycle %d detection failed: %s", cycle, error)
        await self._publish(CycleComplete(
            cycle=cycle,
            fixed_this_cycle=0,
            total_fixed=self.state.total_fixed,
            remaining=len(self.state.outstanding),
            cost=self.state.total_cost,
            error=str(error),
        ))
        await self._log(f"Cycle {cycle} failed: {error}", "error")
        return None

    async def _finish(self, stop: _Stop, started: float) -> RunOutcome:
        self.phase = Phase.RUN_COMPLETE if stop.status == "complete" else Phase.RUN_STOPPED
        duration = self._clock() - started
        state = self.state
        remaining = stop.remaining or [
            i for i in self._last_issues if i.id in state.outstanding
        ]

        await self._publish(RunComplete(
            status=stop.status,
            reason=stop.reason,
            total_fixed=state.total_fixed,
            total_cost=state.total_cost,
            duration=duration,
            remaining_issues=len(remaining),
        ))
        logger.info(
            "Run %s (%s): %d fixed over %d cycle(s), $%.4f",
            stop.status, stop.reason, state.total_fixed, state.cycle_number, state.total_cost,
        )
        return RunOutcome(
            status=stop.status,
            reason=stop.reason,
            cycles=state.cycle_number,
            total_fixed=state.total_fixed,
            total_cost=state.total_cost,
            duration=duration,
            remaining_issues=list(remaining),
            errored_cycles=self._errored_cycles,
        )

    def _record_metrics(
        self, detection: DetectionResult, fixed: int, cost_before: float, cycle_started: float
    ) -> None:
        files_with_issues = list(group_by_file(detection.issues))
        session = MetricsSession(
            mode="ralph",
            files_reviewed=len(self.files),
            issues_found=severity_counts(detection.issues),
            issues_fixed=fixed,
            cost=self.state.total_cost - cost_before,
            duration=self._clock() - cycle_started,
            issue_types=issue_type_counts(detection.issues),
            files_with_issues=files_with_issues,
        )
        try:
            self.metrics.record(session)
        except Exception as e:
            logger.warning("Could not record metrics: %s", e)
            self._record_error(e, {"action": "record_metrics", "cycle": self.state.cycle_number})

    def _record_error(self, error: BaseException, context: dict[str, Any]) -> None:
        if self.error_log is not None:
            self.error_log.record(error, context)

    async def _on_retry(self, attempt: int, max_attempts: int, delay: float, error: BaseException) -> None:
        await self._log(
            f"Retrying in {delay:g}s (attempt {attempt}/{max_attempts}): {error}", "warning"
        )

    async def _log(self, message: str, level: str = "info") -> None:
        await self._publish(LogEntry(message=message, level=level))

    async def _publish(self, event: Event) -> None:
        await self.broadcaster.publish(event)
