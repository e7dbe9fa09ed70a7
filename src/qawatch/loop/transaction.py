"""Per-file fix transactions: backup, apply, verify, then commit or roll back."""

from __future__ import annotations

import asyncio
import enum
import json
import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Iterable

from qawatch.core.config import get_qawatch_dir
from qawatch.core.errors import ErrorKind, classify_error
from qawatch.core.models import Issue, auto_fixable_for_file

logger = logging.getLogger(__name__)


@dataclass
class Backup:
    """A byte-exact snapshot of one file."""

    file: Path
    path: Path
    timestamp: str


class BackupStore:
    """Stores file snapshots under ``.qawatch/backups/<session>/``."""

    def __init__(self, project_path: Path, session: str | None = None):
        self.project_path = project_path
        self.session = session or datetime.now().strftime("%Y-%m-%dT%H-%M-%S")
        self.session_dir = get_qawatch_dir(project_path) / "backups" / self.session
        self.manifest_file = self.session_dir / "manifest.json"

    def snapshot(self, file_path: Path) -> Backup:
        """Copy ``file_path`` aside. Raises ``OSError`` if it cannot."""
        self.session_dir.mkdir(parents=True, exist_ok=True)

        backup_file = self.session_dir / f"{file_path.name}.bak"
        counter = 1
        while backup_file.exists():
            backup_file = self.session_dir / f"{file_path.name}.{counter}.bak"
            counter += 1

        shutil.copyfile(file_path, backup_file)
        backup = Backup(
            file=file_path,
            path=backup_file,
            timestamp=datetime.now().isoformat(),
        )
        self._update_manifest(add=backup)
        logger.debug("Backed up: %s -> %s", file_path, backup_file)
        return backup

    def restore(self, backup: Backup) -> None:
        """Write the snapshot back over the original, then drop the snapshot."""
        backup.file.write_bytes(backup.path.read_bytes())
        self.discard(backup)
        logger.warning("Restored %s from backup", backup.file)

    def discard(self, backup: Backup) -> None:
        try:
            backup.path.unlink(missing_ok=True)
            self._update_manifest(remove=backup)
        except OSError:
            logger.debug("Failed to clean up backup %s", backup.path, exc_info=True)

    def pending(self) -> list[dict]:
        """Backups that were neither discarded nor restored."""
        if not self.manifest_file.exists():
            return []
        return json.loads(self.manifest_file.read_text())

    def _update_manifest(self, add: Backup | None = None, remove: Backup | None = None) -> None:
        manifest = self.pending()
        if add is not None:
            manifest.append({
                "file": str(add.file),
                "backup": str(add.path),
                "timestamp": add.timestamp,
            })
        if remove is not None:
            manifest = [e for e in manifest if e["backup"] != str(remove.path)]
        self.manifest_file.write_text(json.dumps(manifest, indent=2))


class TransactionStatus(enum.Enum):
    PENDING = "pending"
    APPLIED = "applied"
    VERIFIED = "verified"
    ROLLEDBACK = "rolledback"
    FAILED = "failed"


@dataclass
class FixTransaction:
    """Fix pipeline for one file within one cycle.

    ``execute`` always leaves the transaction in a terminal status, and the
    file either holds the reviewer's (verified, when enabled) edit or its
    original bytes.
    """

    file: str
    issues: list[Issue]
    status: TransactionStatus = TransactionStatus.PENDING
    backup: Backup | None = None
    cost: float = 0.0
    lines_modified: list[int] = field(default_factory=list)
    verified: bool | None = None
    restored: bool = False
    error: BaseException | None = None
    error_kind: ErrorKind | None = None

    @property
    def issue_ids(self) -> list[str]:
        return [i.id for i in self.issues]

    @property
    def succeeded(self) -> bool:
        return self.status in (TransactionStatus.APPLIED, TransactionStatus.VERIFIED)

    async def execute(
        self,
        reviewer,
        *,
        project_path: Path,
        safe_patterns: Iterable[str],
        backups: BackupStore | None = None,
        verify: bool = True,
        on_progress: Callable[[int], Awaitable[None]] | None = None,
    ) -> FixTransaction:
        async def progress(percent: int) -> None:
            if on_progress is not None:
                await on_progress(percent)

        patterns = tuple(safe_patterns)
        subset = [i for i in self.issues if i.is_auto_fixable(patterns)]
        if not subset:
            logger.info("No auto-fixable issues in %s", self.file)
            self.status = TransactionStatus.FAILED
            return self

        target = Path(self.file)
        if not target.is_absolute():
            target = project_path / target

        # Without a backup store, verification still needs the original to roll back to.
        original: bytes | None = None
        try:
            if backups is not None:
                self.backup = backups.snapshot(target)
            elif verify:
                original = target.read_bytes()
        except OSError as e:
            logger.error("Skipping %s - backup failed: %s", self.file, e)
            self.error = e
            self.error_kind = ErrorKind.PARTIAL_CYCLE_FAILURE
            self.status = TransactionStatus.FAILED
            return self

        await progress(10)
        try:
            report = await reviewer.fix(self.file, subset)
            self.cost += report.cost
            self.lines_modified = list(report.lines_modified)

            if not report.fixed:
                logger.warning("No changes made to %s", self.file)
                self._discard(backups)
                self.status = TransactionStatus.FAILED
                return self

            if not verify:
                self._discard(backups)
                self.status = TransactionStatus.APPLIED
                await progress(100)
                return self

            await progress(50)
            logger.info("Verifying %s...", self.file)
            detection = await reviewer.detect([self.file])
            self.cost += detection.cost
            remaining = auto_fixable_for_file(detection.issues, self.file, patterns)

            if not remaining:
                self.verified = True
                self._discard(backups)
                self.status = TransactionStatus.VERIFIED
                await progress(100)
            else:
                logger.warning(
                    "Verification failed for %s (%d auto-fixable issue(s) remain), restoring...",
                    self.file, len(remaining),
                )
                self.verified = False
                self.error_kind = ErrorKind.VERIFICATION_FAILURE
                self._rollback(backups, target, original)
                self.status = (
                    TransactionStatus.ROLLEDBACK if self.restored else TransactionStatus.FAILED
                )
        except asyncio.CancelledError:
            self._rollback(backups, target, original)
            self.status = TransactionStatus.FAILED
            raise
        except Exception as e:
            logger.error("Fix failed for %s: %s", self.file, e)
            self.error = e
            self.error_kind = classify_error(e)
            self._rollback(backups, target, original)
            self.status = TransactionStatus.FAILED

        return self

    def _discard(self, backups: BackupStore | None) -> None:
        if backups is not None and self.backup is not None:
            backups.discard(self.backup)

    def _rollback(self, backups: BackupStore | None, target: Path, original: bytes | None) -> None:
        if original is not None:
            try:
                target.write_bytes(original)
                self.restored = True
            except OSError:
                logger.critical("Failed to restore %s", self.file, exc_info=True)
            return
        if backups is None or self.backup is None:
            logger.warning("No backup for %s; cannot restore original content", self.file)
            return
        try:
            backups.restore(self.backup)
            self.restored = True
        except OSError:
            logger.critical(
                "Failed to restore %s; original kept at %s",
                self.file, self.backup.path, exc_info=True,
            )
