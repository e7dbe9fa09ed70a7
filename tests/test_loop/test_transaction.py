"""Tests for per-file fix transactions and the backup store."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path

import pytest

from qawatch.core.errors import ErrorKind
from qawatch.core.models import DEFAULT_SAFE_PATTERNS, Issue, Severity
from qawatch.loop.transaction import BackupStore, FixTransaction, TransactionStatus

SOURCE = (
    "const api = 'http://localhost:3000';\n"
    "console.log('debug');\n"
    "export default api;\n"
)


@pytest.fixture
def source(project: Path) -> Path:
    path = project / "src" / "a.ts"
    path.write_bytes(SOURCE.encode())
    return path


@pytest.fixture
def backups(project: Path) -> BackupStore:
    return BackupStore(project, session="test")


def _detect_issues(reviewer, file="src/a.ts"):
    return asyncio.run(reviewer.detect([file])).issues


def _execute(transaction, reviewer, project, backups, **kwargs):
    return asyncio.run(transaction.execute(
        reviewer,
        project_path=project,
        safe_patterns=DEFAULT_SAFE_PATTERNS,
        backups=backups,
        **kwargs,
    ))


class TestBackupStore:
    def test_snapshot_and_restore_are_byte_exact(self, project: Path, backups: BackupStore):
        path = project / "src" / "bin.ts"
        original = b"\xef\xbb\xbfline one\r\nline two\x00\n"
        path.write_bytes(original)

        backup = backups.snapshot(path)
        path.write_bytes(b"changed")
        backups.restore(backup)

        assert path.read_bytes() == original
        assert not backup.path.exists()

    def test_snapshot_writes_manifest(self, project: Path, backups: BackupStore, source: Path):
        backup = backups.snapshot(source)

        assert backup.path.parent == project / ".qawatch" / "backups" / "test"
        assert backups.pending() == [{
            "file": str(source),
            "backup": str(backup.path),
            "timestamp": backup.timestamp,
        }]

    def test_discard_clears_manifest(self, backups: BackupStore, source: Path):
        backup = backups.snapshot(source)
        backups.discard(backup)

        assert backups.pending() == []
        assert not backup.path.exists()

    def test_same_name_does_not_collide(self, project: Path, backups: BackupStore, source: Path):
        other = project / "lib" / "a.ts"
        other.parent.mkdir()
        other.write_text("other\n")

        first = backups.snapshot(source)
        second = backups.snapshot(other)

        assert first.path != second.path
        assert second.path.name == "a.ts.1.bak"

    def test_missing_file_raises(self, project: Path, backups: BackupStore):
        with pytest.raises(OSError):
            backups.snapshot(project / "src" / "missing.ts")


class TestFixTransaction:
    def test_verified_fix_commits(self, project, source, backups, fake_reviewer):
        reviewer = fake_reviewer(project)
        issues = _detect_issues(reviewer)

        tx = _execute(FixTransaction("src/a.ts", issues), reviewer, project, backups)

        assert tx.status is TransactionStatus.VERIFIED
        assert tx.verified is True
        assert tx.succeeded
        assert "console.log" not in source.read_text()
        assert "localhost" not in source.read_text()
        assert backups.pending() == []
        # fix + verification detect
        assert tx.cost == pytest.approx(0.03)

    def test_failed_verification_restores_original_bytes(self, project, source, backups, fake_reviewer):
        reviewer = fake_reviewer(project, mode="vandal")
        issues = _detect_issues(reviewer)

        tx = _execute(FixTransaction("src/a.ts", issues), reviewer, project, backups)

        assert tx.status is TransactionStatus.ROLLEDBACK
        assert tx.verified is False
        assert tx.restored is True
        assert tx.error_kind is ErrorKind.VERIFICATION_FAILURE
        assert source.read_bytes() == SOURCE.encode()
        assert backups.pending() == []

    def test_claimed_fix_without_change_is_rolled_back(self, project, source, backups, fake_reviewer):
        reviewer = fake_reviewer(project, mode="liar")
        issues = _detect_issues(reviewer)

        tx = _execute(FixTransaction("src/a.ts", issues), reviewer, project, backups)

        assert tx.status is TransactionStatus.ROLLEDBACK
        assert source.read_bytes() == SOURCE.encode()

    def test_without_verification_fix_is_applied(self, project, source, backups, fake_reviewer):
        reviewer = fake_reviewer(project, mode="liar")
        issues = _detect_issues(reviewer)

        tx = _execute(FixTransaction("src/a.ts", issues), reviewer, project, backups, verify=False)

        assert tx.status is TransactionStatus.APPLIED
        assert tx.verified is None
        assert len(reviewer.detect_calls) == 1

    def test_declined_fix_fails_without_restore(self, project, source, backups, fake_reviewer):
        reviewer = fake_reviewer(project, mode="decline")
        issues = _detect_issues(reviewer)

        tx = _execute(FixTransaction("src/a.ts", issues), reviewer, project, backups)

        assert tx.status is TransactionStatus.FAILED
        assert tx.restored is False
        assert source.read_bytes() == SOURCE.encode()
        assert backups.pending() == []

    def test_no_auto_fixable_issues_skips_reviewer(self, project, backups, fake_reviewer):
        path = project / "src" / "keys.ts"
        path.write_text("const key = 'sk_live_abc';\n")
        reviewer = fake_reviewer(project)
        issues = _detect_issues(reviewer, "src/keys.ts")

        tx = _execute(FixTransaction("src/keys.ts", issues), reviewer, project, backups)

        assert tx.status is TransactionStatus.FAILED
        assert tx.backup is None
        assert reviewer.fix_calls == []
        assert path.read_text() == "const key = 'sk_live_abc';\n"

    def test_only_auto_fixable_subset_is_sent(self, project, backups, fake_reviewer):
        path = project / "src" / "mixed.ts"
        path.write_text("const key = 'sk_live_abc';\nconsole.log(key);\n")
        reviewer = fake_reviewer(project)
        issues = _detect_issues(reviewer, "src/mixed.ts")

        _execute(FixTransaction("src/mixed.ts", issues), reviewer, project, backups)

        assert reviewer.fix_calls == [("src/mixed.ts", ["src/mixed.ts:2"])]

    def test_reviewer_exception_restores_and_classifies(self, project, source, backups, fake_reviewer):
        reviewer = fake_reviewer(project, fix_errors={"src/a.ts": RuntimeError("401 Unauthorized")})
        issues = _detect_issues(reviewer)

        tx = _execute(FixTransaction("src/a.ts", issues), reviewer, project, backups)

        assert tx.status is TransactionStatus.FAILED
        assert tx.error_kind is ErrorKind.FATAL
        assert tx.restored is True
        assert source.read_bytes() == SOURCE.encode()

    def test_backup_failure_skips_file(self, project, backups, fake_reviewer):
        reviewer = fake_reviewer(project)
        issue = Issue(file="src/gone.ts", line=1, severity=Severity.MEDIUM, type="console-log")

        tx = _execute(FixTransaction("src/gone.ts", [issue]), reviewer, project, backups)

        assert tx.status is TransactionStatus.FAILED
        assert tx.error_kind is ErrorKind.PARTIAL_CYCLE_FAILURE
        assert reviewer.fix_calls == []

    def test_progress_callbacks(self, project, source, backups, fake_reviewer):
        reviewer = fake_reviewer(project)
        issues = _detect_issues(reviewer)
        seen = []

        async def on_progress(percent):
            seen.append(percent)

        _execute(FixTransaction("src/a.ts", issues), reviewer, project, backups, on_progress=on_progress)

        assert seen == [10, 50, 100]

    def test_rollback_is_idempotent_across_runs(self, project, source, backups, fake_reviewer):
        reviewer = fake_reviewer(project, mode="vandal")
        issues = _detect_issues(reviewer)

        for _ in range(2):
            _execute(FixTransaction("src/a.ts", issues), reviewer, project, backups)

        assert source.read_bytes() == SOURCE.encode()
        assert os.listdir(backups.session_dir) == ["manifest.json"]


class TestWithoutBackupStore:
    def test_failed_verification_restores_from_memory(self, project, source, fake_reviewer):
        reviewer = fake_reviewer(project, mode="vandal")
        issues = _detect_issues(reviewer)

        tx = _execute(FixTransaction("src/a.ts", issues), reviewer, project, None)

        assert tx.status is TransactionStatus.ROLLEDBACK
        assert tx.restored is True
        assert tx.backup is None
        assert source.read_bytes() == SOURCE.encode()
        assert not (project / ".qawatch" / "backups").exists()

    def test_reviewer_exception_restores_from_memory(self, project, source, fake_reviewer):
        class Scribbler(fake_reviewer):
            async def fix(self, file, issues):
                (self.root / file).write_text("half written")
                raise ConnectionResetError("connection reset")

        reviewer = Scribbler(project)
        issues = _detect_issues(reviewer)

        tx = _execute(FixTransaction("src/a.ts", issues), reviewer, project, None)

        assert tx.status is TransactionStatus.FAILED
        assert tx.restored is True
        assert source.read_bytes() == SOURCE.encode()

    def test_unverified_fix_is_applied(self, project, source, fake_reviewer):
        reviewer = fake_reviewer(project)
        issues = _detect_issues(reviewer)

        tx = _execute(FixTransaction("src/a.ts", issues), reviewer, project, None, verify=False)

        assert tx.status is TransactionStatus.APPLIED
        assert tx.restored is False
        assert "console.log" not in source.read_text()
