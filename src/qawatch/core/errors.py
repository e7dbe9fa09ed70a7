"""Error taxonomy, classification and the persistent error log."""

from __future__ import annotations

import asyncio
import enum
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from qawatch.core.config import get_qawatch_dir

logger = logging.getLogger(__name__)

ERROR_LOG_FILE = "errors.log"

# Message fragments that mark an error as not worth retrying.
FATAL_SIGNATURES = (
    "not found",
    "permission denied",
    "invalid",
    "authentication",
    "unauthorized",
    "401",
    "403",
)


class ErrorKind(enum.Enum):
    FATAL = "fatal"
    TRANSIENT = "transient"
    VERIFICATION_FAILURE = "verification_failure"
    PARTIAL_CYCLE_FAILURE = "partial_cycle_failure"


class QAWatchError(Exception):
    """Base class for qawatch errors."""


class ConfigError(QAWatchError):
    """Raised when qawatch.toml is malformed."""

    def __init__(self, problems: list[str]):
        self.problems = problems
        super().__init__("Invalid configuration: " + "; ".join(problems))


class ReviewerError(QAWatchError):
    """An external reviewer call failed.

    ``kind`` is ``None`` when the caller should classify by message.
    """

    def __init__(self, message: str, kind: ErrorKind | None = None):
        super().__init__(message)
        self.kind = kind


class ReviewerTimeout(ReviewerError):
    def __init__(self, action: str, seconds: float):
        super().__init__(f"{action} timed out after {seconds:g}s", ErrorKind.TRANSIENT)
        self.action = action
        self.seconds = seconds


class ReviewerNotFound(ReviewerError):
    def __init__(self, path: str | None):
        super().__init__(f"Reviewer CLI not found: {path or '<unset>'}", ErrorKind.FATAL)
        self.path = path


def classify_error(error: BaseException) -> ErrorKind:
    """Classify an error as fatal or transient."""
    if isinstance(error, ReviewerError) and error.kind is not None:
        return error.kind
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return ErrorKind.TRANSIENT
    if isinstance(error, (FileNotFoundError, PermissionError)):
        return ErrorKind.FATAL
    msg = str(error).lower()
    if any(sig in msg for sig in FATAL_SIGNATURES):
        return ErrorKind.FATAL
    return ErrorKind.TRANSIENT


def is_fatal(error: BaseException) -> bool:
    return classify_error(error) is ErrorKind.FATAL


def format_user_error(error: BaseException) -> tuple[str, str | None]:
    """Return a friendly ``(message, help)`` pair for terminal output."""
    msg = str(error).lower()

    if isinstance(error, ReviewerNotFound) or "enoent" in msg or "spawn" in msg:
        return (
            str(error),
            "Install Claude Code from https://claude.ai/download or set QAWATCH_CLAUDE_PATH",
        )
    if "rate limit" in msg or "429" in msg or "too many" in msg:
        return (
            "Reviewer rate limit exceeded",
            "Wait a few minutes before retrying, or reduce review frequency",
        )
    if "auth" in msg or "401" in msg or "403" in msg or "unauthorized" in msg:
        return (
            "Reviewer authentication failed",
            "Check your API key or re-authenticate with: claude auth",
        )
    if isinstance(error, ConnectionError) or any(
        s in msg for s in ("network", "econnrefused", "econnreset", "etimedout")
    ):
        return (
            "Network error connecting to the reviewer",
            "Check your internet connection and try again",
        )
    if isinstance(error, (ReviewerTimeout, asyncio.TimeoutError)) or "timed out" in msg:
        return (
            "Reviewer request timed out",
            "The request took too long. Try again or reduce the file count",
        )
    if isinstance(error, PermissionError) or "permission" in msg or "eacces" in msg:
        return (f"Permission denied: {getattr(error, 'filename', None) or 'file operation'}",
                "Check file/directory permissions")
    return str(error), None


class ErrorLog:
    """Append-only JSON-lines error log at ``.qawatch/errors.log``."""

    def __init__(self, project_path: Path | None = None):
        self.path = get_qawatch_dir(project_path) / ERROR_LOG_FILE

    def record(self, error: BaseException, context: dict[str, Any] | None = None) -> dict[str, Any]:
        message, _ = format_user_error(error)
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "message": message,
            "original_error": str(error),
            "kind": classify_error(error).value,
            "context": context or {},
        }
        try:
            with open(self.path, "a", encoding="utf-8") as fh:
                fh.write(json.dumps(entry, default=str) + "\n")
        except OSError:
            logger.debug("Could not write to %s", self.path, exc_info=True)
        return entry

    def read(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        entries = []
        for line in self.path.read_text(encoding="utf-8").splitlines():
            line = line.strip()
            if line:
                entries.append(json.loads(line))
        return entries
