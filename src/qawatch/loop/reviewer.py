"""External reviewer boundary and the Claude Code CLI adapter.

The reviewer is the only component that understands code. qawatch treats it
as an untrusted remote capability: it may fail, time out, return malformed
JSON or claim a fix it did not make. Verification and rollback live in
``qawatch.loop.transaction``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import time
from pathlib import Path
from typing import Any, Protocol, Sequence

from qawatch.core.config import ReviewerConfig
from qawatch.core.errors import ReviewerError, ReviewerNotFound
from qawatch.core.models import DetectionResult, FixReport, Issue

logger = logging.getLogger(__name__)


class Reviewer(Protocol):
    """Black-box detect/fix capability. Both calls are safe to retry."""

    async def detect(self, files: Sequence[str]) -> DetectionResult: ...

    async def fix(self, file: str, issues: Sequence[Issue]) -> FixReport: ...


DETECT_PROMPT = """Review file {files} for production issues:
- Hardcoded localhost URLs (http://localhost:*, http://127.0.0.1:*)
- API keys (sk_, pk_, whsec_, ghp_, aws secret keys)
- Database credentials in connection strings
- console.log statements
- debugger statements
- Disabled security settings (csrf:false, secure:false)

Return JSON only (no markdown):
{{
  "issues": [{{
    "file": "path.tsx",
    "line": 42,
    "severity": "critical|high|medium|low",
    "type": "hardcoded-localhost|api-key|console-log|debugger-statement|security-disabled",
    "message": "description of issue",
    "current": "the problematic code",
    "fix": "the replacement code or 'remove'",
    "autoFixable": true or false
  }}],
  "totalIssues": N,
  "criticalIssues": N,
  "autoFixableCount": N
}}

Mark as autoFixable=true ONLY for:
- hardcoded-localhost (replace with process.env.NEXT_PUBLIC_APP_URL)
- console-log (remove the line)
- debugger-statement (remove the line)

Mark as autoFixable=false for API keys, credentials and security configs (need user review)."""

FIX_PROMPT = """Fix these issues in file {file}:
{descriptions}

Instructions:
1. Read the file first
2. For each issue, use the Edit tool to apply the fix
3. For "remove" fixes, delete the entire line
4. For replacement fixes, replace the exact string

Return JSON only (no markdown):
{{
  "file": "{file}",
  "fixed": true,
  "linesModified": [list of line numbers],
  "changes": [{{"line": N, "before": "old", "after": "new"}}],
  "envVarsNeeded": ["ENV_VAR_NAME"]
}}"""


def find_claude_cli(configured: str | None = None) -> str | None:
    """Locate the claude executable: env var, then config, then PATH."""
    for candidate in (
        os.environ.get("QAWATCH_CLAUDE_PATH"),
        os.environ.get("CLAUDE_CLI_PATH"),
        configured,
    ):
        if candidate and Path(candidate).exists():
            return candidate
        if candidate:
            logger.warning("Claude CLI path set but file not found: %s", candidate)

    found = shutil.which("claude")
    if found:
        return found

    for path in (
        Path.home() / ".local" / "bin" / "claude",
        Path("/usr/local/bin/claude"),
        Path("/opt/homebrew/bin/claude"),
    ):
        if path.exists():
            return str(path)
    return None


def strip_code_fence(text: str) -> str:
    """Remove a surrounding ```json ... ``` fence if present."""
    text = text.strip()
    if not text.startswith("```"):
        return text
    first_newline = text.find("\n")
    body = text[first_newline + 1:] if first_newline != -1 else ""
    if body.rstrip().endswith("```"):
        body = body.rstrip()[:-3]
    return body.strip()


def parse_envelope(stdout: str) -> tuple[dict[str, Any] | None, float]:
    """Parse the CLI's ``--output-format json`` envelope.

    Returns the inner JSON payload (``None`` when it is not valid JSON) and
    the reported cost. A malformed envelope raises ``ReviewerError``.
    """
    try:
        outer = json.loads(stdout.strip())
    except json.JSONDecodeError as e:
        raise ReviewerError(f"Unparseable reviewer output: {e}") from e
    if not isinstance(outer, dict):
        raise ReviewerError("Unexpected reviewer output shape")

    cost = float(outer.get("total_cost_usd") or 0.0)
    inner_text = strip_code_fence(str(outer.get("result") or ""))
    try:
        inner = json.loads(inner_text)
    except json.JSONDecodeError:
        logger.debug("Reviewer result is not JSON: %.200s", inner_text)
        return None, cost
    return (inner if isinstance(inner, dict) else None), cost


def _describe(issue: Issue) -> str:
    current = issue.current_snippet or f"hardcoded value on line {issue.line}"
    replacement = issue.suggested_fix or "process.env.NEXT_PUBLIC_APP_URL"
    return f'Line {issue.line}: {issue.type} - Replace "{current}" with "{replacement}"'


class ClaudeCLIReviewer:
    """Runs the Claude Code CLI in headless mode as the external reviewer."""

    def __init__(self, config: ReviewerConfig | None = None, cwd: Path | None = None):
        self.config = config or ReviewerConfig()
        self.cwd = cwd or Path.cwd()
        self.cli_path = find_claude_cli(self.config.cli_path)

    async def detect(self, files: Sequence[str]) -> DetectionResult:
        prompt = DETECT_PROMPT.format(files=", ".join(files))
        started = time.monotonic()
        stdout = await self._run(
            prompt, self.config.detect_tools, self.config.detect_max_turns
        )
        payload, cost = parse_envelope(stdout)
        issues = [
            Issue.from_dict(raw)
            for raw in (payload or {}).get("issues", [])
            if isinstance(raw, dict)
        ]
        return DetectionResult(issues=issues, cost=cost, duration=time.monotonic() - started)

    async def fix(self, file: str, issues: Sequence[Issue]) -> FixReport:
        if not issues:
            return FixReport(fixed=False)

        descriptions = "\n".join(_describe(i) for i in issues)
        prompt = FIX_PROMPT.format(file=file, descriptions=descriptions)
        logger.info("Applying fixes to %s...", file)
        stdout = await self._run(prompt, self.config.fix_tools, self.config.fix_max_turns)
        payload, cost = parse_envelope(stdout)
        if payload is None:
            return FixReport(fixed=False, cost=cost)
        return FixReport(
            fixed=bool(payload.get("fixed")),
            lines_modified=[int(n) for n in payload.get("linesModified", []) if isinstance(n, int)],
            cost=cost,
            env_vars_needed=[str(v) for v in payload.get("envVarsNeeded", [])],
        )

    async def _run(self, prompt: str, allowed_tools: str, max_turns: int) -> str:
        if not self.cli_path:
            raise ReviewerNotFound(self.cli_path)

        try:
            proc = await asyncio.create_subprocess_exec(
                self.cli_path,
                "-p", prompt,
                "--output-format", "json",
                "--max-turns", str(max_turns),
                "--allowedTools", allowed_tools,
                cwd=str(self.cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise ReviewerNotFound(self.cli_path) from e

        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            # Timeout or shutdown: don't leave the CLI running.
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise

        if proc.returncode != 0:
            detail = stderr.decode(errors="replace").strip()[:200]
            raise ReviewerError(
                f"Reviewer exited with code {proc.returncode}" + (f": {detail}" if detail else "")
            )
        return stdout.decode(errors="replace")
