"""Collects the file set a run operates on."""

from __future__ import annotations

from pathlib import Path

from qawatch.core.config import QAWatchConfig


def collect_files(
    project_path: Path,
    config: QAWatchConfig,
    scope: str | None = None,
) -> list[str]:
    """Collect reviewable files as sorted POSIX paths relative to the project.

    ``scope`` narrows the search to a single directory or file and replaces
    the configured watch paths.
    """
    project_path = project_path.resolve()
    roots = [scope] if scope else config.watch_paths
    extensions = {e if e.startswith(".") else f".{e}" for e in config.extensions}
    found: set[str] = set()

    for root in roots:
        base = (project_path / root).resolve()
        if base.is_file():
            candidates = [base]
        elif base.is_dir():
            candidates = [p for p in base.rglob("*") if p.is_file()]
        else:
            continue

        for path in candidates:
            if path.suffix not in extensions:
                continue
            try:
                rel = path.relative_to(project_path).as_posix()
            except ValueError:
                rel = path.as_posix()
            if _is_excluded(rel, config.exclude):
                continue
            found.add(rel)

    return sorted(found)


def _is_excluded(rel: str, exclude: list[str]) -> bool:
    parts = f"/{rel}"
    for excl in exclude:
        fragment = excl.strip("/")
        if not fragment:
            continue
        if f"/{fragment}/" in parts or parts.endswith(f"/{fragment}"):
            return True
    return False
