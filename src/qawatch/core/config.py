"""Configuration management for qawatch (qawatch.toml parsing + defaults)."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

try:
    import tomllib
except ImportError:
    import tomli as tomllib  # type: ignore[no-redef]

from qawatch.core.models import DEFAULT_SAFE_PATTERNS

CONFIG_FILE_NAME = "qawatch.toml"


@dataclass
class LoopConfig:
    max_cycles: int = 10
    budget_warning: float = 5.00
    budget_hard: float = 20.00
    cycle_pause: float = 2.0


@dataclass
class FixConfig:
    backup_files: bool = True
    verify_after_fix: bool = True
    safe_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_SAFE_PATTERNS))


@dataclass
class ReviewerConfig:
    cli_path: str | None = None
    detect_timeout: float = 60.0
    fix_timeout: float = 90.0
    max_attempts: int = 3
    base_delay: float = 1.0
    detect_max_turns: int = 10
    fix_max_turns: int = 5
    detect_tools: str = "Read,Grep"
    fix_tools: str = "Read,Grep,Edit"


@dataclass
class DashboardConfig:
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 3000
    auto_open_browser: bool = True


@dataclass
class QAWatchConfig:
    """Complete qawatch configuration."""

    watch_paths: list[str] = field(
        default_factory=lambda: ["src", "components", "pages", "app", "lib", "utils"]
    )
    extensions: list[str] = field(
        default_factory=lambda: [".ts", ".tsx", ".js", ".jsx", ".mjs"]
    )
    exclude: list[str] = field(
        default_factory=lambda: [
            "node_modules/",
            ".git/",
            ".next/",
            "dist/",
            "build/",
            ".qawatch/",
        ]
    )
    loop: LoopConfig = field(default_factory=LoopConfig)
    fix: FixConfig = field(default_factory=FixConfig)
    reviewer: ReviewerConfig = field(default_factory=ReviewerConfig)
    dashboard: DashboardConfig = field(default_factory=DashboardConfig)


_SECTION_TYPES: dict[str, dict[str, tuple[type, ...]]] = {
    "loop": {
        "max_cycles": (int,),
        "budget_warning": (int, float),
        "budget_hard": (int, float),
        "cycle_pause": (int, float),
    },
    "fix": {
        "backup_files": (bool,),
        "verify_after_fix": (bool,),
        "safe_patterns": (list,),
    },
    "reviewer": {
        "cli_path": (str,),
        "detect_timeout": (int, float),
        "fix_timeout": (int, float),
        "max_attempts": (int,),
        "base_delay": (int, float),
        "detect_max_turns": (int,),
        "fix_max_turns": (int,),
        "detect_tools": (str,),
        "fix_tools": (str,),
    },
    "dashboard": {
        "enabled": (bool,),
        "host": (str,),
        "port": (int,),
        "auto_open_browser": (bool,),
    },
}


def validate_config(data: dict[str, Any]) -> list[str]:
    """Return a list of problems with raw qawatch.toml data (empty if valid)."""
    errors: list[str] = []

    general = data.get("general", {})
    if not isinstance(general, dict):
        errors.append("general must be a table")
        general = {}
    for key in ("watch_paths", "extensions", "exclude"):
        if key in general and not isinstance(general[key], list):
            errors.append(f"general.{key} must be an array")

    for section, fields in _SECTION_TYPES.items():
        if section not in data:
            continue
        values = data[section]
        if not isinstance(values, dict):
            errors.append(f"{section} must be a table")
            continue
        for key, types in fields.items():
            if key not in values:
                continue
            value = values[key]
            # bool is an int subclass; only accept it where bool is expected
            if isinstance(value, bool) and bool not in types:
                errors.append(f"{section}.{key} must be a {types[0].__name__}")
            elif not isinstance(value, types):
                errors.append(f"{section}.{key} must be a {types[0].__name__}")

    loop = data.get("loop", {})
    if isinstance(loop, dict):
        if isinstance(loop.get("max_cycles"), int) and loop["max_cycles"] < 1:
            errors.append("loop.max_cycles must be at least 1")
        warn, hard = loop.get("budget_warning"), loop.get("budget_hard")
        if isinstance(warn, (int, float)) and isinstance(hard, (int, float)) and warn > hard:
            errors.append("loop.budget_warning must not exceed loop.budget_hard")

    return errors


def load_config(project_path: Path | None = None) -> QAWatchConfig:
    """Load configuration from qawatch.toml if present, otherwise return defaults."""
    from qawatch.core.errors import ConfigError

    config = QAWatchConfig()

    if project_path is None:
        project_path = Path.cwd()

    config_file = project_path / CONFIG_FILE_NAME
    if not config_file.exists():
        return config

    with open(config_file, "rb") as f:
        try:
            data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError([f"{CONFIG_FILE_NAME}: {e}"]) from e

    problems = validate_config(data)
    if problems:
        raise ConfigError(problems)

    gen = data.get("general", {})
    for attr in ("watch_paths", "extensions", "exclude"):
        if attr in gen:
            setattr(config, attr, list(gen[attr]))

    for section in _SECTION_TYPES:
        target = getattr(config, section)
        for attr, value in data.get(section, {}).items():
            if attr in _SECTION_TYPES[section]:
                setattr(target, attr, value)

    return config


def get_qawatch_dir(project_path: Path | None = None) -> Path:
    """Get or create the .qawatch directory."""
    if project_path is None:
        project_path = Path.cwd()
    qawatch_dir = project_path / ".qawatch"
    qawatch_dir.mkdir(exist_ok=True)
    return qawatch_dir
