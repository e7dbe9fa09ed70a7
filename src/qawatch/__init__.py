"""qawatch: autonomous fix-until-clean loop for production readiness issues."""

from qawatch._version import __version__
from qawatch.core.config import QAWatchConfig, load_config
from qawatch.loop.controller import CycleController, RunOutcome
from qawatch.state.broadcaster import EventBroadcaster

__all__ = [
    "__version__",
    "QAWatchConfig",
    "load_config",
    "CycleController",
    "RunOutcome",
    "EventBroadcaster",
]
