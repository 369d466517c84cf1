"""epicswarm: dependency-aware dispatch of an epic's children to a bounded worker pool."""

from epicswarm.coordinator.epic_queue import EpicScheduler
from epicswarm.protocol.models import EpicChild, ExecutionSettings, LaunchResult, SpawnResult

__version__ = "0.1.0"

__all__ = [
    "EpicChild",
    "EpicScheduler",
    "ExecutionSettings",
    "LaunchResult",
    "SpawnResult",
    "__version__",
]
