"""benchorch: orchestrate benchmark suites across a pool of workers."""

__version__ = "0.1.0"
__author__ = "benchorch contributors"

from .core.jobs import BenchmarkJob, JobState
from .core.results import RunResult, RunStatus
from .core.scheduler import BenchmarkScheduler

__all__ = [
    "BenchmarkJob",
    "JobState",
    "RunResult",
    "RunStatus",
    "BenchmarkScheduler",
]
