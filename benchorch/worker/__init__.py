"""Worker side: runners executed behind the worker API."""

from .runner import BaseRunner, SimulatedRunner, load_runner
from .service import WorkerService, WorkerBusyError, StreamClaimedError
from .monitoring import SystemMonitor

__all__ = [
    "BaseRunner",
    "SimulatedRunner",
    "load_runner",
    "WorkerService",
    "WorkerBusyError",
    "StreamClaimedError",
    "SystemMonitor",
]
