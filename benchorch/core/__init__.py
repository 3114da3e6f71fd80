"""Core components of the orchestrator."""

from .config import BackpressureMode, EndpointConfig, OrchestratorConfig, WorkerServerConfig, ConfigLoader
from .errors import (
    OrchestratorError,
    TransientError,
    SpawnError,
    ConnectionLost,
    Unresponsive,
    NoCapacityError,
    ProtocolError,
    BenchmarkError,
    TerminateError,
    JobRejected,
    InvalidTransition,
)
from .jobs import BenchmarkJob, JobRecord, JobState, ProgressEvent
from .handle import WorkerHandle, WorkerState, HealthStatus
from .transport import TransportClient, ExecutionStream
from .registry import WorkerRegistry
from .results import RunResult, RunStatus, ResultFilter, ResultStore, InMemoryResultStore, JsonlResultStore
from .scheduler import BenchmarkScheduler
from .suites import BenchmarkSuite, SuiteSpec, resolve_suite

__all__ = [
    "BackpressureMode",
    "EndpointConfig",
    "OrchestratorConfig",
    "WorkerServerConfig",
    "ConfigLoader",
    "OrchestratorError",
    "TransientError",
    "SpawnError",
    "ConnectionLost",
    "Unresponsive",
    "NoCapacityError",
    "ProtocolError",
    "BenchmarkError",
    "TerminateError",
    "JobRejected",
    "InvalidTransition",
    "BenchmarkJob",
    "JobRecord",
    "JobState",
    "ProgressEvent",
    "WorkerHandle",
    "WorkerState",
    "HealthStatus",
    "TransportClient",
    "ExecutionStream",
    "WorkerRegistry",
    "RunResult",
    "RunStatus",
    "ResultFilter",
    "ResultStore",
    "InMemoryResultStore",
    "JsonlResultStore",
    "BenchmarkScheduler",
    "BenchmarkSuite",
    "SuiteSpec",
    "resolve_suite",
]
