"""Benchmark jobs and their lifecycle state machine."""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import InvalidTransition


class JobState(str, Enum):
    """Lifecycle states of a benchmark job."""
    PENDING = "pending"
    ASSIGNED = "assigned"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED})

# Transitions back to PENDING open a new attempt.
ALLOWED_TRANSITIONS: Dict[JobState, frozenset] = {
    JobState.PENDING: frozenset({JobState.ASSIGNED, JobState.FAILED, JobState.CANCELLED}),
    JobState.ASSIGNED: frozenset({JobState.RUNNING, JobState.PENDING, JobState.FAILED, JobState.CANCELLED}),
    JobState.RUNNING: frozenset({JobState.SUCCEEDED, JobState.FAILED, JobState.PENDING, JobState.CANCELLED}),
    JobState.SUCCEEDED: frozenset(),
    JobState.FAILED: frozenset(),
    JobState.CANCELLED: frozenset(),
}


def _new_job_id() -> str:
    return f"job-{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class BenchmarkJob:
    """A request to run one benchmark suite against one target model."""
    benchmark: str
    model: str
    parameters: Mapping[str, Any] = field(default_factory=dict)
    job_id: str = field(default_factory=_new_job_id)
    created_at: float = field(default_factory=time.time)

    def __post_init__(self):
        object.__setattr__(self, 'parameters', MappingProxyType(dict(self.parameters)))

    def with_parameters(self, parameters: Mapping[str, Any]) -> "BenchmarkJob":
        """Copy of this job with a new parameter mapping and the same id."""
        return BenchmarkJob(
            benchmark=self.benchmark,
            model=self.model,
            parameters=parameters,
            job_id=self.job_id,
            created_at=self.created_at,
        )

    def to_spec(self) -> Dict[str, Any]:
        """Wire representation sent to a worker's ``start`` RPC."""
        return {
            "job_id": self.job_id,
            "benchmark": self.benchmark,
            "model": self.model,
            "parameters": dict(self.parameters),
        }


@dataclass(frozen=True)
class ProgressEvent:
    """One progress notification streamed back from a running job."""
    job_id: str
    seq: int
    kind: str  # 'started', 'progress' or 'log'
    progress: Optional[float] = None
    message: str = ""
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


@dataclass
class Transition:
    """A recorded state change."""
    from_state: JobState
    to_state: JobState
    attempt: int
    timestamp: float
    reason: str = ""


class JobRecord:
    """Mutable scheduler-side bookkeeping for one job.

    Enforces the lifecycle state machine and keeps the full history of
    transitions so every change can be audited.
    """

    def __init__(self, job: BenchmarkJob):
        self.job = job
        self.state = JobState.PENDING
        self.attempts = 0
        self.history: List[Transition] = []
        self.worker_id: Optional[str] = None
        self.events: List[ProgressEvent] = []
        self.result = None
        self.last_error: Optional[Dict[str, Any]] = None

    @property
    def job_id(self) -> str:
        return self.job.job_id

    @property
    def is_done(self) -> bool:
        return self.state.is_terminal

    def transition(self, new_state: JobState, reason: str = "") -> None:
        """Move to ``new_state`` or raise :class:`InvalidTransition`."""
        if new_state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransition(
                f"Job {self.job_id}: {self.state.value} -> {new_state.value} is not allowed"
            )
        self.history.append(Transition(
            from_state=self.state,
            to_state=new_state,
            attempt=self.attempts,
            timestamp=time.time(),
            reason=reason,
        ))
        self.state = new_state

    def path(self) -> List[Tuple[str, str]]:
        """Compact view of the transition history."""
        return [(t.from_state.value, t.to_state.value) for t in self.history]

    def __repr__(self) -> str:
        return f"JobRecord({self.job_id}, {self.job.benchmark}, state={self.state.value}, attempts={self.attempts})"
