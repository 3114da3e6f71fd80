"""Error taxonomy for the orchestration core."""

from typing import Any, Dict, Optional


class OrchestratorError(Exception):
    """Base class for all orchestration errors."""

    retryable = False

    def __init__(self, message: str, worker_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.worker_id = worker_id

    def to_detail(self) -> Dict[str, Any]:
        """Structured error detail carried by a failed RunResult."""
        detail = {
            'type': self.__class__.__name__,
            'message': self.message,
            'retryable': self.retryable,
        }
        if self.worker_id:
            detail['worker_id'] = self.worker_id
        return detail


class TransientError(OrchestratorError):
    """Failure expected to be recoverable by retrying on another attempt."""

    retryable = True


class SpawnError(TransientError):
    """Worker process or endpoint could not be created."""


class ConnectionLost(TransientError):
    """Transport channel to the worker failed mid-flight."""


class Unresponsive(TransientError):
    """Worker missed its health-check deadline."""


class NoCapacityError(OrchestratorError):
    """Worker pool is exhausted and backpressure mode is fail-fast."""


class ProtocolError(OrchestratorError):
    """Malformed or unexpected wire message from the worker."""


class BenchmarkError(OrchestratorError):
    """The benchmark itself reported a failure."""

    def __init__(self, message: str, worker_id: Optional[str] = None,
                 error_type: Optional[str] = None):
        super().__init__(message, worker_id)
        self.error_type = error_type

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        if self.error_type:
            detail['error_type'] = self.error_type
        return detail


class TerminateError(OrchestratorError):
    """Graceful worker shutdown failed; the worker was force-killed."""


class JobRejected(OrchestratorError, ValueError):
    """Job request could not be admitted."""


class InvalidTransition(OrchestratorError):
    """A job state transition not allowed by the state machine."""
