"""Worker-side job execution: one benchmark at a time, streamed as events."""

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Mapping, Optional

from ..core.config import WorkerServerConfig
from ..core.errors import BenchmarkError, JobRejected
from ..core.jobs import BenchmarkJob
from ..core.results import RunStatus
from ..core.suites import BenchmarkSuite
from ..utils.logging import LoggerMixin
from .monitoring import SystemMonitor
from .runner import BaseRunner, SimulatedRunner, load_runner

# Finished executions kept around so late event readers can still drain them
MAX_RETAINED_EXECUTIONS = 16


class WorkerBusyError(RuntimeError):
    """The worker is already running a job."""


class StreamClaimedError(RuntimeError):
    """The event stream of a job has already been handed out."""


@dataclass
class JobExecution:
    """Worker-side state of one job."""
    job: BenchmarkJob
    runner: BaseRunner
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    task: Optional[asyncio.Task] = None
    seq: int = 0
    streamed: bool = False
    finished: bool = False
    started_at: float = field(default_factory=time.time)

    def push(self, event: Dict[str, Any]) -> None:
        self.seq += 1
        event['seq'] = self.seq
        event.setdefault('timestamp', time.time())
        self.queue.put_nowait(event)

    def finish(self, status: RunStatus, metrics: Optional[Dict[str, Any]] = None,
               error: Optional[Dict[str, Any]] = None) -> None:
        """Push the terminal result event, once."""
        if self.finished:
            return
        self.finished = True
        self.push({
            'type': 'result',
            'status': status.value,
            'metrics': metrics or {},
            'error': error,
            'started_at': self.started_at,
            'finished_at': time.time(),
        })


class WorkerService(LoggerMixin):
    """Runs benchmark jobs on behalf of the orchestrator.

    Exactly one job runs at a time. Its events are buffered in a queue and
    can be streamed once; the last event is always a ``result`` event.
    """

    def __init__(self, worker_id: str, runners: Mapping[str, BaseRunner],
                 monitor: Optional[SystemMonitor] = None, stop_timeout: float = 5.0):
        super().__init__()
        self.worker_id = worker_id
        self.runners: Dict[str, BaseRunner] = dict(runners)
        self.monitor = monitor or SystemMonitor()
        self.stop_timeout = stop_timeout
        self._executions: "OrderedDict[str, JobExecution]" = OrderedDict()
        self._current: Optional[JobExecution] = None
        self.completed_jobs = 0

    @classmethod
    def from_config(cls, config: WorkerServerConfig) -> "WorkerService":
        """Build runners from a worker configuration.

        With ``simulate`` set, every suite is served by :class:`SimulatedRunner`.
        """
        runners: Dict[str, BaseRunner] = {}
        if config.simulate:
            for suite in BenchmarkSuite:
                runners[suite.value] = SimulatedRunner(config.worker_id, suite=suite.value)
        for suite_name, path in config.runners.items():
            runner_cls = load_runner(path)
            runners[BenchmarkSuite(suite_name).value] = runner_cls(config.worker_id)
        if not runners:
            raise ValueError(f"Worker {config.worker_id} has no runners configured")
        return cls(config.worker_id, runners)

    @property
    def capabilities(self):
        return sorted(self.runners)

    @property
    def busy(self) -> bool:
        current = self._current
        return current is not None and current.task is not None and not current.task.done()

    async def start(self) -> None:
        """Start the worker."""
        self.logger.info(f"Worker {self.worker_id} starting with runners: {', '.join(self.capabilities)}")
        self.monitor.start()

    async def stop(self) -> None:
        """Stop the worker, aborting any running job."""
        self.logger.info(f"Worker {self.worker_id} stopping")
        if self.busy:
            await self.stop_job(self._current.job.job_id)
        self.monitor.stop()

    def health(self) -> Dict[str, Any]:
        """Health report served on ``/health``."""
        return {
            'worker_id': self.worker_id,
            'status': 'healthy',
            'busy': self.busy,
            'current_job': self._current.job.job_id if self.busy else None,
            'capabilities': self.capabilities,
            'completed_jobs': self.completed_jobs,
            'system_stats': self.monitor.snapshot(),
        }

    def submit(self, spec: Mapping[str, Any]) -> Dict[str, Any]:
        """Start a job described by a wire job spec.

        Raises:
            WorkerBusyError: another job is running.
            JobRejected: the suite is not served here or the job spec is invalid.
        """
        if self.busy:
            raise WorkerBusyError(f"Worker {self.worker_id} is busy with job {self._current.job.job_id}")

        try:
            job = BenchmarkJob(
                benchmark=spec['benchmark'],
                model=spec['model'],
                parameters=spec.get('parameters') or {},
                job_id=spec['job_id'],
            )
        except KeyError as e:
            raise JobRejected(f"Job spec is missing {e.args[0]!r}") from None

        runner = self.runners.get(job.benchmark)
        if runner is None:
            raise JobRejected(f"Worker {self.worker_id} does not serve suite '{job.benchmark}'")
        previous = self._executions.pop(job.job_id, None)
        if previous is not None:
            self.logger.info(f"Re-running job {job.job_id}, discarding its previous execution")

        execution = JobExecution(job=job, runner=runner)
        self._remember(execution)
        self._current = execution
        execution.task = asyncio.ensure_future(self._run(execution))
        self.logger.info(f"Started job {job.job_id}: {job.benchmark} on {job.model}")
        return {'job_id': job.job_id, 'status': 'started'}

    def claim_events(self, job_id: str) -> AsyncIterator[Dict[str, Any]]:
        """Hand out the event stream of a job, once.

        Raises:
            KeyError: unknown job.
            StreamClaimedError: the stream was already claimed.
        """
        execution = self._executions[job_id]
        if execution.streamed:
            raise StreamClaimedError(f"Events of job {job_id} are already being streamed")
        execution.streamed = True
        return self._drain(execution)

    async def stop_job(self, job_id: str, timeout: Optional[float] = None) -> Dict[str, Any]:
        """Abort a job. Stopping a finished job only acknowledges it.

        Answers ``stopping`` when the runner has not wound down within
        ``timeout`` (default ``stop_timeout``) seconds.

        Raises:
            KeyError: unknown job.
        """
        execution = self._executions[job_id]
        task = execution.task
        if task is not None and not task.done():
            self.logger.info(f"Stopping job {job_id}")
            task.cancel()
            await asyncio.wait({task}, timeout=self.stop_timeout if timeout is None else timeout)

        if task is not None and not task.done():
            return {'job_id': job_id, 'status': 'stopping'}
        execution.finish(RunStatus.CANCELLED)
        return {'job_id': job_id, 'status': 'stopped'}

    async def _run(self, execution: JobExecution) -> None:
        job = execution.job

        async def emit(progress: Optional[float] = None, message: str = "",
                       data: Optional[Dict[str, Any]] = None, kind: str = "progress") -> None:
            execution.push({
                'type': kind,
                'progress': progress,
                'message': message,
                'data': data or {},
            })

        try:
            metrics = await execution.runner.execute(job, emit)
        except asyncio.CancelledError:
            self.logger.info(f"Job {job.job_id} cancelled")
            execution.finish(RunStatus.CANCELLED)
            raise
        except BenchmarkError as e:
            self.logger.error(f"Job {job.job_id} failed: {e}")
            execution.finish(RunStatus.FAILURE, error={
                'type': e.error_type or type(e).__name__,
                'message': e.message,
                'retryable': False,
            })
        except Exception as e:
            self.logger.exception(f"Runner for job {job.job_id} crashed: {e}")
            execution.finish(RunStatus.FAILURE, error={
                'type': type(e).__name__,
                'message': str(e),
                'retryable': False,
            })
        else:
            usage = self.monitor.get_stats(since=execution.started_at)
            if usage:
                await emit(message="resource usage", data={'system_stats': usage}, kind="log")
            execution.finish(RunStatus.SUCCESS, metrics=dict(metrics or {}))
            self.logger.info(f"Job {job.job_id} completed")
        finally:
            self.completed_jobs += 1

    async def _drain(self, execution: JobExecution) -> AsyncIterator[Dict[str, Any]]:
        while True:
            event = await execution.queue.get()
            yield event
            if event['type'] == 'result':
                return

    def _remember(self, execution: JobExecution) -> None:
        self._executions[execution.job.job_id] = execution
        while len(self._executions) > MAX_RETAINED_EXECUTIONS:
            self._executions.popitem(last=False)
