"""Job scheduler: drives benchmark jobs through their lifecycle on pooled workers."""

import asyncio
import time
from dataclasses import replace
from typing import Callable, Dict, List, Optional

from .config import OrchestratorConfig
from .errors import (
    BenchmarkError,
    ConnectionLost,
    JobRejected,
    NoCapacityError,
    ProtocolError,
    TransientError,
    Unresponsive,
)
from .handle import HealthStatus, WorkerHandle
from .jobs import BenchmarkJob, JobRecord, JobState, ProgressEvent
from .registry import WorkerRegistry
from .results import InMemoryResultStore, JsonlResultStore, ResultStore, RunResult, RunStatus
from .suites import SuiteSpec, resolve_suite
from .transport import ExecutionStream, TransportClient
from ..utils.logging import LoggerMixin

EventCallback = Callable[[ProgressEvent], None]


class BenchmarkScheduler(LoggerMixin):
    """Runs benchmark jobs concurrently on workers borrowed from a registry.

    Every admitted job ends in exactly one terminal state and exactly one
    RunResult is appended to the result store for it. Transient failures
    (spawn errors, lost connections, unresponsive workers) are retried up
    to ``max_retries`` times; anything else fails the job immediately.
    """

    def __init__(
        self,
        registry: WorkerRegistry,
        transport: TransportClient,
        result_store: Optional[ResultStore] = None,
        max_retries: int = 3,
        retry_backoff: float = 1.0,
        health_check_interval: float = 5.0,
        health_check_timeout: float = 15.0,
        ping_timeout: float = 2.0,
        cancel_grace: float = 10.0,
        on_event: Optional[EventCallback] = None,
    ):
        super().__init__()
        self.registry = registry
        self.transport = transport
        self.result_store = result_store or InMemoryResultStore()
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.health_check_interval = health_check_interval
        self.health_check_timeout = health_check_timeout
        self.ping_timeout = ping_timeout
        self.cancel_grace = cancel_grace
        self.on_event = on_event

        self._records: Dict[str, JobRecord] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._cancel_events: Dict[str, asyncio.Event] = {}
        self._accepting = True
        self._owns_transport = False

    @classmethod
    def from_config(
        cls,
        config: OrchestratorConfig,
        transport: Optional[TransportClient] = None,
        result_store: Optional[ResultStore] = None,
        spawner=None,
        on_event: Optional[EventCallback] = None,
    ) -> "BenchmarkScheduler":
        """Build a scheduler together with its registry, transport and store."""
        owns_transport = transport is None
        transport = transport or TransportClient(request_timeout=config.request_timeout)
        if result_store is None:
            result_store = JsonlResultStore(config.results_path) if config.results_path else InMemoryResultStore()

        scheduler = cls(
            registry=WorkerRegistry.from_config(config, transport, spawner=spawner),
            transport=transport,
            result_store=result_store,
            max_retries=config.max_retries,
            retry_backoff=config.retry_backoff,
            health_check_interval=config.health_check_interval,
            health_check_timeout=config.health_check_timeout,
            ping_timeout=config.ping_timeout,
            cancel_grace=config.cancel_grace_timeout,
            on_event=on_event,
        )
        scheduler._owns_transport = owns_transport
        return scheduler

    async def __aenter__(self):
        await self.registry.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.shutdown()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def admit(self, job: BenchmarkJob) -> BenchmarkJob:
        """Validate a job and fill in suite defaults.

        Raises:
            JobRejected: unknown suite, missing parameters or duplicate id.
        """
        if not self._accepting:
            raise JobRejected("Scheduler is shutting down")
        if not job.model:
            raise JobRejected("Job has no target model")

        suite = resolve_suite(job.benchmark)
        if self.result_store.get(job.job_id) is not None:
            raise JobRejected(f"Job {job.job_id} already has a recorded result")
        return job.with_parameters(suite.prepare(job.parameters))

    def submit(self, job: BenchmarkJob) -> JobRecord:
        """Admit a job and start driving it in the background.

        A job whose previous run stopped at ``NoCapacityError`` is still
        Pending and may be submitted again.
        """
        existing = self._records.get(job.job_id)
        if existing is not None:
            task = self._tasks.get(job.job_id)
            if existing.state != JobState.PENDING or task is None or not task.done():
                raise JobRejected(f"Job {job.job_id} is already scheduled")
            record = existing
        else:
            record = JobRecord(self.admit(job))
            self._records[job.job_id] = record
            self._cancel_events[job.job_id] = asyncio.Event()

        self.logger.info(f"Submitted job {record.job_id}: {record.job.benchmark} on {record.job.model}")
        self._tasks[job.job_id] = asyncio.ensure_future(self._drive(record))
        return record

    async def run(self, job: BenchmarkJob) -> RunResult:
        """Submit a job and wait for its result."""
        record = self.submit(job)
        return await self.wait(record.job_id)

    async def run_many(self, jobs: List[BenchmarkJob]) -> List[RunResult]:
        """Run several jobs concurrently, results in submission order."""
        records = [self.submit(job) for job in jobs]
        return list(await asyncio.gather(*(self.wait(r.job_id) for r in records)))

    async def wait(self, job_id: str) -> RunResult:
        """Wait for a job to settle.

        Raises:
            KeyError: the job is unknown.
            NoCapacityError: the pool was exhausted in fail-fast mode and
                the job is still Pending.
        """
        task = self._tasks.get(job_id)
        if task is None:
            raise KeyError(f"Unknown job {job_id}")
        return await asyncio.shield(task)

    async def cancel(self, job_id: str, wait: bool = True) -> bool:
        """Request cancellation of a job.

        Returns:
            True if the job was still active when cancellation was requested.
        """
        record = self._records.get(job_id)
        if record is None:
            raise KeyError(f"Unknown job {job_id}")
        if record.is_done:
            return False

        self.logger.info(f"Cancelling job {job_id} ({record.state.value})")
        self._cancel_events[job_id].set()

        task = self._tasks.get(job_id)
        if task is None or task.done():
            # Left pending by a fail-fast acquire, no driver to observe the event
            self._settle(record, JobState.CANCELLED, self._synthetic(
                record, RunStatus.CANCELLED, None), "cancelled while pending")
            return True
        if wait:
            await asyncio.gather(task, return_exceptions=True)
        return True

    def get(self, job_id: str) -> Optional[JobRecord]:
        return self._records.get(job_id)

    def jobs(self) -> List[JobRecord]:
        return list(self._records.values())

    async def shutdown(self) -> None:
        """Cancel active jobs, drain the worker pool and close the transport."""
        self._accepting = False
        active = [r.job_id for r in self._records.values() if not r.is_done]
        if active:
            self.logger.info(f"Shutting down: cancelling {len(active)} active job(s)")
        for job_id in active:
            await self.cancel(job_id, wait=False)

        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        await self.registry.drain()
        if self._owns_transport:
            await self.transport.close()

    # ------------------------------------------------------------------
    # Job driver
    # ------------------------------------------------------------------

    async def _drive(self, record: JobRecord) -> RunResult:
        job = record.job
        cancel_event = self._cancel_events[job.job_id]
        suite = resolve_suite(job.benchmark)

        try:
            while True:
                if cancel_event.is_set():
                    return self._settle(record, JobState.CANCELLED, self._synthetic(
                        record, RunStatus.CANCELLED, None), "cancelled before dispatch")

                record.attempts += 1
                try:
                    return await self._attempt(record, suite, cancel_event)
                except TransientError as e:
                    record.last_error = e.to_detail()
                    if record.attempts > self.max_retries:
                        self.logger.error(
                            f"Job {job.job_id} failed after {record.attempts} attempt(s): {e}"
                        )
                        return self._settle(record, JobState.FAILED, self._synthetic(
                            record, RunStatus.FAILURE, e.to_detail()), f"retries exhausted: {e.message}")

                    self.logger.warning(
                        f"Job {job.job_id} attempt {record.attempts} failed with "
                        f"{type(e).__name__}: {e}; retrying ({record.attempts}/{self.max_retries})"
                    )
                    if record.state != JobState.PENDING:
                        record.transition(JobState.PENDING, f"retry after {type(e).__name__}")
                    await self._backoff(cancel_event)
        except NoCapacityError:
            self.logger.warning(f"No capacity for job {job.job_id}, left pending")
            record.attempts -= 1
            raise
        except asyncio.CancelledError:
            if not record.is_done:
                self._settle(record, JobState.CANCELLED, self._synthetic(
                    record, RunStatus.CANCELLED, None), "driver cancelled")
            raise
        except Exception as e:
            if record.is_done:
                raise
            self.logger.exception(f"Job {job.job_id} crashed: {e}")
            detail = {'type': type(e).__name__, 'message': str(e), 'retryable': False}
            return self._settle(record, JobState.FAILED, self._synthetic(record, RunStatus.FAILURE, detail),
                                f"internal error: {type(e).__name__}")

    async def _backoff(self, cancel_event: asyncio.Event) -> None:
        if self.retry_backoff <= 0:
            return
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=self.retry_backoff)
        except asyncio.TimeoutError:
            pass

    async def _attempt(self, record: JobRecord, suite: SuiteSpec, cancel_event: asyncio.Event) -> RunResult:
        job = record.job
        handle = await self._acquire(job, suite, cancel_event)
        if handle is None:
            return self._settle(record, JobState.CANCELLED, self._synthetic(
                record, RunStatus.CANCELLED, None), "cancelled while waiting for a worker")

        record.worker_id = handle.worker_id
        record.transition(JobState.ASSIGNED, f"acquired worker {handle.worker_id}")
        self.logger.info(f"Job {job.job_id} assigned to worker {handle.worker_id} (attempt {record.attempts})")

        try:
            return await self._execute(record, suite, handle, cancel_event)
        except TransientError:
            raise
        except BaseException:
            if handle.current_job_id == job.job_id:
                await self.registry.evict(handle)
            raise

    async def _acquire(self, job: BenchmarkJob, suite: SuiteSpec,
                       cancel_event: asyncio.Event) -> Optional[WorkerHandle]:
        """Acquire a worker, or return None if the job is cancelled first."""
        acquire_task = asyncio.ensure_future(self.registry.acquire(suite.requirements, job_id=job.job_id))
        cancel_wait = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({acquire_task, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            acquire_task.cancel()
            raise
        finally:
            cancel_wait.cancel()

        if not cancel_event.is_set():
            return acquire_task.result()

        acquire_task.cancel()
        outcome, = await asyncio.gather(acquire_task, return_exceptions=True)
        if isinstance(outcome, WorkerHandle):
            await self.registry.release(outcome)
        return None

    async def _execute(self, record: JobRecord, suite: SuiteSpec, handle: WorkerHandle,
                       cancel_event: asyncio.Event) -> RunResult:
        job = record.job
        stream = self.transport.execute(handle, job)
        consumer = asyncio.ensure_future(self._consume(record, stream))
        watchdog = asyncio.ensure_future(self._watch(handle))
        cancel_wait = asyncio.ensure_future(cancel_event.wait())

        try:
            await asyncio.wait(
                {consumer, watchdog, cancel_wait},
                timeout=suite.attempt_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            consumer.cancel()
            raise
        finally:
            watchdog.cancel()
            cancel_wait.cancel()
            _reap(watchdog)

        if consumer.done():
            return await self._finish(record, handle, stream, consumer)

        if watchdog.done() and not watchdog.cancelled():
            error = watchdog.exception()
            await self._stop_consumer(consumer, stream)
            await self.registry.evict(handle)
            raise error

        timed_out = not cancel_event.is_set()
        if timed_out:
            self.logger.warning(f"Job {job.job_id} exceeded its {suite.attempt_timeout}s attempt timeout")

        acked = await stream.cancel(self.cancel_grace)
        result = await self._stop_consumer(consumer, stream, grace=self.cancel_grace)
        if acked:
            await self.registry.release(handle)
        else:
            self.logger.warning(f"Worker {handle.worker_id} did not acknowledge stop of job {job.job_id}")
            await self.registry.evict(handle)

        if timed_out:
            error = BenchmarkError(
                f"Attempt exceeded {suite.attempt_timeout}s", handle.worker_id, error_type="timeout")
            return self._settle(record, JobState.FAILED, self._synthetic(
                record, RunStatus.FAILURE, error.to_detail()), "attempt timeout")

        if result is not None and result.status == RunStatus.CANCELLED:
            result = replace(result, attempts=record.attempts, worker_id=handle.worker_id)
        else:
            result = self._synthetic(record, RunStatus.CANCELLED, None)
        return self._settle(record, JobState.CANCELLED, result, "cancelled by request")

    async def _consume(self, record: JobRecord, stream: ExecutionStream) -> RunResult:
        async for item in stream:
            if isinstance(item, RunResult):
                return item
            if item.kind == "started":
                record.transition(JobState.RUNNING, item.message)
            record.events.append(item)
            if self.on_event is not None:
                try:
                    self.on_event(item)
                except Exception as e:
                    self.logger.warning(f"Event callback failed for job {record.job_id}: {e}")
        raise ConnectionLost(f"Event stream for job {record.job_id} ended without a result")

    async def _stop_consumer(self, consumer: asyncio.Task, stream: ExecutionStream,
                             grace: float = 0.0) -> Optional[RunResult]:
        """Wind down the consumer task, returning its result if it produced one."""
        if not consumer.done() and grace:
            await asyncio.wait({consumer}, timeout=grace)
        if not consumer.done():
            consumer.cancel()
        outcome, = await asyncio.gather(consumer, return_exceptions=True)
        await stream.aclose()
        return outcome if isinstance(outcome, RunResult) else None

    async def _watch(self, handle: WorkerHandle) -> None:
        """Ping the worker until it misses ``health_check_timeout`` seconds of checks."""
        loop = asyncio.get_running_loop()
        last_healthy = loop.time()
        while True:
            await asyncio.sleep(self.health_check_interval)
            status = await handle.ping(self.ping_timeout)
            now = loop.time()
            if status == HealthStatus.HEALTHY:
                last_healthy = now
                continue

            silent_for = now - last_healthy
            if silent_for >= self.health_check_timeout:
                raise Unresponsive(
                    f"Worker {handle.worker_id} missed health checks for {silent_for:.1f}s",
                    handle.worker_id,
                )
            self.logger.warning(f"Worker {handle.worker_id} failed a health check ({silent_for:.1f}s silent)")

    async def _finish(self, record: JobRecord, handle: WorkerHandle, stream: ExecutionStream,
                      consumer: asyncio.Task) -> RunResult:
        """Settle an attempt whose event stream has ended."""
        job = record.job
        try:
            result = consumer.result()
        except ProtocolError as e:
            self.logger.error(f"Protocol error on job {job.job_id} from worker {handle.worker_id}: {e}")
            await stream.aclose()
            await self._stop_and_release(handle, job.job_id)
            return self._settle(record, JobState.FAILED, self._synthetic(
                record, RunStatus.FAILURE, e.to_detail()), "protocol error")
        except ConnectionLost as e:
            e.worker_id = e.worker_id or handle.worker_id
            await stream.aclose()
            if await handle.ping(self.ping_timeout) == HealthStatus.HEALTHY:
                self.logger.warning(f"Lost stream of job {job.job_id}, worker {handle.worker_id} still healthy")
                await self._stop_and_release(handle, job.job_id)
            else:
                await self.registry.evict(handle)
            raise

        await stream.aclose()
        await self.registry.release(handle)
        result = replace(result, attempts=record.attempts, worker_id=handle.worker_id)

        if result.status == RunStatus.SUCCESS:
            return self._settle(record, JobState.SUCCEEDED, result, "benchmark succeeded")

        error = result.error or {}
        failure = BenchmarkError(
            error.get('message') or "Benchmark reported failure",
            handle.worker_id,
            error_type=error.get('type') or ("cancelled" if result.status == RunStatus.CANCELLED else None),
        )
        result = replace(result, status=RunStatus.FAILURE, error=failure.to_detail())
        self.logger.error(f"Job {job.job_id} failed on worker {handle.worker_id}: {failure}")
        return self._settle(record, JobState.FAILED, result, "benchmark failed")

    async def _stop_and_release(self, handle: WorkerHandle, job_id: str) -> None:
        """Return a worker to the pool once it confirms the job is stopped, else evict it."""
        if await self.transport.stop(handle.url, job_id, timeout=self.cancel_grace):
            await self.registry.release(handle)
            return
        self.logger.warning(f"Worker {handle.worker_id} did not confirm stopping job {job_id}")
        await self.registry.evict(handle)

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def _synthetic(self, record: JobRecord, status: RunStatus, error: Optional[dict]) -> RunResult:
        """Result for a job that never received one from a worker."""
        started_at = next(
            (t.timestamp for t in record.history if t.to_state == JobState.ASSIGNED),
            record.job.created_at,
        )
        return RunResult(
            job_id=record.job_id,
            benchmark=record.job.benchmark,
            model=record.job.model,
            status=status,
            started_at=started_at,
            finished_at=time.time(),
            error=error,
            attempts=record.attempts,
            worker_id=record.worker_id,
            parameters=dict(record.job.parameters),
        )

    def _settle(self, record: JobRecord, state: JobState, result: RunResult, reason: str) -> RunResult:
        record.transition(state, reason)
        record.result = result
        if result.error:
            record.last_error = result.error
        self.result_store.append(result)
        self.logger.info(
            f"Job {record.job_id} {state.value} after {record.attempts} attempt(s) "
            f"({result.duration_seconds:.2f}s)"
        )
        return result


def _reap(task: asyncio.Task) -> None:
    """Mark a finished task's exception as retrieved."""
    if task.done() and not task.cancelled():
        task.exception()
