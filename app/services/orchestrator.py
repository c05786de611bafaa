"""
Job orchestrator — durable, retrying runner for content generation jobs.

Owns the lifecycle of every JobRecord: creates it on submit, drives the work
function in a background task, persists each progress tick, and either
completes the job, schedules a retry with exponential backoff, or fails it
once the retry budget is spent. Callers never wait on execution; they poll
`get_job()`.

Usage:
    orchestrator = JobOrchestrator(store, pipeline.run, breakers=breakers)
    ack = await orchestrator.submit_payload(body)       # {"jobId", "status", "requestId"}
    record = await orchestrator.get_job(ack.job_id)
"""
import asyncio
import random
import time
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Coroutine, Dict, Optional, Set

from pydantic import ValidationError

from app.models.job_record import JobRecord, JobRequest, JobStatus, SubmitAck
from app.services.circuit_breaker import CircuitBreakerRegistry
from app.services.errors import InvalidJobRequest, JobStoreError, TerminalJobError
from app.services.job_store import JobStore
from app.services.scheduler import AsyncioRetryScheduler, RetryScheduler
from app.utils.logger import logger
from app.utils.metrics import inc, observe

ProgressCallback = Callable[[int, int, str], Awaitable[None]]
WorkFunction = Callable[[JobRequest, ProgressCallback], Awaitable[Any]]
ErrorClassifier = Callable[[BaseException], bool]

BASE_BACKOFF_MS = 1000
MAX_JITTER_MS = 200
DEFAULT_MAX_RETRIES = 5

# Backoff exponent ceiling for re-writing a terminal state the store rejected
TERMINAL_PERSIST_MAX_EXPONENT = 5
_ID_ALLOCATION_ATTEMPTS = 3


def epoch_ms() -> int:
    return int(time.time() * 1000)


def compute_backoff_ms(retry_count: int, rng: random.Random = None) -> float:
    """2^retry_count seconds plus [0, 200) ms of jitter. Uncapped; maxRetries bounds it."""
    rng = rng or random
    return (2 ** retry_count) * BASE_BACKOFF_MS + rng.random() * MAX_JITTER_MS


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

def always_retryable(exc: BaseException) -> bool:
    return True


def terminal_errors_fail_fast(exc: BaseException) -> bool:
    """Retry everything except errors the work function marked as unrecoverable."""
    return not isinstance(exc, (TerminalJobError, InvalidJobRequest))


def _describe_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "body"
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


def _error_message(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

class JobOrchestrator:
    """One instance per process; built at startup and handed to the routes."""

    def __init__(
        self,
        store: JobStore,
        work_fn: WorkFunction,
        breakers: Optional[CircuitBreakerRegistry] = None,
        scheduler: Optional[RetryScheduler] = None,
        clock: Callable[[], int] = epoch_ms,
        max_retries: int = DEFAULT_MAX_RETRIES,
        classify_error: ErrorClassifier = always_retryable,
        rng: Optional[random.Random] = None,
        cache_size: int = 1000,
    ) -> None:
        self.store = store
        self.work_fn = work_fn
        self.breakers = breakers or CircuitBreakerRegistry()
        self.scheduler = scheduler or AsyncioRetryScheduler()
        self.max_retries = max_retries
        self.classify_error = classify_error
        self._clock = clock
        self._rng = rng or random.Random()
        self._cache_size = max(cache_size, 1)

        # Write-through snapshots of persisted records, newest last
        self._cache: "OrderedDict[str, JobRecord]" = OrderedDict()
        self._tasks: Set[asyncio.Task] = set()
        self._terminal_events: Dict[str, asyncio.Event] = {}
        self._closed = False

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit_payload(self, payload: Any) -> SubmitAck:
        """Validate an untrusted JSON body and submit it."""
        if not isinstance(payload, dict):
            raise InvalidJobRequest("request body must be a JSON object")
        try:
            request = JobRequest.model_validate(payload)
        except ValidationError as exc:
            raise InvalidJobRequest(_describe_validation_error(exc)) from exc
        return await self.submit(request)

    async def submit(self, request: JobRequest) -> SubmitAck:
        """
        Create and persist a queued record, start executing it in the
        background and return the acknowledgement without waiting.

        Raises JobStoreError if the record could not be persisted; nothing
        runs in that case.
        """
        if self._closed:
            raise JobStoreError("orchestrator is shut down")

        record = await self._create_record(request)
        self._remember(record)
        self._terminal_events[record.id] = asyncio.Event()
        self._spawn(self._execute_job(request, record), record.id)

        inc("job.submitted")
        logger.info(
            "job.queued",
            extra={
                "job_id": record.id,
                "request_id": record.request_id,
                "client_id": record.client_id,
                "max_retries": record.max_retries,
            },
        )
        return SubmitAck(job_id=record.id, status=JobStatus.QUEUED, request_id=request.request_id)

    async def _create_record(self, request: JobRequest) -> JobRecord:
        for _ in range(_ID_ALLOCATION_ATTEMPTS):
            record = JobRecord.new(request, now_ms=self._clock(), max_retries=self.max_retries)
            if await self.store.put_new(record):
                return record
        raise JobStoreError("could not allocate a unique job id")

    # ------------------------------------------------------------------
    # Status reads
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str) -> Optional[JobRecord]:
        """Cached snapshot if present, otherwise the durable store. None if unknown."""
        cached = self._cache.get(job_id)
        if cached is not None:
            return cached.model_copy(deep=True)

        record = await self.store.get(job_id)
        if record is None:
            return None
        self._remember(record)
        return record

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _execute_job(self, request: JobRequest, record: JobRecord) -> None:
        """
        Run one attempt. Every exception is converted here into a scheduled
        retry or the failed state; nothing escapes the task.
        """
        started = time.monotonic()
        try:
            if record.status == JobStatus.QUEUED:
                record.start(self._clock())
                await self._persist(record)
                logger.info("job.started", extra={"job_id": record.id})
            else:
                logger.info(
                    "job.retry_started",
                    extra={"job_id": record.id, "retry_count": record.retry_count},
                )

            async def progress(step: int, total_steps: int, step_name: str) -> None:
                record.advance(int(step), int(total_steps), str(step_name))
                await self._persist(record)
                logger.debug(
                    "job.progress",
                    extra={"job_id": record.id, "step": record.step, "total_steps": record.total_steps},
                )

            result = await self.work_fn(request, progress)

            completed = record.model_copy(deep=True)
            completed.complete(result, self._clock())
            await self._persist(completed)
        except Exception as exc:
            observe("job.attempt_duration_ms", (time.monotonic() - started) * 1000)
            await self._handle_failure(request, record, exc)
            return

        observe("job.attempt_duration_ms", (time.monotonic() - started) * 1000)
        inc("job.completed")
        self._mark_terminal(completed)
        logger.info(
            "job.completed",
            extra={"job_id": completed.id, "retry_count": completed.retry_count},
        )

    async def _handle_failure(self, request: JobRequest, record: JobRecord, exc: Exception) -> None:
        message = _error_message(exc)

        if self.classify_error(exc) and record.can_retry():
            record.schedule_retry(self._clock())
            delay_ms = compute_backoff_ms(record.retry_count, self._rng)
            try:
                await self._persist(record)
            except JobStoreError as store_exc:
                logger.error(
                    "job.persist_failed",
                    extra={"job_id": record.id, "error": str(store_exc)[:200]},
                )

            inc("job.retry_scheduled")
            logger.warning(
                "job.retry_scheduled",
                extra={
                    "job_id": record.id,
                    "retry_count": record.retry_count,
                    "max_retries": record.max_retries,
                    "delay_ms": round(delay_ms),
                    "error": message[:500],
                    "error_type": type(exc).__name__,
                },
            )
            if not self._closed:
                self.scheduler.schedule(
                    delay_ms,
                    lambda: self._spawn(self._execute_job(request, record), record.id),
                )
            return

        failed = record.model_copy(deep=True)
        failed.fail(message, self._clock())
        inc("job.failed")
        logger.error(
            "job.failed",
            extra={
                "job_id": failed.id,
                "retry_count": failed.retry_count,
                "max_retries": failed.max_retries,
                "error": message[:500],
                "error_type": type(exc).__name__,
            },
        )
        await self._persist_terminal(failed, attempt=1)

    async def _persist_terminal(self, record: JobRecord, attempt: int) -> None:
        """Write a terminal state, rescheduling on store failure until it lands or shutdown."""
        try:
            await self._persist(record)
        except JobStoreError as exc:
            if self._closed:
                logger.error(
                    "job.persist_abandoned",
                    extra={"job_id": record.id, "error": str(exc)[:200]},
                )
                self._mark_terminal(record)
                return
            delay_ms = compute_backoff_ms(min(attempt, TERMINAL_PERSIST_MAX_EXPONENT), self._rng)
            inc("job.persist_retry")
            logger.warning(
                "job.persist_retry",
                extra={"job_id": record.id, "delay_ms": round(delay_ms), "error": str(exc)[:200]},
            )
            self.scheduler.schedule(
                delay_ms,
                lambda: self._spawn(self._persist_terminal(record, attempt + 1), record.id),
            )
            return
        self._mark_terminal(record)

    async def _persist(self, record: JobRecord) -> None:
        await self.store.put(record)
        self._remember(record)

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _remember(self, record: JobRecord) -> None:
        self._cache[record.id] = record.model_copy(deep=True)
        self._cache.move_to_end(record.id)
        while len(self._cache) > self._cache_size:
            self._cache.popitem(last=False)

    def _mark_terminal(self, record: JobRecord) -> None:
        event = self._terminal_events.pop(record.id, None)
        if event is not None:
            event.set()

    def _spawn(self, coro: Coroutine, job_id: str) -> None:
        if self._closed:
            coro.close()
            return
        task = asyncio.create_task(coro, name=f"job:{job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "job.task_crashed",
                extra={"error": str(exc)[:500], "error_type": type(exc).__name__},
            )

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def wait_for_terminal(self, job_id: str, timeout: float = 10.0) -> Optional[JobRecord]:
        """Block until the job is completed or failed (test and CLI helper)."""
        event = self._terminal_events.get(job_id)
        if event is not None:
            await asyncio.wait_for(event.wait(), timeout=timeout)
        return await self.get_job(job_id)

    async def drain(self) -> None:
        """Await every running task, including ones spawned while draining."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel pending retries and running attempts, and wake anyone in wait_for_terminal.

        Persisted state is left as-is.
        """
        self._closed = True
        cancelled = self.scheduler.cancel_all()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        # Release waiters on jobs that will never reach a terminal write
        waiters = list(self._terminal_events.values())
        self._terminal_events.clear()
        for event in waiters:
            event.set()
        logger.info(
            "orchestrator.stopped",
            extra={"status": f"{len(tasks)} tasks, {cancelled} retries cancelled"},
        )
