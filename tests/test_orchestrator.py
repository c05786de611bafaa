import asyncio
import random

import pytest

from app.models.job_record import JobRecord, JobRequest, JobStatus
from app.services.errors import InvalidJobRequest, JobStoreError, TerminalJobError
from app.services.job_store import JobStore
from app.services.orchestrator import (
    BASE_BACKOFF_MS,
    MAX_JITTER_MS,
    JobOrchestrator,
    compute_backoff_ms,
    terminal_errors_fail_fast,
)
from app.services.scheduler import RetryScheduler
from app.utils.metrics import get_snapshot


class MemoryStore(JobStore):
    """Dict-backed store that can be told to reject writes for a given status."""

    def __init__(self):
        self.entries = {}
        self.writes = []
        self.fail_status = None
        self.fail_times = 0
        self.fail_put_new = False

    async def get(self, job_id):
        raw = self.entries.get(job_id)
        return JobRecord.from_json(raw) if raw else None

    async def put(self, record):
        if self.fail_times and record.status == self.fail_status:
            self.fail_times -= 1
            raise JobStoreError("store unavailable")
        self.entries[record.id] = record.to_json()
        self.writes.append((record.status, record.step, record.retry_count))

    async def put_new(self, record):
        if self.fail_put_new:
            raise JobStoreError("store unavailable")
        if record.id in self.entries:
            return False
        await self.put(record)
        return True

    async def ping(self):
        return True


def make_request(keyword: str = "solar panels", request_id: str = "req-1") -> JobRequest:
    return JobRequest(keyword=keyword, mode="generate", request_id=request_id, client_id="client-1")


def failing_then_ok(failures: int, error: str = "boom"):
    calls = {"count": 0}

    async def work(request, progress):
        calls["count"] += 1
        await progress(1, 2, "first")
        if calls["count"] <= failures:
            raise RuntimeError(error)
        await progress(2, 2, "second")
        return {"html": "<p>ok</p>"}

    return work, calls


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def make_orchestrator(store, scheduler, clock):
    def _make(work_fn, **kwargs):
        kwargs.setdefault("scheduler", scheduler)
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("rng", random.Random(7))
        orchestrator = JobOrchestrator(kwargs.pop("store", store), work_fn, **kwargs)
        return orchestrator

    return _make


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("retry_count", [1, 2, 3, 4, 5])
def test_backoff_bounds(retry_count):
    rng = random.Random(retry_count)
    for _ in range(50):
        delay = compute_backoff_ms(retry_count, rng)
        low = (2 ** retry_count) * BASE_BACKOFF_MS
        assert low <= delay < low + MAX_JITTER_MS


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------

@pytest.mark.anyio
async def test_submit_returns_ack_and_job_is_readable_immediately(make_orchestrator, store):
    gate = asyncio.Event()

    async def work(request, progress):
        await gate.wait()
        return "done"

    orchestrator = make_orchestrator(work)
    ack = await orchestrator.submit(make_request())

    assert ack.status == JobStatus.QUEUED
    assert ack.request_id == "req-1"
    assert ack.job_id.startswith("job_")

    record = await orchestrator.get_job(ack.job_id)
    assert record is not None
    assert record.status in (JobStatus.QUEUED, JobStatus.PROCESSING)
    assert ack.job_id in store.entries

    gate.set()
    final = await orchestrator.wait_for_terminal(ack.job_id)
    assert final.status == JobStatus.COMPLETED


@pytest.mark.anyio
@pytest.mark.parametrize(
    "payload",
    [
        None,
        ["keyword"],
        {"keyword": "", "requestId": "r", "clientId": "c"},
        {"keyword": "x", "clientId": "c"},
        {"keyword": "x", "requestId": "r", "clientId": "c"},
        {"keyword": "x", "requestId": "r", "clientId": "c", "mode": "delete"},
    ],
)
async def test_malformed_payload_creates_nothing(make_orchestrator, store, payload):
    async def work(request, progress):
        raise AssertionError("must not run")

    orchestrator = make_orchestrator(work)
    with pytest.raises(InvalidJobRequest):
        await orchestrator.submit_payload(payload)
    assert store.entries == {}
    assert orchestrator.in_flight == 0


@pytest.mark.anyio
async def test_submit_fails_when_store_is_down(make_orchestrator, store):
    called = []

    async def work(request, progress):
        called.append(request)

    store.fail_put_new = True
    orchestrator = make_orchestrator(work)
    with pytest.raises(JobStoreError):
        await orchestrator.submit(make_request())

    await orchestrator.drain()
    assert called == []


@pytest.mark.anyio
async def test_get_unknown_job_returns_none(make_orchestrator):
    async def work(request, progress):
        return None

    orchestrator = make_orchestrator(work)
    assert await orchestrator.get_job("job_0_doesnotex") is None


# ---------------------------------------------------------------------------
# Execution and retries
# ---------------------------------------------------------------------------

@pytest.mark.anyio
async def test_successful_job_completes_without_retries(make_orchestrator, store, scheduler):
    work, calls = failing_then_ok(0)
    orchestrator = make_orchestrator(work)

    ack = await orchestrator.submit(make_request())
    record = await orchestrator.wait_for_terminal(ack.job_id)

    assert record.status == JobStatus.COMPLETED
    assert record.result == {"html": "<p>ok</p>"}
    assert record.error is None
    assert record.retry_count == 0
    assert record.step == 2 and record.total_steps == 2
    assert record.started_at is not None and record.completed_at is not None
    assert scheduler.delays == []
    assert calls["count"] == 1

    # Every transition was written through, in order
    statuses = [status for status, _, _ in store.writes]
    assert statuses == ["queued", "processing", "processing", "processing", "completed"]


@pytest.mark.anyio
async def test_always_failing_job_exhausts_retries(make_orchestrator, scheduler):
    work, calls = failing_then_ok(failures=10)
    orchestrator = make_orchestrator(work, max_retries=2)

    ack = await orchestrator.submit(make_request())
    record = await orchestrator.wait_for_terminal(ack.job_id)

    assert record.status == JobStatus.FAILED
    assert record.retry_count == 2
    assert "boom" in record.error
    assert record.result is None
    assert calls["count"] == 3

    assert len(scheduler.delays) == 2
    assert 2000 <= scheduler.delays[0] < 2200
    assert 4000 <= scheduler.delays[1] < 4200


@pytest.mark.anyio
async def test_default_retry_budget_is_five(make_orchestrator, scheduler):
    work, calls = failing_then_ok(failures=100)
    orchestrator = make_orchestrator(work)

    ack = await orchestrator.submit(make_request())
    record = await orchestrator.wait_for_terminal(ack.job_id)

    assert record.status == JobStatus.FAILED
    assert record.max_retries == 5
    assert record.retry_count == 5
    assert calls["count"] == 6
    for n, delay in enumerate(scheduler.delays, start=1):
        assert (2 ** n) * 1000 <= delay < (2 ** n) * 1000 + 200


@pytest.mark.anyio
async def test_recovers_after_k_failures(make_orchestrator, clock):
    work, calls = failing_then_ok(failures=3)
    orchestrator = make_orchestrator(work, max_retries=5)

    ack = await orchestrator.submit(make_request())
    record = await orchestrator.wait_for_terminal(ack.job_id)

    assert record.status == JobStatus.COMPLETED
    assert record.retry_count == 3
    assert record.last_attempt_at == clock.now
    assert calls["count"] == 4
    assert get_snapshot()["counters"]["job.retry_scheduled"] == 3


@pytest.mark.anyio
async def test_classifier_can_fail_fast(make_orchestrator, scheduler):
    async def work(request, progress):
        raise TerminalJobError("AI provider not configured")

    orchestrator = make_orchestrator(work, classify_error=terminal_errors_fail_fast)
    ack = await orchestrator.submit(make_request())
    record = await orchestrator.wait_for_terminal(ack.job_id)

    assert record.status == JobStatus.FAILED
    assert record.retry_count == 0
    assert record.error == "AI provider not configured"
    assert scheduler.delays == []


@pytest.mark.anyio
async def test_persistence_failure_counts_as_failed_attempt(make_orchestrator, store):
    work, calls = failing_then_ok(0)
    store.fail_status = JobStatus.COMPLETED
    store.fail_times = 1
    orchestrator = make_orchestrator(work)

    ack = await orchestrator.submit(make_request())
    record = await orchestrator.wait_for_terminal(ack.job_id)

    assert record.status == JobStatus.COMPLETED
    assert record.retry_count == 1
    assert calls["count"] == 2
    assert JobRecord.from_json(store.entries[ack.job_id]).status == JobStatus.COMPLETED


@pytest.mark.anyio
async def test_failed_state_write_is_retried(make_orchestrator, store, scheduler):
    work, _ = failing_then_ok(failures=10)
    store.fail_status = JobStatus.FAILED
    store.fail_times = 2
    orchestrator = make_orchestrator(work, max_retries=0)

    ack = await orchestrator.submit(make_request())
    record = await orchestrator.wait_for_terminal(ack.job_id)

    assert record.status == JobStatus.FAILED
    assert JobRecord.from_json(store.entries[ack.job_id]).status == JobStatus.FAILED
    assert len(scheduler.delays) == 2


@pytest.mark.anyio
async def test_failed_state_write_keeps_retrying_until_saved(make_orchestrator, store, scheduler):
    work, _ = failing_then_ok(failures=10)
    store.fail_status = JobStatus.FAILED
    store.fail_times = 10
    orchestrator = make_orchestrator(work, max_retries=0)

    ack = await orchestrator.submit(make_request())
    record = await orchestrator.wait_for_terminal(ack.job_id)

    assert record.status == JobStatus.FAILED
    assert JobRecord.from_json(store.entries[ack.job_id]).status == JobStatus.FAILED
    assert len(scheduler.delays) == 10
    # delay stops growing at the fifth rejection
    assert all(32 * BASE_BACKOFF_MS <= d < 32 * BASE_BACKOFF_MS + MAX_JITTER_MS for d in scheduler.delays[4:])
    assert orchestrator._terminal_events == {}


class HeldScheduler(RetryScheduler):
    """Records delays but never fires, like a timer still waiting at shutdown."""

    def __init__(self):
        self.delays = []

    def schedule(self, delay_ms, callback):
        self.delays.append(delay_ms)

    def cancel_all(self):
        return len(self.delays)

    @property
    def pending(self):
        return len(self.delays)


@pytest.mark.anyio
async def test_shutdown_wakes_waiters_on_unsaved_terminal_state(make_orchestrator, store):
    work, _ = failing_then_ok(failures=10)
    store.fail_status = JobStatus.FAILED
    store.fail_times = 1_000
    scheduler = HeldScheduler()
    orchestrator = make_orchestrator(work, max_retries=0, scheduler=scheduler)

    ack = await orchestrator.submit(make_request())
    waiter = asyncio.create_task(orchestrator.wait_for_terminal(ack.job_id, timeout=5))
    while not scheduler.delays:
        await asyncio.sleep(0)
    assert not waiter.done()

    await orchestrator.shutdown()
    record = await waiter

    assert record.status == JobStatus.PROCESSING
    assert orchestrator._terminal_events == {}


@pytest.mark.anyio
async def test_jobs_run_concurrently(make_orchestrator):
    running = 0
    peak = 0
    release = asyncio.Event()

    async def work(request, progress):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await release.wait()
        running -= 1
        return request.keyword

    orchestrator = make_orchestrator(work)
    acks = [await orchestrator.submit(make_request(f"kw {i}", f"req-{i}")) for i in range(20)]

    for _ in range(5):
        await asyncio.sleep(0)
    release.set()

    records = [await orchestrator.wait_for_terminal(ack.job_id) for ack in acks]
    assert len({ack.job_id for ack in acks}) == 20
    assert peak == 20
    assert [r.result for r in records] == [f"kw {i}" for i in range(20)]


@pytest.mark.anyio
async def test_one_failing_job_does_not_affect_others(make_orchestrator):
    async def work(request, progress):
        if request.keyword == "bad":
            raise RuntimeError("boom")
        return "ok"

    orchestrator = make_orchestrator(work, max_retries=1)
    bad = await orchestrator.submit(make_request("bad", "req-bad"))
    good = await orchestrator.submit(make_request("good", "req-good"))

    assert (await orchestrator.wait_for_terminal(good.job_id)).status == JobStatus.COMPLETED
    assert (await orchestrator.wait_for_terminal(bad.job_id)).status == JobStatus.FAILED


@pytest.mark.anyio
async def test_cold_read_falls_back_to_store(make_orchestrator, store):
    work, _ = failing_then_ok(0)
    first = make_orchestrator(work)
    ack = await first.submit(make_request())
    await first.wait_for_terminal(ack.job_id)

    restarted = make_orchestrator(work)
    record = await restarted.get_job(ack.job_id)
    assert record is not None
    assert record.status == JobStatus.COMPLETED
    assert record.result == {"html": "<p>ok</p>"}


@pytest.mark.anyio
async def test_cached_reads_are_copies(make_orchestrator):
    work, _ = failing_then_ok(0)
    orchestrator = make_orchestrator(work)
    ack = await orchestrator.submit(make_request())
    await orchestrator.wait_for_terminal(ack.job_id)

    record = await orchestrator.get_job(ack.job_id)
    record.result = "tampered"
    assert (await orchestrator.get_job(ack.job_id)).result == {"html": "<p>ok</p>"}


@pytest.mark.anyio
async def test_works_against_sql_store(make_orchestrator, sql_store):
    work, _ = failing_then_ok(failures=1)
    orchestrator = make_orchestrator(work, store=sql_store)

    ack = await orchestrator.submit(make_request())
    await orchestrator.wait_for_terminal(ack.job_id)

    persisted = await sql_store.get(ack.job_id)
    assert persisted.status == JobStatus.COMPLETED
    assert persisted.retry_count == 1


@pytest.mark.anyio
async def test_shutdown_cancels_running_jobs_and_rejects_new_ones(make_orchestrator):
    started = asyncio.Event()

    async def work(request, progress):
        started.set()
        await asyncio.sleep(60)

    orchestrator = make_orchestrator(work)
    await orchestrator.submit(make_request())
    await started.wait()

    await orchestrator.shutdown()
    assert orchestrator.in_flight == 0
    with pytest.raises(JobStoreError):
        await orchestrator.submit(make_request())
