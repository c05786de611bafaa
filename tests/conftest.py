"""Shared fixtures: temp SQLite job stores, an immediate retry scheduler and a manual clock."""
import asyncio
import os
from typing import Callable, List

# Settings are cached on first use; pin test values before the app is imported.
os.environ["TEST_MODE"] = "true"
os.environ["SUBMIT_RATE_LIMIT"] = "1000/minute"
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

from app.services.job_store import SqlJobStore  # noqa: E402
from app.services.scheduler import RetryScheduler  # noqa: E402
from app.utils import metrics  # noqa: E402


@pytest.fixture
def anyio_backend():
    return "asyncio"


class RecordingScheduler(RetryScheduler):
    """Records every requested delay and fires the callback on the next loop tick."""

    def __init__(self) -> None:
        self.delays: List[float] = []
        self._handles: List[asyncio.Handle] = []

    def schedule(self, delay_ms: float, callback: Callable[[], None]) -> None:
        self.delays.append(delay_ms)
        self._handles.append(asyncio.get_running_loop().call_soon(callback))

    def cancel_all(self) -> int:
        pending = [h for h in self._handles if not h.cancelled()]
        for handle in pending:
            handle.cancel()
        self._handles.clear()
        return len(pending)

    @property
    def pending(self) -> int:
        return 0


class ManualClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def scheduler() -> RecordingScheduler:
    return RecordingScheduler()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}"


@pytest.fixture
async def sql_store(database_url):
    store = SqlJobStore.from_url(database_url)
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()
