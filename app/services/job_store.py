"""
Durable job store — the persistent mirror of every JobRecord.

Layout: one entry per job, key "job:<id>", value = JSON-serialized record.
There are no secondary indexes and no listing.

Backends:
  - SqlJobStore:   SQLAlchemy async engine over the job_store table (default)
  - RedisJobStore: redis.asyncio, optional TTL so old jobs expire

Every failure to reach the backend surfaces as JobStoreError.
"""
from abc import ABC, abstractmethod
from typing import Optional

import redis.asyncio as aioredis
from pydantic import ValidationError
from redis.exceptions import RedisError
from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from app.config import Settings
from app.database import create_engine_for, create_session_factory, init_db
from app.models.job_entry import JobEntry
from app.models.job_record import JobRecord
from app.services.errors import JobStoreError
from app.utils.logger import logger

KEY_PREFIX = "job:"


def job_key(job_id: str) -> str:
    return f"{KEY_PREFIX}{job_id}"


def _decode(job_id: str, raw: Optional[str]) -> Optional[JobRecord]:
    if raw is None:
        return None
    try:
        return JobRecord.from_json(raw)
    except ValidationError as exc:
        raise JobStoreError(f"corrupt job record for {job_id}: {exc}") from exc


class JobStore(ABC):
    """Keyed durable storage for job records."""

    async def initialize(self) -> None:
        """Prepare the backend (create tables, open pools). Safe to call twice."""

    @abstractmethod
    async def get(self, job_id: str) -> Optional[JobRecord]:
        """Return the stored record, or None when the id is unknown or expired."""

    @abstractmethod
    async def put(self, record: JobRecord) -> None:
        """Upsert the record under job:<id>."""

    @abstractmethod
    async def put_new(self, record: JobRecord) -> bool:
        """Insert the record; returns False without writing if the key already exists."""

    @abstractmethod
    async def ping(self) -> bool:
        ...

    async def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# SQLAlchemy backend
# ---------------------------------------------------------------------------

class SqlJobStore(JobStore):
    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self._sessions = create_session_factory(engine)
        self._initialized = False

    @classmethod
    def from_url(cls, database_url: str, echo: bool = False) -> "SqlJobStore":
        return cls(create_engine_for(database_url, echo=echo))

    async def initialize(self) -> None:
        if self._initialized:
            return
        try:
            await init_db(self.engine)
        except SQLAlchemyError as exc:
            raise JobStoreError(f"job store init failed: {exc}") from exc
        self._initialized = True

    async def get(self, job_id: str) -> Optional[JobRecord]:
        try:
            async with self._sessions() as db:
                result = await db.execute(select(JobEntry.value).where(JobEntry.key == job_key(job_id)))
                raw = result.scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise JobStoreError(f"job store read failed: {exc}") from exc
        return _decode(job_id, raw)

    async def put(self, record: JobRecord) -> None:
        key = job_key(record.id)
        try:
            async with self._sessions() as db:
                entry = await db.get(JobEntry, key)
                if entry is None:
                    db.add(JobEntry(key=key, value=record.to_json()))
                else:
                    entry.value = record.to_json()
                await db.commit()
        except SQLAlchemyError as exc:
            raise JobStoreError(f"job store write failed: {exc}") from exc

    async def put_new(self, record: JobRecord) -> bool:
        try:
            async with self._sessions() as db:
                db.add(JobEntry(key=job_key(record.id), value=record.to_json()))
                await db.commit()
        except IntegrityError:
            logger.warning("job_store.duplicate_key", extra={"job_id": record.id})
            return False
        except SQLAlchemyError as exc:
            raise JobStoreError(f"job store write failed: {exc}") from exc
        return True

    async def ping(self) -> bool:
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as exc:
            logger.warning("job_store.ping_failed", extra={"error": str(exc)[:200]})
            return False

    async def close(self) -> None:
        await self.engine.dispose()


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------

class RedisJobStore(JobStore):
    """
    Redis-backed store. `client` is a redis.asyncio.Redis created with
    decode_responses=True.
    """

    def __init__(self, client, ttl_seconds: Optional[int] = None):
        self._redis = client
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_url(cls, url: str, ttl_seconds: Optional[int] = None) -> "RedisJobStore":
        client = aioredis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
        )
        return cls(client, ttl_seconds=ttl_seconds)

    async def get(self, job_id: str) -> Optional[JobRecord]:
        try:
            raw = await self._redis.get(job_key(job_id))
        except RedisError as exc:
            raise JobStoreError(f"job store read failed: {exc}") from exc
        return _decode(job_id, raw)

    async def put(self, record: JobRecord) -> None:
        try:
            await self._redis.set(job_key(record.id), record.to_json(), ex=self.ttl_seconds)
        except RedisError as exc:
            raise JobStoreError(f"job store write failed: {exc}") from exc

    async def put_new(self, record: JobRecord) -> bool:
        try:
            created = await self._redis.set(job_key(record.id), record.to_json(), ex=self.ttl_seconds, nx=True)
        except RedisError as exc:
            raise JobStoreError(f"job store write failed: {exc}") from exc
        return bool(created)

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except RedisError as exc:
            logger.warning("job_store.ping_failed", extra={"error": str(exc)[:200]})
            return False

    async def close(self) -> None:
        await self._redis.aclose()


def build_job_store(settings: Settings) -> JobStore:
    """Pick the backend named by JOB_STORE_BACKEND."""
    backend = settings.job_store_backend.lower()
    if backend == "redis":
        if not settings.redis_url:
            raise JobStoreError("JOB_STORE_BACKEND=redis requires REDIS_URL")
        return RedisJobStore.from_url(settings.redis_url, ttl_seconds=settings.job_ttl_seconds)
    if backend == "sql":
        return SqlJobStore.from_url(settings.database_url, echo=settings.debug)
    raise JobStoreError(f"Unknown job store backend: {settings.job_store_backend}")
