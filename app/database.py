from pathlib import Path

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from app.utils.logger import logger

# Base class for models
Base = declarative_base()


def create_engine_for(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine; SQLite parent directories are created on demand."""
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        if url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        return create_async_engine(database_url, echo=echo, future=True)

    return create_async_engine(
        database_url,
        echo=echo,
        future=True,
        pool_pre_ping=True,  # Detect and recycle stale/broken connections
        pool_recycle=300,  # Recycle connections every 5 minutes
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(engine: AsyncEngine) -> None:
    """Create the job store table if it does not exist yet"""
    # Import models to register them with Base
    from app.models import job_entry  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("database.ready", extra={"service": make_url(str(engine.url)).get_backend_name()})
