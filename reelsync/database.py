from collections.abc import AsyncIterator
import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from .config import DATABASE_URL, DB_MAX_OVERFLOW, DB_POOL_SIZE

logger = logging.getLogger(__name__)

engine = create_async_engine(DATABASE_URL, pool_size=DB_POOL_SIZE, max_overflow=DB_MAX_OVERFLOW, pool_pre_ping=True)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db() -> AsyncIterator[AsyncSession]:
    async with async_session() as session:
        yield session


async def init_db() -> None:
    from . import models  # noqa: F401
    async with engine.begin() as conn:
        await conn.run_sync(models.Base.metadata.create_all)
        if conn.dialect.name != "postgresql":
            return
        # Databases created before item rows carried their source position.
        await conn.execute(
            text("ALTER TABLE import_job_items ADD COLUMN IF NOT EXISTS position INTEGER NOT NULL DEFAULT 0")
        )
        # Jobs left mid-run by a previous process can never finish.
        result = await conn.execute(
            text(
                "UPDATE import_jobs SET status = 'failed', completed_at = now(), "
                "error_message = 'Import was interrupted.' "
                "WHERE status IN ('pending', 'processing')"
            )
        )
        if result.rowcount:
            logger.warning("Marked %d interrupted import jobs as failed", result.rowcount)


async def close_db() -> None:
    await engine.dispose()
