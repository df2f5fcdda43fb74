"""Shared pytest fixtures and helpers for reelsync tests."""

from __future__ import annotations

import csv
import io
import uuid
import zipfile
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from reelsync import tmdb
from reelsync.import_types import ImportConfig, ImportItem
from reelsync.models import Base, ImportJob, ImportJobItem, User


def make_csv(header: list[str], rows: list[list[str]]) -> str:
    """Render rows as CSV text with a header line."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(header)
    writer.writerows(rows)
    return buffer.getvalue()


def make_zip(files: dict[str, str]) -> bytes:
    """Build an in-memory ZIP archive from a name -> text mapping."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, content in files.items():
            archive.writestr(name, content)
    return buffer.getvalue()


def make_config(**overrides) -> ImportConfig:
    values = {
        "source": "letterboxd",
        "conflict_strategy": "skip",
        "import_ratings": True,
        "import_watchlist": True,
        "import_watched": True,
        "mark_rewatch_as_tag": True,
    }
    values.update(overrides)
    return ImportConfig(**values)


def movie(tmdb_id: int, title: str, release_date: str = "", **extra) -> dict:
    """A TMDB search result row."""
    return {"id": tmdb_id, "title": title, "release_date": release_date, **extra}


@pytest.fixture
def item_factory() -> Callable[..., ImportItem]:
    def _make(title: str = "Heat", year: int | None = 1995, **kwargs) -> ImportItem:
        return ImportItem(title=title, year=year, **kwargs)

    return _make


@pytest.fixture
def sqlite_sessions(tmp_path: Path):
    """Return an async context manager yielding a session factory on a fresh SQLite file.

    The engine is created inside the caller's event loop, so use it from within
    the coroutine passed to ``asyncio.run``.
    """
    counter = {"n": 0}

    @asynccontextmanager
    async def _open() -> AsyncIterator[async_sessionmaker]:
        counter["n"] += 1
        db_path = tmp_path / f"reelsync-{counter['n']}.db"
        engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        try:
            yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        finally:
            await engine.dispose()

    return _open


async def create_user(session_factory: async_sessionmaker, email: str | None = None) -> uuid.UUID:
    user_id = uuid.uuid4()
    async with session_factory() as db:
        db.add(User(id=user_id, email=email or f"{user_id.hex[:8]}@example.com"))
        await db.commit()
    return user_id


@pytest.fixture(autouse=True)
def _reset_tmdb_rate_limiter():
    tmdb.rate_limiter.reset()
    yield
    tmdb.rate_limiter.reset()


async def seed_job(
    session_factory: async_sessionmaker,
    user_id: uuid.UUID,
    status: str = "completed",
    created_at: datetime | None = None,
    item_statuses: list[str] | None = None,
) -> uuid.UUID:
    """Insert a job with one item row per entry of ``item_statuses``."""
    statuses = ["success", "failed", "skipped", "failed", "success"] if item_statuses is None else item_statuses
    async with session_factory() as db:
        job = ImportJob(
            user_id=user_id,
            source="letterboxd",
            status=status,
            total_items=len(statuses),
            processed_items=len(statuses),
            successful_items=statuses.count("success"),
            failed_items=statuses.count("failed"),
            skipped_items=statuses.count("skipped"),
            created_at=created_at or datetime.now(timezone.utc),
        )
        db.add(job)
        await db.flush()
        for position, item_status in enumerate(statuses):
            db.add(
                ImportJobItem(
                    import_job_id=job.id,
                    position=position,
                    source_title=f"Film {position}",
                    match_confidence="failed" if item_status == "failed" else "exact",
                    status=item_status,
                )
            )
        await db.commit()
        return job.id
