import uuid
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import LibraryEntry

LIBRARY_FIELDS = frozenset({"title", "poster_path", "release_date", "status", "rating", "watched_at", "tags"})


def _check_fields(fields: dict) -> None:
    unknown = set(fields) - LIBRARY_FIELDS
    if unknown:
        raise ValueError(f"Unknown library fields: {', '.join(sorted(unknown))}")


async def find_existing(
    db: AsyncSession,
    user_id: uuid.UUID,
    tmdb_id: int,
    media_type: str = "movie",
) -> LibraryEntry | None:
    return (
        await db.execute(
            select(LibraryEntry).where(
                LibraryEntry.user_id == user_id,
                LibraryEntry.media_type == media_type,
                LibraryEntry.tmdb_id == tmdb_id,
            )
        )
    ).scalar_one_or_none()


async def create_entry(
    db: AsyncSession,
    user_id: uuid.UUID,
    tmdb_id: int,
    media_type: str,
    fields: dict,
) -> LibraryEntry:
    _check_fields(fields)
    now = datetime.now(timezone.utc)
    values = {"tags": [], **fields}
    entry = LibraryEntry(
        user_id=user_id,
        tmdb_id=tmdb_id,
        media_type=media_type,
        created_at=now,
        updated_at=now,
        **values,
    )
    db.add(entry)
    await db.flush()
    return entry


async def update_entry(
    db: AsyncSession,
    user_id: uuid.UUID,
    tmdb_id: int,
    media_type: str,
    fields: dict,
) -> bool:
    """Single-row update of the user's entry. Returns False when no row matched."""
    _check_fields(fields)
    result = await db.execute(
        update(LibraryEntry)
        .where(
            LibraryEntry.user_id == user_id,
            LibraryEntry.media_type == media_type,
            LibraryEntry.tmdb_id == tmdb_id,
        )
        .values(**fields, updated_at=datetime.now(timezone.utc))
    )
    return (result.rowcount or 0) > 0
