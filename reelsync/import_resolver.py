import uuid

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from . import library
from .import_types import (
    REWATCH_TAG,
    ImportConfig,
    ImportItem,
    LibraryWriteError,
    MatchResult,
    ResolveOutcome,
)
from .models import LibraryEntry

CREATED = ResolveOutcome(action="created")
UPDATED = ResolveOutcome(action="updated")
SKIPPED_EXISTING = ResolveOutcome(action="skipped_existing")


def imported_rating(item: ImportItem, config: ImportConfig) -> int | None:
    return item.normalized_rating if config.import_ratings else None


def _status_fields(item: ImportItem, config: ImportConfig) -> dict:
    fields: dict = {}
    if item.status == "watchlist" and config.import_watchlist:
        fields["status"] = "watchlist"
    elif item.status == "watched" and config.import_watched:
        fields["status"] = "watched"
        if item.watched_date is not None:
            fields["watched_at"] = item.watched_date
    rating = imported_rating(item, config)
    if rating is not None:
        fields["rating"] = rating
    return fields


def _imported_tags(item: ImportItem, config: ImportConfig) -> set[str]:
    tags = set(item.tags)
    if item.is_rewatch and config.mark_rewatch_as_tag:
        tags.add(REWATCH_TAG)
    return tags


def _catalog_fields(item: ImportItem, match: MatchResult) -> dict:
    return {
        "title": match.matched_title or item.title,
        "poster_path": match.poster_path,
        "release_date": match.release_date,
    }


def build_create_fields(item: ImportItem, match: MatchResult, config: ImportConfig) -> dict:
    fields = {**_catalog_fields(item, match), **_status_fields(item, config)}
    fields["tags"] = sorted(_imported_tags(item, config))
    return fields


def build_update_fields(
    item: ImportItem,
    match: MatchResult,
    config: ImportConfig,
    existing: LibraryEntry,
) -> dict:
    fields = {**_catalog_fields(item, match), **_status_fields(item, config)}
    if not match.poster_path:
        fields.pop("poster_path")
    if not match.release_date:
        fields.pop("release_date")
    new_tags = _imported_tags(item, config)
    if new_tags:
        fields["tags"] = sorted(set(existing.tags or []) | new_tags)
    return fields


def _should_update(existing: LibraryEntry, item: ImportItem, config: ImportConfig) -> bool:
    strategy = config.conflict_strategy
    if strategy == "skip":
        return False
    if strategy == "overwrite":
        return True
    # keep_higher_rating: an unrated library entry counts as lower than any imported rating.
    rating = imported_rating(item, config)
    if rating is None:
        return False
    return existing.rating is None or rating > existing.rating


async def resolve_conflict(
    db: AsyncSession,
    user_id: uuid.UUID,
    item: ImportItem,
    match: MatchResult,
    config: ImportConfig,
) -> ResolveOutcome:
    """Merge a matched item into the user's library and report what happened.

    The caller owns the transaction; nothing is committed here.
    """
    if not match.matched:
        raise ValueError("resolve_conflict requires a successful match")

    try:
        existing = await library.find_existing(db, user_id, match.tmdb_id, match.media_type)
        if existing is None:
            await library.create_entry(
                db,
                user_id,
                match.tmdb_id,
                match.media_type,
                build_create_fields(item, match, config),
            )
            return CREATED

        if not _should_update(existing, item, config):
            return SKIPPED_EXISTING

        updated = await library.update_entry(
            db,
            user_id,
            match.tmdb_id,
            match.media_type,
            build_update_fields(item, match, config, existing),
        )
    except SQLAlchemyError as exc:
        raise LibraryWriteError(f"Could not save to library: {exc.__class__.__name__}: {exc}") from exc

    if not updated:
        raise LibraryWriteError("Library entry disappeared before it could be updated")
    return UPDATED
