"""Tests for merging matched import items into the library."""

from __future__ import annotations

import asyncio
import uuid
from datetime import date
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from reelsync import library
from reelsync.import_resolver import build_create_fields, resolve_conflict
from reelsync.import_types import ImportItem, LibraryWriteError, MatchResult
from tests.conftest import create_user, make_config

HEAT_MATCH = MatchResult(
    confidence="exact",
    tmdb_id=949,
    matched_title="Heat",
    year=1995,
    poster_path="/heat.jpg",
    release_date="1995-12-15",
)


async def _seed_entry(session_factory, user_id: uuid.UUID, **fields) -> None:
    values = {"title": "Heat", "status": "watched", **fields}
    async with session_factory() as db:
        await library.create_entry(db, user_id, HEAT_MATCH.tmdb_id, "movie", values)
        await db.commit()


async def _load_entry(session_factory, user_id: uuid.UUID):
    async with session_factory() as db:
        return await library.find_existing(db, user_id, HEAT_MATCH.tmdb_id, "movie")


async def _resolve(session_factory, user_id: uuid.UUID, item: ImportItem, config):
    async with session_factory() as db:
        outcome = await resolve_conflict(db, user_id, item, HEAT_MATCH, config)
        await db.commit()
    return outcome


class TestBuildCreateFields:
    def test_rewatch_tag_added_when_enabled(self):
        item = ImportItem(title="Heat", year=1995, is_rewatch=True, tags=frozenset({"cinema"}))

        fields = build_create_fields(item, HEAT_MATCH, make_config())

        assert fields["tags"] == ["cinema", "rewatch"]

    def test_rewatch_tag_omitted_when_disabled(self):
        item = ImportItem(title="Heat", year=1995, is_rewatch=True)

        fields = build_create_fields(item, HEAT_MATCH, make_config(mark_rewatch_as_tag=False))

        assert fields["tags"] == []

    def test_ratings_gate(self):
        item = ImportItem(title="Heat", year=1995, normalized_rating=4)

        assert build_create_fields(item, HEAT_MATCH, make_config())["rating"] == 4
        assert "rating" not in build_create_fields(item, HEAT_MATCH, make_config(import_ratings=False))

    def test_watched_gate(self):
        item = ImportItem(title="Heat", year=1995, watched_date=date(2024, 2, 1))

        fields = build_create_fields(item, HEAT_MATCH, make_config(import_watched=False))

        assert "status" not in fields
        assert "watched_at" not in fields


class TestResolveConflict:
    """Test the create/update/skip decision against stored entries."""

    def test_creates_missing_entry(self, sqlite_sessions):
        item = ImportItem(
            title="heat",
            year=1995,
            normalized_rating=5,
            watched_date=date(2024, 2, 1),
            is_rewatch=True,
        )

        async def run_test():
            async with sqlite_sessions() as session_factory:
                user_id = await create_user(session_factory)
                outcome = await _resolve(session_factory, user_id, item, make_config())
                return outcome, await _load_entry(session_factory, user_id)

        outcome, entry = asyncio.run(run_test())

        assert outcome.action == "created"
        assert entry.title == "Heat"
        assert entry.rating == 5
        assert entry.status == "watched"
        assert entry.watched_at == date(2024, 2, 1)
        assert entry.poster_path == "/heat.jpg"
        assert entry.tags == ["rewatch"]

    def test_watchlist_disabled_still_creates_bare_entry(self, sqlite_sessions):
        item = ImportItem(title="Heat", year=1995, status="watchlist")

        async def run_test():
            async with sqlite_sessions() as session_factory:
                user_id = await create_user(session_factory)
                outcome = await _resolve(session_factory, user_id, item, make_config(import_watchlist=False))
                return outcome, await _load_entry(session_factory, user_id)

        outcome, entry = asyncio.run(run_test())

        assert outcome.action == "created"
        assert entry is not None
        assert entry.status is None

    def test_keep_higher_rating_skips_lower_import(self, sqlite_sessions):
        item = ImportItem(title="Heat", year=1995, normalized_rating=3)

        async def run_test():
            async with sqlite_sessions() as session_factory:
                user_id = await create_user(session_factory)
                await _seed_entry(session_factory, user_id, rating=4)
                before = await _load_entry(session_factory, user_id)
                outcome = await _resolve(
                    session_factory, user_id, item, make_config(conflict_strategy="keep_higher_rating")
                )
                return before, outcome, await _load_entry(session_factory, user_id)

        before, outcome, after = asyncio.run(run_test())

        assert outcome.action == "skipped_existing"
        assert after.rating == 4
        assert after.updated_at == before.updated_at

    @pytest.mark.parametrize(
        ("existing_rating", "imported_rating", "expected"),
        [
            (3, 5, "updated"),
            (4, 4, "skipped_existing"),
            (None, 2, "updated"),
            (3, None, "skipped_existing"),
        ],
    )
    def test_keep_higher_rating_table(self, sqlite_sessions, existing_rating, imported_rating, expected):
        item = ImportItem(title="Heat", year=1995, normalized_rating=imported_rating)

        async def run_test():
            async with sqlite_sessions() as session_factory:
                user_id = await create_user(session_factory)
                await _seed_entry(session_factory, user_id, rating=existing_rating)
                outcome = await _resolve(
                    session_factory, user_id, item, make_config(conflict_strategy="keep_higher_rating")
                )
                return outcome, await _load_entry(session_factory, user_id)

        outcome, entry = asyncio.run(run_test())

        assert outcome.action == expected
        if expected == "updated":
            assert entry.rating == imported_rating
        else:
            assert entry.rating == existing_rating

    def test_skip_is_idempotent(self, sqlite_sessions):
        item = ImportItem(title="Heat", year=1995, normalized_rating=2)

        async def run_test():
            async with sqlite_sessions() as session_factory:
                user_id = await create_user(session_factory)
                first = await _resolve(session_factory, user_id, item, make_config())
                second = await _resolve(session_factory, user_id, item, make_config())
                return first, second, await _load_entry(session_factory, user_id)

        first, second, entry = asyncio.run(run_test())

        assert first.action == "created"
        assert second.action == "skipped_existing"
        assert entry.rating == 2

    def test_overwrite_updates_and_merges_tags(self, sqlite_sessions):
        item = ImportItem(title="Heat", year=1995, normalized_rating=2, is_rewatch=True)

        async def run_test():
            async with sqlite_sessions() as session_factory:
                user_id = await create_user(session_factory)
                await _seed_entry(session_factory, user_id, rating=5, status="watchlist", tags=["favourites"])
                outcome = await _resolve(session_factory, user_id, item, make_config(conflict_strategy="overwrite"))
                return outcome, await _load_entry(session_factory, user_id)

        outcome, entry = asyncio.run(run_test())

        assert outcome.action == "updated"
        assert entry.rating == 2
        assert entry.status == "watched"
        assert entry.poster_path == "/heat.jpg"
        assert entry.tags == ["favourites", "rewatch"]

    def test_entries_are_scoped_per_user(self, sqlite_sessions):
        item = ImportItem(title="Heat", year=1995)

        async def run_test():
            async with sqlite_sessions() as session_factory:
                owner = await create_user(session_factory)
                other = await create_user(session_factory)
                await _seed_entry(session_factory, owner)
                return await _resolve(session_factory, other, item, make_config())

        assert asyncio.run(run_test()).action == "created"

    def test_vanished_entry_is_a_write_error(self, sqlite_sessions):
        item = ImportItem(title="Heat", year=1995, normalized_rating=5)

        async def run_test():
            async with sqlite_sessions() as session_factory:
                user_id = await create_user(session_factory)
                await _seed_entry(session_factory, user_id, rating=1)
                with patch.object(library, "update_entry", new=AsyncMock(return_value=False)):
                    await _resolve(session_factory, user_id, item, make_config(conflict_strategy="overwrite"))

        with pytest.raises(LibraryWriteError, match="disappeared"):
            asyncio.run(run_test())

    def test_database_errors_become_write_errors(self, sqlite_sessions):
        item = ImportItem(title="Heat", year=1995)
        failure = OperationalError("SELECT 1", {}, Exception("database is locked"))

        async def run_test():
            async with sqlite_sessions() as session_factory:
                user_id = await create_user(session_factory)
                with patch.object(library, "find_existing", new=AsyncMock(side_effect=failure)):
                    await _resolve(session_factory, user_id, item, make_config())

        with pytest.raises(LibraryWriteError, match="OperationalError"):
            asyncio.run(run_test())

    def test_unmatched_item_is_rejected(self, sqlite_sessions):
        async def run_test():
            async with sqlite_sessions() as session_factory:
                user_id = await create_user(session_factory)
                async with session_factory() as db:
                    await resolve_conflict(
                        db, user_id, ImportItem(title="Heat"), MatchResult(confidence="failed"), make_config()
                    )

        with pytest.raises(ValueError):
            asyncio.run(run_test())
