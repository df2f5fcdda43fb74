"""Shared types for the watch-history import pipeline."""

from dataclasses import dataclass, field
from datetime import date
from typing import Literal
import uuid

from pydantic import BaseModel

ImportSource = Literal["letterboxd", "imdb"]
ImportJobStatus = Literal["pending", "processing", "completed", "failed"]
ImportItemStatus = Literal["pending", "success", "failed", "skipped"]
MatchConfidence = Literal["exact", "fuzzy", "failed"]
ConflictStrategy = Literal["skip", "overwrite", "keep_higher_rating"]
ResultAction = Literal["created", "updated", "skipped_existing"]
WatchStatus = Literal["watchlist", "watched"]
MediaType = Literal["movie", "tv"]

IMPORT_SOURCES: tuple[str, ...] = ("letterboxd", "imdb")
TERMINAL_JOB_STATUSES: tuple[str, ...] = ("completed", "failed")
REWATCH_TAG = "rewatch"


class ImportPipelineError(Exception):
    pass


class ImportParseError(ImportPipelineError):
    """The export container cannot be opened or lacks every importable section."""

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = list(errors or [])


class CatalogUnavailableError(ImportPipelineError):
    """The catalog cannot be used at all, so no item can be matched."""


class LibraryWriteError(ImportPipelineError):
    pass


class ImportJobBusyError(ImportPipelineError):
    pass


@dataclass(frozen=True)
class ImportItem:
    title: str
    year: int | None = None
    source_rating: float | None = None
    normalized_rating: int | None = None
    status: WatchStatus = "watched"
    watched_date: date | None = None
    is_rewatch: bool = False
    tags: frozenset[str] = field(default_factory=frozenset)
    media_type: MediaType = "movie"
    imdb_id: str | None = None


@dataclass
class ParseStats:
    section_counts: dict[str, int] = field(default_factory=dict)
    rows_read: int = 0
    rows_merged: int = 0
    rows_rejected: int = 0
    unique_items: int = 0


@dataclass
class ParseResult:
    items: list[ImportItem]
    errors: list[str]
    stats: ParseStats


@dataclass(frozen=True)
class MatchResult:
    confidence: MatchConfidence
    tmdb_id: int | None = None
    matched_title: str | None = None
    year: int | None = None
    poster_path: str | None = None
    release_date: str | None = None
    media_type: MediaType = "movie"
    # Set when the lookup itself errored rather than returning no candidates.
    lookup_error: bool = False

    @property
    def matched(self) -> bool:
        return self.confidence != "failed" and self.tmdb_id is not None


FAILED_MATCH = MatchResult(confidence="failed")


@dataclass(frozen=True)
class ResolveOutcome:
    action: ResultAction


@dataclass(frozen=True)
class ImportStartResult:
    job_id: uuid.UUID
    total_items: int
    parse_errors: list[str]
    limit_applied: bool = False


class ImportConfig(BaseModel):
    source: ImportSource
    conflict_strategy: ConflictStrategy
    import_ratings: bool
    import_watchlist: bool
    import_watched: bool
    mark_rewatch_as_tag: bool
