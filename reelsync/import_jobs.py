import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
import uuid

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import database
from .audit import add_audit_log
from .config import CATALOG_MAX_CONSECUTIVE_ERRORS, IMPORT_ITEM_LIMIT
from .import_matcher import match_item
from .import_parsers import parse_export
from .import_resolver import resolve_conflict
from .import_types import (
    TERMINAL_JOB_STATUSES,
    CatalogUnavailableError,
    ImportConfig,
    ImportItem,
    ImportParseError,
    ImportStartResult,
    LibraryWriteError,
    MatchResult,
)
from .models import ImportJob, ImportJobItem

logger = logging.getLogger(__name__)

ERROR_MESSAGE_MAX_LENGTH = 500
COUNTER_COLUMNS = {
    "success": "successful_items",
    "failed": "failed_items",
    "skipped": "skipped_items",
}

_running_jobs: set[asyncio.Task] = set()


@dataclass(frozen=True)
class ItemOutcome:
    status: str
    match_confidence: str
    tmdb_id: int | None = None
    matched_title: str | None = None
    result_action: str | None = None
    error_message: str | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _truncate(message: str | None) -> str | None:
    if not message:
        return None
    return message[:ERROR_MESSAGE_MAX_LENGTH]


def _describe(item: ImportItem) -> str:
    return f'"{item.title}" ({item.year or "unknown year"})'


async def create_import_job(
    db: AsyncSession,
    user_id: uuid.UUID,
    source: str,
    total_items: int,
) -> ImportJob:
    job = ImportJob(
        user_id=user_id,
        source=source,
        status="pending",
        total_items=total_items,
        created_at=_utcnow(),
    )
    db.add(job)
    await db.flush()
    return job


async def mark_job_processing(db: AsyncSession, job_id: uuid.UUID) -> None:
    await db.execute(
        update(ImportJob)
        .where(ImportJob.id == job_id, ImportJob.status == "pending")
        .values(status="processing", started_at=_utcnow())
    )


async def record_item_outcome(
    db: AsyncSession,
    job_id: uuid.UUID,
    position: int,
    item: ImportItem,
    outcome: ItemOutcome,
) -> None:
    db.add(
        ImportJobItem(
            import_job_id=job_id,
            position=position,
            source_title=item.title,
            source_year=item.year,
            source_rating=item.source_rating,
            source_status=item.status,
            tmdb_id=outcome.tmdb_id,
            matched_title=outcome.matched_title,
            match_confidence=outcome.match_confidence,
            status=outcome.status,
            result_action=outcome.result_action,
            error_message=_truncate(outcome.error_message),
            created_at=_utcnow(),
        )
    )
    counter = COUNTER_COLUMNS[outcome.status]
    result = await db.execute(
        update(ImportJob)
        .where(ImportJob.id == job_id, ImportJob.status == "processing")
        .values(
            {
                "processed_items": ImportJob.processed_items + 1,
                counter: getattr(ImportJob, counter) + 1,
            }
        )
        .execution_options(synchronize_session=False)
    )
    if (result.rowcount or 0) != 1:
        raise RuntimeError(f"Import job {job_id} is not processing; cannot record item {position}")


async def finalize_job(
    db: AsyncSession,
    job_id: uuid.UUID,
    status: str,
    error_message: str | None = None,
) -> bool:
    """Move a job into a terminal state. Jobs already terminal are left alone."""
    if status not in TERMINAL_JOB_STATUSES:
        raise ValueError(f"{status!r} is not a terminal job status")
    result = await db.execute(
        update(ImportJob)
        .where(ImportJob.id == job_id, ImportJob.status.not_in(TERMINAL_JOB_STATUSES))
        .values(status=status, completed_at=_utcnow(), error_message=_truncate(error_message))
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) > 0


def _unmatched_outcome(item: ImportItem, match: MatchResult) -> ItemOutcome:
    if match.lookup_error:
        message = f"Catalog lookup failed for {_describe(item)}"
    else:
        message = f"No TMDB match found for {_describe(item)}"
    return ItemOutcome(status="failed", match_confidence="failed", error_message=message)


async def _resolve_item(
    session_factory: async_sessionmaker,
    user_id: uuid.UUID,
    item: ImportItem,
    match: MatchResult,
    config: ImportConfig,
) -> ItemOutcome:
    if not match.matched:
        return _unmatched_outcome(item, match)

    async with session_factory() as db:
        try:
            resolved = await resolve_conflict(db, user_id, item, match, config)
            await db.commit()
        except (LibraryWriteError, SQLAlchemyError) as exc:
            await db.rollback()
            logger.warning("Library write failed for %s: %s", _describe(item), exc)
            return ItemOutcome(
                status="failed",
                match_confidence=match.confidence,
                tmdb_id=match.tmdb_id,
                matched_title=match.matched_title,
                error_message=str(exc),
            )

    return ItemOutcome(
        status="skipped" if resolved.action == "skipped_existing" else "success",
        match_confidence=match.confidence,
        tmdb_id=match.tmdb_id,
        matched_title=match.matched_title,
        result_action=resolved.action,
    )


async def _fail_job(session_factory: async_sessionmaker, job_id: uuid.UUID, message: str) -> None:
    try:
        async with session_factory() as db:
            await finalize_job(db, job_id, "failed", message)
            await db.commit()
    except SQLAlchemyError:
        logger.exception("Could not mark import job %s as failed", job_id)


async def run_import_job(
    job_id: uuid.UUID,
    user_id: uuid.UUID,
    items: list[ImportItem],
    config: ImportConfig,
    session_factory: async_sessionmaker | None = None,
) -> None:
    """Process every item of a pending job in source order, one at a time.

    Per-item problems become item rows; only faults that stop the loop itself
    (job state cannot be written, catalog unusable) fail the job.
    """
    session_factory = session_factory or database.async_session
    logger.info("Import job %s started: %d items from %s", job_id, len(items), config.source)
    consecutive_lookup_errors = 0

    try:
        async with session_factory() as db:
            await mark_job_processing(db, job_id)
            await db.commit()

        for position, item in enumerate(items):
            match = await match_item(item)
            outcome = await _resolve_item(session_factory, user_id, item, match, config)
            async with session_factory() as db:
                await record_item_outcome(db, job_id, position, item, outcome)
                await db.commit()

            consecutive_lookup_errors = consecutive_lookup_errors + 1 if match.lookup_error else 0
            if consecutive_lookup_errors >= CATALOG_MAX_CONSECUTIVE_ERRORS:
                raise CatalogUnavailableError(
                    f"TMDB lookups failed {consecutive_lookup_errors} times in a row; import stopped."
                )

        async with session_factory() as db:
            await finalize_job(db, job_id, "completed")
            await db.commit()
    except asyncio.CancelledError:
        await _fail_job(session_factory, job_id, "Import was interrupted.")
        raise
    except CatalogUnavailableError as exc:
        logger.error("Import job %s failed: %s", job_id, exc)
        await _fail_job(session_factory, job_id, str(exc))
        return
    except Exception as exc:
        logger.exception("Import job %s failed", job_id)
        await _fail_job(session_factory, job_id, f"Import failed: {exc}")
        return

    logger.info("Import job %s completed", job_id)


def start_import_job(
    job_id: uuid.UUID,
    user_id: uuid.UUID,
    items: list[ImportItem],
    config: ImportConfig,
    session_factory: async_sessionmaker | None = None,
) -> asyncio.Task:
    task = asyncio.create_task(
        run_import_job(job_id, user_id, items, config, session_factory),
        name=f"import-job-{job_id}",
    )
    # The loop only keeps weak references to tasks.
    _running_jobs.add(task)
    task.add_done_callback(_running_jobs.discard)
    return task


async def wait_for_running_jobs(timeout: float | None = None) -> None:
    """Wait for running jobs; any still running after ``timeout`` seconds are cancelled."""
    tasks = list(_running_jobs)
    if not tasks:
        return
    _, pending = await asyncio.wait(tasks, timeout=timeout)
    if not pending:
        return
    logger.warning("Cancelling %d import jobs still running at shutdown", len(pending))
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)


async def start_import(
    db: AsyncSession,
    user_id: uuid.UUID,
    source: str,
    raw_bytes: bytes,
    config: ImportConfig,
    session_factory: async_sessionmaker | None = None,
) -> ImportStartResult:
    if source != config.source:
        raise ImportParseError(f'Upload source "{source}" does not match import settings "{config.source}".')

    parsed = parse_export(source, raw_bytes)
    items = parsed.items
    if not items:
        raise ImportParseError("No items found in export.", errors=parsed.errors)

    limit_applied = False
    if IMPORT_ITEM_LIMIT > 0 and len(items) > IMPORT_ITEM_LIMIT:
        items = items[:IMPORT_ITEM_LIMIT]
        limit_applied = True

    job = await create_import_job(db, user_id, source, len(items))
    add_audit_log(
        db,
        action="user.import_started",
        message=(
            f"Started {source} import of {len(items)} titles "
            f"({len(parsed.errors)} rows could not be read)."
        ),
        actor_user_id=user_id,
    )
    await db.commit()

    start_import_job(job.id, user_id, items, config, session_factory)
    return ImportStartResult(
        job_id=job.id,
        total_items=len(items),
        parse_errors=parsed.errors,
        limit_applied=limit_applied,
    )
