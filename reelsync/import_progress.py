from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
import uuid

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from .config import IMPORT_JOBS_LIST_LIMIT
from .import_types import TERMINAL_JOB_STATUSES, ImportJobBusyError
from .models import ImportJob, ImportJobItem


@dataclass(frozen=True)
class JobItemsPage:
    items: list[ImportJobItem]
    has_more: bool


def _isoformat(value) -> str | None:
    return value.isoformat() if value else None


def job_percentage(job: ImportJob) -> int:
    total = job.total_items or 0
    if total <= 0:
        return 0
    ratio = Decimal(job.processed_items or 0) * 100 / Decimal(total)
    return int(ratio.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def serialize_job(job: ImportJob) -> dict:
    return {
        "id": str(job.id),
        "source": job.source,
        "status": job.status,
        "total_items": job.total_items,
        "processed_items": job.processed_items,
        "successful_items": job.successful_items,
        "failed_items": job.failed_items,
        "skipped_items": job.skipped_items,
        "error_message": job.error_message,
        "percentage": job_percentage(job),
        "started_at": _isoformat(job.started_at),
        "completed_at": _isoformat(job.completed_at),
        "created_at": _isoformat(job.created_at),
    }


def serialize_job_item(item: ImportJobItem) -> dict:
    return {
        "id": str(item.id),
        "position": item.position,
        "source_title": item.source_title,
        "source_year": item.source_year,
        "source_rating": item.source_rating,
        "source_status": item.source_status,
        "tmdb_id": item.tmdb_id,
        "matched_title": item.matched_title,
        "match_confidence": item.match_confidence,
        "status": item.status,
        "result_action": item.result_action,
        "error_message": item.error_message,
        "created_at": _isoformat(item.created_at),
    }


async def get_job(db: AsyncSession, job_id: uuid.UUID, user_id: uuid.UUID) -> ImportJob | None:
    # populate_existing keeps repeated polls on one session from returning stale counters.
    return (
        await db.execute(
            select(ImportJob)
            .where(ImportJob.id == job_id, ImportJob.user_id == user_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()


async def get_job_items(
    db: AsyncSession,
    job_id: uuid.UUID,
    user_id: uuid.UUID,
    failed_only: bool = False,
    limit: int | None = None,
    offset: int = 0,
) -> JobItemsPage | None:
    job = await get_job(db, job_id, user_id)
    if job is None:
        return None

    query = (
        select(ImportJobItem)
        .where(ImportJobItem.import_job_id == job.id)
        .order_by(ImportJobItem.position.asc())
        .offset(max(0, offset))
    )
    if failed_only:
        query = query.where(ImportJobItem.status == "failed")
    if limit is not None:
        query = query.limit(limit + 1)

    rows = list((await db.execute(query)).scalars().all())
    has_more = limit is not None and len(rows) > limit
    if has_more:
        rows = rows[:limit]
    return JobItemsPage(items=rows, has_more=has_more)


async def get_user_jobs(
    db: AsyncSession,
    user_id: uuid.UUID,
    limit: int = IMPORT_JOBS_LIST_LIMIT,
) -> list[ImportJob]:
    rows = (
        await db.execute(
            select(ImportJob)
            .where(ImportJob.user_id == user_id)
            .order_by(ImportJob.created_at.desc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
    ).scalars().all()
    return list(rows)


async def delete_job(db: AsyncSession, job_id: uuid.UUID, user_id: uuid.UUID) -> bool:
    job = await get_job(db, job_id, user_id)
    if job is None:
        return False
    if job.status not in TERMINAL_JOB_STATUSES:
        raise ImportJobBusyError("Import job is still running.")
    await db.execute(delete(ImportJobItem).where(ImportJobItem.import_job_id == job.id))
    await db.delete(job)
    await db.flush()
    return True
