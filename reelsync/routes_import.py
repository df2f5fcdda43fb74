from typing import Literal
import uuid

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from .audit import add_audit_log
from .auth import get_current_user
from .config import IMPORT_ITEM_LIMIT, IMPORT_MAX_UPLOAD_BYTES, IMPORT_UPLOAD_RATE_LIMIT
from .database import get_db
from .import_jobs import start_import
from .import_progress import (
    delete_job,
    get_job,
    get_job_items,
    get_user_jobs,
    serialize_job,
    serialize_job_item,
)
from .import_types import ImportConfig, ImportJobBusyError, ImportParseError
from .limits import limiter
from .models import User

router = APIRouter(prefix="/api/import", tags=["import"])

EXPECTED_EXTENSIONS = {
    "letterboxd": (".zip", "Letterboxd imports require the export ZIP file."),
    "imdb": (".csv", "IMDb imports require a CSV file."),
}


def _check_upload_name(source: str, filename: str | None) -> None:
    extension, message = EXPECTED_EXTENSIONS[source]
    name = (filename or "").strip().lower()
    if name and not name.endswith(extension):
        raise HTTPException(status_code=400, detail=message)


@router.post("/upload")
@limiter.limit(IMPORT_UPLOAD_RATE_LIMIT)
async def upload_import(
    request: Request,
    file: UploadFile = File(...),
    source: Literal["letterboxd", "imdb"] = Form(...),
    conflict_strategy: Literal["skip", "overwrite", "keep_higher_rating"] = Form(...),
    import_ratings: bool = Form(...),
    import_watchlist: bool = Form(...),
    import_watched: bool = Form(...),
    mark_rewatch_as_tag: bool = Form(...),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    _check_upload_name(source, file.filename)
    config = ImportConfig(
        source=source,
        conflict_strategy=conflict_strategy,
        import_ratings=import_ratings,
        import_watchlist=import_watchlist,
        import_watched=import_watched,
        mark_rewatch_as_tag=mark_rewatch_as_tag,
    )
    raw_bytes = await file.read(IMPORT_MAX_UPLOAD_BYTES + 1)

    try:
        started = await start_import(db, user.id, source, raw_bytes, config)
    except ImportParseError as exc:
        detail: dict | str = str(exc)
        if exc.errors:
            detail = {"message": str(exc), "parse_errors": exc.errors}
        raise HTTPException(status_code=400, detail=detail)

    message = "Import started."
    if started.limit_applied:
        message = f"{message} Importing the first {IMPORT_ITEM_LIMIT} titles."
    return {
        "ok": True,
        "job_id": str(started.job_id),
        "total_items": started.total_items,
        "parse_errors": started.parse_errors,
        "message": message,
    }


@router.get("/jobs")
async def list_import_jobs(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    jobs = await get_user_jobs(db, user.id)
    return {"jobs": [serialize_job(job) for job in jobs]}


@router.get("/jobs/{job_id}")
async def import_job_status(
    job_id: uuid.UUID,
    include_items: bool = Query(False),
    failed_only: bool = Query(False),
    limit: int | None = Query(None, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    job = await get_job(db, job_id, user.id)
    if job is None:
        raise HTTPException(status_code=404, detail="Import job not found")

    payload = serialize_job(job)
    if include_items:
        page = await get_job_items(db, job_id, user.id, failed_only=failed_only, limit=limit, offset=offset)
        if page is None:
            raise HTTPException(status_code=404, detail="Import job not found")
        payload["items"] = [serialize_job_item(item) for item in page.items]
        payload["has_more"] = page.has_more
    return payload


@router.delete("/jobs/{job_id}")
async def remove_import_job(
    job_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        deleted = await delete_job(db, job_id, user.id)
    except ImportJobBusyError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    if not deleted:
        raise HTTPException(status_code=404, detail="Import job not found")

    add_audit_log(
        db,
        action="user.import_deleted",
        message=f"Import job {job_id} deleted.",
        actor_user_id=user.id,
    )
    await db.commit()
    return {"ok": True}
