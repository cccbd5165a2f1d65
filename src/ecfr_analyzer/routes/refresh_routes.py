"""
Ingestion refresh progress (read side + retry of failed titles).
GET  /refresh/progress?type=initial        latest record of a type
GET  /refresh/history?type=&limit=10       most recent records
POST /refresh/retry-failed {progressId}    clear failed titles so the next pass retries them
"""
import logging
from fastapi import APIRouter, Body, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from ecfr_analyzer.dao import refresh_dao
from ecfr_analyzer.database import get_db
from ecfr_analyzer.models.refresh_progress import RefreshRecord, RefreshType
from ecfr_analyzer.services.audit_service import log_event

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/refresh", tags=["Refresh"])


class RetryFailedRequest(BaseModel):
    progressId: int | None = None


# ── Serializer helpers ───────────────────────────────────────────────────────

def _iso(value):
    return value.isoformat() if value else None


def _serialize_progress(r: RefreshRecord) -> dict:
    return {
        "id"                : r.id,
        "type"              : r.type.value,
        "status"            : r.status.value,
        "totalTitles"       : r.total_titles,
        "processedTitles"   : r.processed_titles,
        "percentage"        : refresh_dao.percentage(r),
        "currentTitle"      : r.current_title,
        "lastProcessedTitle": r.last_processed_title,
        "failedTitles"      : r.failed_titles or [],
        "startedAt"         : _iso(r.started_at),
        "completedAt"       : _iso(r.completed_at),
        "lastError"         : r.last_error,
    }


def _serialize_history(r: RefreshRecord) -> dict:
    return {
        "id"             : r.id,
        "type"           : r.type.value,
        "status"         : r.status.value,
        "totalTitles"    : r.total_titles,
        "processedTitles": r.processed_titles,
        "percentage"     : refresh_dao.percentage(r),
        "failedCount"    : len(r.failed_titles or []),
        "startedAt"      : _iso(r.started_at),
        "completedAt"    : _iso(r.completed_at),
        "duration"       : refresh_dao.duration_seconds(r),
    }


def _parse_type(value: str | None, default: RefreshType | None) -> RefreshType | None:
    if value is None:
        return default
    try:
        return RefreshType(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown refresh type '{value}'")


# ── Routes ───────────────────────────────────────────────────────────────────

@router.get("/progress")
def get_progress(type: str | None = None, db: Session = Depends(get_db)):
    refresh_type = _parse_type(type, RefreshType.INITIAL)
    record = refresh_dao.get_latest(db, refresh_type)
    if record is None:
        return {"status": "no_runs", "type": refresh_type.value, "message": "No refresh runs recorded"}
    return _serialize_progress(record)


@router.get("/history")
def get_history(type: str | None = None, limit: int = 10, db: Session = Depends(get_db)):
    refresh_type = _parse_type(type, None)
    records = refresh_dao.get_history(db, refresh_type, limit=min(max(limit, 1), 100))
    return {"history": [_serialize_history(r) for r in records]}


@router.post("/retry-failed")
def retry_failed(body: RetryFailedRequest | None = Body(None), db: Session = Depends(get_db)):
    if body is None or body.progressId is None:
        raise HTTPException(status_code=400, detail="progressId is required")
    record = refresh_dao.get_by_id(db, body.progressId)
    if record is None:
        raise HTTPException(status_code=404, detail="Progress record not found")
    if not record.failed_titles:
        return {"message": "No failed titles to retry", "clearedTitles": []}

    cleared = refresh_dao.clear_failed_titles(db, record)
    try:
        log_event(db, "REFRESH_RETRY_REQUESTED", None, actor="api",
                  detail={"progressId": record.id, "titles": cleared})
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Could not record retry of titles %s on refresh %s: %s", cleared, body.progressId, e)
    return {"message": "Failed titles cleared for retry", "clearedTitles": cleared}
