"""
RefreshRecord access. The read side backs /refresh; the write side is the contract
the ingestion pipeline follows so that a cleared failed list is retried on its next pass.
"""
import logging
from datetime import datetime

from sqlalchemy.orm import Session
from ecfr_analyzer.models.refresh_progress import RefreshRecord, RefreshType, RefreshStatus

logger = logging.getLogger(__name__)


# ── Reads ────────────────────────────────────────────────────────────────────

def get_latest(db: Session, refresh_type: RefreshType) -> RefreshRecord | None:
    return (
        db.query(RefreshRecord)
        .filter_by(type=refresh_type)
        .order_by(RefreshRecord.started_at.desc(), RefreshRecord.id.desc())
        .first()
    )


def get_history(db: Session, refresh_type: RefreshType | None = None, limit: int = 10) -> list[RefreshRecord]:
    q = db.query(RefreshRecord)
    if refresh_type is not None:
        q = q.filter_by(type=refresh_type)
    return q.order_by(RefreshRecord.started_at.desc(), RefreshRecord.id.desc()).limit(limit).all()


def get_by_id(db: Session, progress_id: int) -> RefreshRecord | None:
    return db.query(RefreshRecord).filter_by(id=progress_id).first()


def clear_failed_titles(db: Session, record: RefreshRecord) -> list[int]:
    """Empty failed_titles and reopen the record. Returns the cleared title numbers."""
    cleared = [t.get("number") for t in (record.failed_titles or [])]
    record.failed_titles = []
    record.status = RefreshStatus.IN_PROGRESS
    record.completed_at = None
    db.commit()
    logger.info("Refresh %s: cleared %d failed titles for retry", record.id, len(cleared))
    return cleared


# ── Writes used by the ingestion pipeline ────────────────────────────────────

def create_refresh(db: Session, refresh_type: RefreshType, total_titles: int,
                   triggered_by: str = "manual") -> RefreshRecord:
    record = RefreshRecord(
        type=refresh_type,
        status=RefreshStatus.IN_PROGRESS,
        total_titles=total_titles,
        processed_titles=0,
        failed_titles=[],
        started_at=datetime.utcnow(),
        triggered_by=triggered_by,
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    return record


def mark_title_started(db: Session, record: RefreshRecord, number: int, name: str) -> None:
    record.current_title = {"number": number, "name": name, "startedAt": datetime.utcnow().isoformat()}
    db.commit()


def mark_title_processed(db: Session, record: RefreshRecord, number: int, name: str) -> None:
    record.processed_titles = (record.processed_titles or 0) + 1
    record.last_processed_title = {"number": number, "name": name, "completedAt": datetime.utcnow().isoformat()}
    record.current_title = None
    # a retried title that now succeeds leaves the failed list
    record.failed_titles = [t for t in (record.failed_titles or []) if t.get("number") != number]
    db.commit()


def mark_title_failed(db: Session, record: RefreshRecord, number: int, name: str, error: str) -> None:
    failed = [t for t in (record.failed_titles or []) if t.get("number") != number]
    failed.append({"number": number, "name": name, "error": error, "failedAt": datetime.utcnow().isoformat()})
    record.failed_titles = failed
    record.current_title = None
    record.last_error = error
    db.commit()


def complete_refresh(db: Session, record: RefreshRecord) -> None:
    record.status = RefreshStatus.COMPLETED
    record.completed_at = datetime.utcnow()
    record.current_title = None
    db.commit()


def fail_refresh(db: Session, record: RefreshRecord, error: str) -> None:
    record.status = RefreshStatus.FAILED
    record.completed_at = datetime.utcnow()
    record.last_error = error
    db.commit()


# ── Serialisation ────────────────────────────────────────────────────────────

def percentage(record: RefreshRecord) -> int:
    if not record.total_titles:
        return 0
    return round(100 * (record.processed_titles or 0) / record.total_titles)


def duration_seconds(record: RefreshRecord) -> int | None:
    if not record.completed_at or not record.started_at:
        return None
    return int((record.completed_at - record.started_at).total_seconds())
