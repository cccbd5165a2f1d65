"""
ProgressStore: persistence adapter over JobRecord.
Every change to a job goes through apply(); there is no in-memory status anywhere else,
so a restarted service sees exactly what the last writer committed.
"""
import logging
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type
from ecfr_analyzer.models.job_record import JobRecord, JobKind, JobStatus
from ecfr_analyzer.states.job_state import (
    StatusPatch, ProgressTriplePatch, CurrentItemPatch, ResumeDataPatch,
    StatisticsPatch, ErrorPatch, TimestampPatch, RunTimePatch,
)

logger = logging.getLogger(__name__)

_KIND_ORDER = {kind: i for i, kind in enumerate(JobKind)}

_storage_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
    retry=retry_if_exception_type(SQLAlchemyError),
    reraise=True,
)


class ProgressStore:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def ensure(self, kind: JobKind) -> JobRecord:
        """Create the default record for kind if it does not exist yet."""
        with self._session_factory() as db:
            record = _get(db, kind)
            if record is not None:
                return record
            record = JobRecord(
                job_kind=kind,
                status=JobStatus.STOPPED,
                progress_current=0,
                progress_total=0,
                progress_percentage=0,
                total_run_time=0,
                items_processed=0,
                items_failed=0,
                average_time_per_item=0.0,
            )
            db.add(record)
            try:
                db.commit()
            except IntegrityError:
                # another initializer won the insert
                db.rollback()
                return _get(db, kind)
            db.refresh(record)
            logger.info("JobRecord ensured for %s", kind.value)
            return record

    def load(self, kind: JobKind) -> JobRecord | None:
        with self._session_factory() as db:
            return _get(db, kind)

    def list_all(self) -> list[JobRecord]:
        with self._session_factory() as db:
            records = db.query(JobRecord).all()
        return sorted(records, key=lambda r: _KIND_ORDER[r.job_kind])

    @_storage_retry
    def apply(self, kind: JobKind, *patches) -> JobRecord:
        """Apply patches to one JobRecord in a single transaction."""
        with self._session_factory() as db:
            record = db.query(JobRecord).filter_by(job_kind=kind).with_for_update().first()
            if record is None:
                raise LookupError(f"No JobRecord for {kind.value}; call ensure() first")
            for patch in patches:
                _apply_patch(record, patch)
            try:
                db.commit()
            except SQLAlchemyError:
                db.rollback()
                raise
            db.refresh(record)
            return record


def _get(db: Session, kind: JobKind) -> JobRecord | None:
    return db.query(JobRecord).filter_by(job_kind=kind).first()


def _apply_patch(record: JobRecord, patch) -> None:
    if isinstance(patch, StatusPatch):
        record.status = patch.status
    elif isinstance(patch, ProgressTriplePatch):
        record.progress_current = patch.progress.current
        record.progress_total = patch.progress.total
        record.progress_percentage = patch.progress.percentage
    elif isinstance(patch, CurrentItemPatch):
        record.current_item = patch.current_item.model_dump() if patch.current_item else None
    elif isinstance(patch, ResumeDataPatch):
        record.resume_data = patch.resume_data
    elif isinstance(patch, StatisticsPatch):
        if patch.items_processed is not None:
            record.items_processed = (record.items_processed or 0) + patch.items_processed if patch.increment \
                else patch.items_processed
        if patch.items_failed is not None:
            record.items_failed = (record.items_failed or 0) + patch.items_failed if patch.increment \
                else patch.items_failed
        if patch.average_time_per_item is not None:
            record.average_time_per_item = patch.average_time_per_item
    elif isinstance(patch, ErrorPatch):
        record.error = patch.error
    elif isinstance(patch, TimestampPatch):
        setattr(record, patch.field, patch.value)
    elif isinstance(patch, RunTimePatch):
        record.total_run_time = (record.total_run_time or 0) + max(patch.add_ms, 0)
    else:
        raise TypeError(f"Unknown progress patch: {type(patch).__name__}")


def _iso(value):
    return value.isoformat() if value else None


def to_status(record: JobRecord) -> dict:
    """Status projection returned by the control API."""
    return {
        "jobKind"           : record.job_kind.value,
        "status"            : record.status.value,
        "progress"          : {
            "current"   : record.progress_current,
            "total"     : record.progress_total,
            "percentage": record.progress_percentage,
        },
        "currentItem"       : _camel_item(record.current_item),
        "lastStartTime"     : _iso(record.last_start_time),
        "lastStopTime"      : _iso(record.last_stop_time),
        "lastCompletedTime" : _iso(record.last_completed_time),
        "totalRunTime"      : record.total_run_time,
        "error"             : record.error,
        "statistics"        : {
            "itemsProcessed"    : record.items_processed,
            "itemsFailed"       : record.items_failed,
            "averageTimePerItem": record.average_time_per_item,
        },
    }


def _camel_item(item: dict | None) -> dict | None:
    if not item:
        return None
    return {
        "titleNumber": item.get("title_number"),
        "titleName"  : item.get("title_name"),
        "description": item.get("description"),
    }
