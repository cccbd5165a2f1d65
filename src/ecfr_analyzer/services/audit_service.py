import logging
from sqlalchemy.orm import Session
from ecfr_analyzer.models.job_event import JobEvent

logger = logging.getLogger(__name__)


def log_event(
        db: Session,
        event_type: str,
        job_kind: str | None = None,
        actor: str = "system",
        detail: dict | None = None,
) -> JobEvent:
    """
    Append one control-plane event.

    Usage:
        log_event(db, "JOB_STARTED", "text_metrics", actor="api",
                  detail={"restart": False})
    """
    entry = JobEvent(
        event_type=event_type,
        job_kind=job_kind,
        actor=actor,
        detail=detail,
    )
    db.add(entry)
    db.commit()
    logger.info("EVENT [%s] job=%s actor=%s", event_type, job_kind, actor)
    return entry


def list_events(db: Session, job_kind: str | None = None, limit: int = 50) -> list[JobEvent]:
    q = db.query(JobEvent)
    if job_kind:
        q = q.filter(JobEvent.job_kind == job_kind)
    return q.order_by(JobEvent.created_at.desc(), JobEvent.id.desc()).limit(limit).all()
