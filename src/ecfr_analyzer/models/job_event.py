# ecfr_analyzer/models/job_event.py
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Integer, JSON, Index
from ecfr_analyzer.database import Base


class JobEvent(Base):
    """Append-only trail of control-plane transitions."""
    __tablename__ = "job_events"
    __table_args__ = (
        Index("ix_job_events_kind_created", "job_kind", "created_at"),
    )

    id         = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(String(64), nullable=False)
    job_kind   = Column(String(64), nullable=True)
    actor      = Column(String(128), default="system", nullable=False)
    detail     = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
