# ecfr_analyzer/models/refresh_progress.py
import enum
from datetime import datetime
from sqlalchemy import Column, String, Text, DateTime, Enum, Integer, JSON, Index
from ecfr_analyzer.database import Base


class RefreshType(str, enum.Enum):
    INITIAL      = "initial"
    REFRESH      = "refresh"
    SINGLE_TITLE = "single_title"


class RefreshStatus(str, enum.Enum):
    PENDING     = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED   = "completed"
    FAILED      = "failed"


class RefreshRecord(Base):
    """Progress of one ingestion pass over the eCFR titles."""
    __tablename__ = "refresh_progress"
    __table_args__ = (
        Index("ix_refresh_progress_type_started", "type", "started_at"),
    )

    id                   = Column(Integer, primary_key=True, autoincrement=True)
    type                 = Column(Enum(RefreshType), nullable=False)
    status               = Column(Enum(RefreshStatus), default=RefreshStatus.PENDING, nullable=False)
    total_titles         = Column(Integer, default=0, nullable=False)
    processed_titles     = Column(Integer, default=0, nullable=False)
    current_title        = Column(JSON, nullable=True)     # {number, name, startedAt}
    last_processed_title = Column(JSON, nullable=True)     # {number, name, completedAt}
    failed_titles        = Column(JSON, default=list)      # [{number, name, error, failedAt}]
    started_at           = Column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at         = Column(DateTime, nullable=True)
    last_error           = Column(Text, nullable=True)
    triggered_by         = Column(String(64), default="manual")
