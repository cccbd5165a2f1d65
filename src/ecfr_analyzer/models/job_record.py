# ecfr_analyzer/models/job_record.py
import enum
from sqlalchemy import Column, String, Text, DateTime, Enum, Integer, BigInteger, Float, JSON, Index
from sqlalchemy.sql import func
from ecfr_analyzer.database import Base


class JobKind(str, enum.Enum):
    TEXT_METRICS     = "text_metrics"
    AGE_DISTRIBUTION = "age_distribution"
    VERSION_HISTORY  = "version_history"
    SECTION_ANALYSIS = "section_analysis"


class JobStatus(str, enum.Enum):
    STOPPED   = "stopped"
    RUNNING   = "running"
    COMPLETED = "completed"
    FAILED    = "failed"


class JobRecord(Base):
    """Persisted state of one background analysis job. Written only by the orchestrator."""
    __tablename__ = "analysis_jobs"
    __table_args__ = (
        Index("ix_analysis_jobs_kind_status", "job_kind", "status"),
    )

    id                    = Column(Integer, primary_key=True, autoincrement=True)
    job_kind              = Column(Enum(JobKind), unique=True, nullable=False)
    status                = Column(Enum(JobStatus), default=JobStatus.STOPPED, nullable=False)

    progress_current      = Column(Integer, default=0, nullable=False)
    progress_total        = Column(Integer, default=0, nullable=False)
    progress_percentage   = Column(Integer, default=0, nullable=False)
    current_item          = Column(JSON, nullable=True)   # {titleNumber, titleName, description}

    last_start_time       = Column(DateTime, nullable=True)
    last_stop_time        = Column(DateTime, nullable=True)
    last_completed_time   = Column(DateTime, nullable=True)
    total_run_time        = Column(BigInteger, default=0, nullable=False)   # ms, all runs

    error                 = Column(Text, nullable=True)
    resume_data           = Column(JSON, nullable=True)

    items_processed       = Column(Integer, default=0, nullable=False)
    items_failed          = Column(Integer, default=0, nullable=False)
    average_time_per_item = Column(Float, default=0.0, nullable=False)        # ms

    created_at            = Column(DateTime, server_default=func.now())
    updated_at            = Column(DateTime, server_default=func.now(), onupdate=func.now())
