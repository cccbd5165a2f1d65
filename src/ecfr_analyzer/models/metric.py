# ecfr_analyzer/models/metric.py
from datetime import datetime
from sqlalchemy import Column, Date, DateTime, Integer, Float, JSON, Index, UniqueConstraint
from ecfr_analyzer.database import Base


class Metric(Base):
    """Per-title, per-day analysis snapshot. text_metrics and age_distribution fill different columns."""
    __tablename__ = "metrics"
    __table_args__ = (
        UniqueConstraint("title_number", "analysis_day", name="uq_metrics_title_day"),
        Index("ix_metrics_title_date", "title_number", "analysis_date"),
    )

    id                          = Column(Integer, primary_key=True, autoincrement=True)
    title_number                = Column(Integer, nullable=False)
    analysis_day                = Column(Date, nullable=False)
    analysis_date               = Column(DateTime, default=datetime.utcnow, nullable=False)

    word_count                  = Column(Integer, nullable=True)
    keyword_frequency           = Column(JSON, nullable=True)
    complexity_score            = Column(Integer, nullable=True)
    average_sentence_length     = Column(Integer, nullable=True)
    readability_score           = Column(Float, nullable=True)
    regulation_age_distribution = Column(JSON, nullable=True)
