# ecfr_analyzer/models/section_analysis.py
from datetime import datetime
from sqlalchemy import Column, String, Text, DateTime, Integer, JSON, Index, UniqueConstraint
from ecfr_analyzer.database import Base


class SectionAnalysis(Base):
    __tablename__ = "section_analyses"
    __table_args__ = (
        UniqueConstraint("document_id", "analysis_version", name="uq_section_analysis_document_version"),
        Index("ix_section_analysis_title_antiquated", "title_number", "antiquated_score"),
        Index("ix_section_analysis_title_business", "title_number", "business_unfriendly_score"),
        Index("ix_section_analysis_date", "analysis_date"),
    )

    id                             = Column(Integer, primary_key=True, autoincrement=True)
    document_id                    = Column(Integer, nullable=False)
    title_number                   = Column(Integer, nullable=False)
    section_identifier             = Column(String(128), nullable=False)
    analysis_version               = Column(String(16), nullable=False, default="1.0")
    summary                        = Column(Text, nullable=False)
    antiquated_score               = Column(Integer, nullable=False)    # 1-100
    antiquated_explanation         = Column(Text, nullable=False)
    business_unfriendly_score      = Column(Integer, nullable=False)    # 1-100
    business_unfriendly_explanation = Column(Text, nullable=False)
    analysis_metadata              = Column("metadata", JSON, nullable=True)   # {model, temperature, scale}
    analysis_date                  = Column(DateTime, default=datetime.utcnow, nullable=False)
