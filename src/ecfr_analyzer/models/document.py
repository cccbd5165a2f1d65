# ecfr_analyzer/models/document.py
# Written by the ingestion pipeline; the analysis workers only read these tables.
from sqlalchemy import Column, String, Text, Date, Integer, Boolean, UniqueConstraint, Index
from ecfr_analyzer.database import Base


class Title(Base):
    __tablename__ = "titles"

    id       = Column(Integer, primary_key=True, autoincrement=True)
    number   = Column(Integer, unique=True, nullable=False)
    name     = Column(String(256), nullable=False)
    reserved = Column(Boolean, default=False, nullable=False)


class Document(Base):
    __tablename__ = "documents"
    __table_args__ = (
        UniqueConstraint("title_number", "identifier", name="uq_documents_title_identifier"),
        Index("ix_documents_type", "type"),
    )

    id             = Column(Integer, primary_key=True, autoincrement=True)
    title_number   = Column(Integer, nullable=False)
    type           = Column(String(32), nullable=False)      # title | part | section
    identifier     = Column(String(128), nullable=False)
    heading        = Column(String(512), nullable=True)
    content        = Column(Text, nullable=True)
    part           = Column(String(64), nullable=True)
    section        = Column(String(64), nullable=True)
    amendment_date = Column(Date, nullable=True)
