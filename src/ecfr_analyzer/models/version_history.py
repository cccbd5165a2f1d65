# ecfr_analyzer/models/version_history.py
from datetime import datetime
from sqlalchemy import Column, DateTime, Integer, JSON
from ecfr_analyzer.database import Base


class VersionHistory(Base):
    __tablename__ = "version_histories"

    id           = Column(Integer, primary_key=True, autoincrement=True)
    title_number = Column(Integer, unique=True, nullable=False)
    versions     = Column(JSON, default=list)       # [{date, identifier, name, part, type}]
    last_updated = Column(DateTime, default=datetime.utcnow, nullable=False)
