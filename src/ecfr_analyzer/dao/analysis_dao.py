import logging
from datetime import date, datetime

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from ecfr_analyzer.models.metric import Metric
from ecfr_analyzer.models.section_analysis import SectionAnalysis
from ecfr_analyzer.models.version_history import VersionHistory

logger = logging.getLogger(__name__)

SCORE_SCALE = 100
HIGH_SCORE_THRESHOLD = 50


# ── Idempotent upserts keyed on natural keys ─────────────────────────────────
# Re-running an item after a crash or a restart must converge on the same row.

def _upsert(db: Session, model, key: dict, values: dict):
    row = db.query(model).filter_by(**key).first()
    if row is None:
        row = model(**key, **values)
        db.add(row)
    else:
        for field, value in values.items():
            setattr(row, field, value)
    try:
        db.commit()
    except IntegrityError:
        # concurrent insert of the same natural key: fall back to updating it
        db.rollback()
        row = db.query(model).filter_by(**key).one()
        for field, value in values.items():
            setattr(row, field, value)
        db.commit()
    return row


def upsert_text_metrics(db: Session, title_number: int, metrics: dict, day: date | None = None) -> Metric:
    return _upsert(
        db, Metric,
        {"title_number": title_number, "analysis_day": day or date.today()},
        {
            "analysis_date"           : datetime.utcnow(),
            "word_count"              : metrics["word_count"],
            "keyword_frequency"       : metrics["keyword_frequency"],
            "complexity_score"        : metrics["complexity_score"],
            "average_sentence_length" : metrics["average_sentence_length"],
            "readability_score"       : metrics["readability_score"],
        },
    )


def upsert_age_distribution(db: Session, title_number: int, distribution: dict, day: date | None = None) -> Metric:
    return _upsert(
        db, Metric,
        {"title_number": title_number, "analysis_day": day or date.today()},
        {"analysis_date": datetime.utcnow(), "regulation_age_distribution": distribution},
    )


def upsert_version_history(db: Session, title_number: int, versions: list[dict]) -> VersionHistory:
    return _upsert(
        db, VersionHistory,
        {"title_number": title_number},
        {"versions": versions, "last_updated": datetime.utcnow()},
    )


def upsert_section_analysis(db: Session, document_id: int, analysis_version: str, values: dict) -> SectionAnalysis:
    return _upsert(
        db, SectionAnalysis,
        {"document_id": document_id, "analysis_version": analysis_version},
        {**values, "analysis_date": datetime.utcnow()},
    )


def get_section_analysis(db: Session, document_id: int, analysis_version: str | None = None) -> SectionAnalysis | None:
    q = db.query(SectionAnalysis).filter_by(document_id=document_id)
    if analysis_version:
        q = q.filter_by(analysis_version=analysis_version)
    return q.order_by(SectionAnalysis.analysis_date.desc()).first()


def get_section_analyses(db: Session, document_ids: list[int]) -> dict[int, SectionAnalysis]:
    """Latest analysis per document for a set of ids, in one query. Ids with no analysis are absent."""
    if not document_ids:
        return {}
    rows = (db.query(SectionAnalysis)
            .filter(SectionAnalysis.document_id.in_(set(document_ids)))
            .order_by(SectionAnalysis.analysis_date.asc(), SectionAnalysis.id.asc())
            .all())
    return {a.document_id: a for a in rows}


def is_section_analyzed(db: Session, document_id: int, analysis_version: str) -> bool:
    return db.query(SectionAnalysis.id).filter_by(
        document_id=document_id, analysis_version=analysis_version
    ).first() is not None


# ── Top-N and aggregate reads ────────────────────────────────────────────────

def get_most_antiquated(db: Session, title_number: int | None = None,
                        min_score: int = HIGH_SCORE_THRESHOLD, limit: int = 10) -> list[SectionAnalysis]:
    q = db.query(SectionAnalysis).filter(SectionAnalysis.antiquated_score >= min_score)
    if title_number is not None:
        q = q.filter(SectionAnalysis.title_number == title_number)
    return q.order_by(SectionAnalysis.antiquated_score.desc(), SectionAnalysis.id.asc()).limit(limit).all()


def get_most_business_unfriendly(db: Session, title_number: int | None = None,
                                 min_score: int = HIGH_SCORE_THRESHOLD, limit: int = 10) -> list[SectionAnalysis]:
    q = db.query(SectionAnalysis).filter(SectionAnalysis.business_unfriendly_score >= min_score)
    if title_number is not None:
        q = q.filter(SectionAnalysis.title_number == title_number)
    return q.order_by(SectionAnalysis.business_unfriendly_score.desc(), SectionAnalysis.id.asc()).limit(limit).all()


def get_analysis_stats(db: Session, title_number: int | None = None) -> dict:
    q = db.query(
        func.count(SectionAnalysis.id),
        func.avg(SectionAnalysis.antiquated_score),
        func.avg(SectionAnalysis.business_unfriendly_score),
        func.max(SectionAnalysis.antiquated_score),
        func.max(SectionAnalysis.business_unfriendly_score),
        func.max(SectionAnalysis.analysis_date),
    )
    if title_number is not None:
        q = q.filter(SectionAnalysis.title_number == title_number)
    total, avg_antiquated, avg_business, max_antiquated, max_business, last_date = q.one()

    def _count(column) -> int:
        cq = db.query(func.count(SectionAnalysis.id)).filter(column >= HIGH_SCORE_THRESHOLD)
        if title_number is not None:
            cq = cq.filter(SectionAnalysis.title_number == title_number)
        return cq.scalar() or 0

    return {
        "totalAnalyzed"             : total or 0,
        "highAntiquatedCount"       : _count(SectionAnalysis.antiquated_score),
        "highBusinessUnfriendlyCount": _count(SectionAnalysis.business_unfriendly_score),
        "avgAntiquatedScore"        : round(float(avg_antiquated), 1) if avg_antiquated is not None else None,
        "avgBusinessUnfriendlyScore": round(float(avg_business), 1) if avg_business is not None else None,
        "maxAntiquatedScore"        : max_antiquated,
        "maxBusinessUnfriendlyScore": max_business,
        "lastAnalysisDate"          : last_date.isoformat() if last_date else None,
    }


# ── Legacy score migration ───────────────────────────────────────────────────

def migrate_legacy_scores(db: Session, batch_size: int = 500) -> int:
    """
    Promote pre-migration 1-9 scores to the 1-100 scale (x10).
    Only rows without metadata.scale are touched, and each is stamped afterwards,
    so running this twice changes nothing the second time.
    """
    migrated = 0
    last_id = 0
    while True:
        rows = (
            db.query(SectionAnalysis)
            .filter(SectionAnalysis.id > last_id)
            .order_by(SectionAnalysis.id.asc())
            .limit(batch_size)
            .all()
        )
        if not rows:
            break
        for row in rows:
            last_id = row.id
            meta = dict(row.analysis_metadata or {})
            if meta.get("scale") == SCORE_SCALE:
                continue
            if row.antiquated_score is not None and row.antiquated_score <= 9:
                row.antiquated_score *= 10
            if row.business_unfriendly_score is not None and row.business_unfriendly_score <= 9:
                row.business_unfriendly_score *= 10
            meta["scale"] = SCORE_SCALE
            row.analysis_metadata = meta
            migrated += 1
        db.commit()
    logger.info("Score migration stamped %d section analyses", migrated)
    return migrated
