"""
Section analysis reads.
GET  /analysis/antiquated?titleNumber=&minScore=50&limit=10
GET  /analysis/business-unfriendly?titleNumber=&minScore=50&limit=10
GET  /analysis/stats?titleNumber=
GET  /analysis/sections/{document_id}      (also /analysis/section/{document_id})
POST /analysis/sections/batch {documentIds}  map of documentId to latest analysis
"""
from fastapi import APIRouter, Body, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session
from ecfr_analyzer.dao import analysis_dao
from ecfr_analyzer.database import get_db
from ecfr_analyzer.models.section_analysis import SectionAnalysis

router = APIRouter(prefix="/analysis", tags=["Analysis"])


class BatchRequest(BaseModel):
    documentIds: list[int] | None = None


def _serialize(a: SectionAnalysis) -> dict:
    return {
        "documentId"                   : a.document_id,
        "titleNumber"                  : a.title_number,
        "sectionIdentifier"            : a.section_identifier,
        "analysisVersion"              : a.analysis_version,
        "summary"                      : a.summary,
        "antiquatedScore"              : a.antiquated_score,
        "antiquatedExplanation"        : a.antiquated_explanation,
        "businessUnfriendlyScore"      : a.business_unfriendly_score,
        "businessUnfriendlyExplanation": a.business_unfriendly_explanation,
        "metadata"                     : a.analysis_metadata,
        "analysisDate"                 : a.analysis_date.isoformat() if a.analysis_date else None,
    }


def _clamp_limit(limit: int) -> int:
    return min(max(limit, 1), 100)


@router.get("/antiquated")
def most_antiquated(titleNumber: int | None = None, minScore: int = analysis_dao.HIGH_SCORE_THRESHOLD,
                    limit: int = 10, db: Session = Depends(get_db)):
    rows = analysis_dao.get_most_antiquated(db, titleNumber, minScore, _clamp_limit(limit))
    return {"sections": [_serialize(a) for a in rows]}


@router.get("/business-unfriendly")
def most_business_unfriendly(titleNumber: int | None = None, minScore: int = analysis_dao.HIGH_SCORE_THRESHOLD,
                             limit: int = 10, db: Session = Depends(get_db)):
    rows = analysis_dao.get_most_business_unfriendly(db, titleNumber, minScore, _clamp_limit(limit))
    return {"sections": [_serialize(a) for a in rows]}


@router.get("/stats")
def stats(titleNumber: int | None = None, db: Session = Depends(get_db)):
    return analysis_dao.get_analysis_stats(db, titleNumber)


@router.get("/sections/{document_id}")
@router.get("/section/{document_id}", include_in_schema=False)
def section_analysis(document_id: int, db: Session = Depends(get_db)):
    analysis = analysis_dao.get_section_analysis(db, document_id)
    if not analysis:
        raise HTTPException(status_code=404, detail="Section analysis not found")
    return _serialize(analysis)


@router.post("/sections/batch")
def section_analyses(body: BatchRequest | None = Body(None), db: Session = Depends(get_db)):
    if body is None or body.documentIds is None:
        raise HTTPException(status_code=400, detail="documentIds must be an array")
    analyses = analysis_dao.get_section_analyses(db, body.documentIds)
    return {str(document_id): _serialize(a) for document_id, a in analyses.items()}
