import logging
from sqlalchemy.orm import Session
from ecfr_analyzer.config import settings
from ecfr_analyzer.dao.analysis_dao import upsert_section_analysis, is_section_analyzed, SCORE_SCALE
from ecfr_analyzer.dao.corpus_dao import get_section_keys, get_document
from ecfr_analyzer.models.job_record import JobKind
from ecfr_analyzer.states.job_state import SectionCursor
from ecfr_analyzer.tools.section_scoring import SectionScorer, with_fallback_explanations
from ecfr_analyzer.workers.base import BaseWorker, WorkItem

logger = logging.getLogger(__name__)


class SectionAnalysisWorker(BaseWorker):
    """
    Scores every section document with the LLM.
    Sections already analysed for the current analysis version are skipped
    (no LLM call) unless the run was started with restart=true.
    """
    kind = JobKind.SECTION_ANALYSIS

    def __init__(self, *args, scorer: SectionScorer | None = None, request_delay: float | None = None,
                 analysis_version: str | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.scorer = scorer or SectionScorer()
        if request_delay is None:
            rate = settings.analysis_rate_limit_per_minute
            request_delay = 60.0 / rate if rate > 0 else 0.0
        self.request_delay = request_delay
        self.analysis_version = analysis_version or settings.analysis_version
        self._called_llm = False

    def enumerate_items(self, db: Session) -> list[WorkItem]:
        return [
            WorkItem(
                key=(title_number, identifier),
                title_number=title_number,
                name=heading or identifier,
                description=identifier,
                document_id=document_id,
            )
            for title_number, document_id, identifier, heading in get_section_keys(db)
        ]

    def cursor_for(self, item: WorkItem) -> SectionCursor:
        return SectionCursor(last_title_number=item.title_number, last_section_identifier=item.description)

    def process_item(self, db: Session, item: WorkItem) -> None:
        self._called_llm = False
        if not self.payload.restart and is_section_analyzed(db, item.document_id, self.analysis_version):
            logger.debug("Section %s already analysed, skipping", item.description)
            return

        document = get_document(db, item.document_id)
        if document is None:
            raise LookupError(f"Section document {item.document_id} disappeared")

        self._called_llm = True
        scores = with_fallback_explanations(
            self.scorer.score(document.heading or document.identifier, document.content or "")
        )
        upsert_section_analysis(db, document.id, self.analysis_version, {
            "title_number"                   : document.title_number,
            "section_identifier"             : document.identifier,
            "summary"                        : scores.summary,
            "antiquated_score"               : scores.antiquated_score,
            "antiquated_explanation"         : scores.antiquated_explanation,
            "business_unfriendly_score"      : scores.business_unfriendly_score,
            "business_unfriendly_explanation": scores.business_unfriendly_explanation,
            "analysis_metadata"              : {**self.scorer.metadata, "scale": SCORE_SCALE},
        })
        logger.info("Section %s: antiquated=%d business=%d", document.identifier,
                    scores.antiquated_score, scores.business_unfriendly_score)

    def pause_between_items(self) -> bool:
        if not self._called_llm:
            return self.channel.stop_requested()
        return self.channel.wait_for_stop(self.request_delay)
