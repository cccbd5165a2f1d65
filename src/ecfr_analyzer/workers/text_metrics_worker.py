import logging
from sqlalchemy.orm import Session
from ecfr_analyzer.config import settings
from ecfr_analyzer.dao.analysis_dao import upsert_text_metrics
from ecfr_analyzer.dao.corpus_dao import get_title_document
from ecfr_analyzer.models.job_record import JobKind
from ecfr_analyzer.tools.text_metrics import analyze_text
from ecfr_analyzer.workers.base import TitleWorker, WorkItem

logger = logging.getLogger(__name__)


class TextMetricsWorker(TitleWorker):
    kind = JobKind.TEXT_METRICS

    def __init__(self, *args, keywords: list[str] | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.keywords = keywords if keywords is not None else settings.analysis_keywords

    def process_item(self, db: Session, item: WorkItem) -> None:
        document = get_title_document(db, item.title_number)
        if document is None:
            raise LookupError(f"No title document stored for title {item.title_number}")
        metrics = analyze_text(document.content, self.keywords)
        upsert_text_metrics(db, item.title_number, metrics)
        logger.debug("Title %s: %d words, readability %.1f",
                     item.title_number, metrics["word_count"], metrics["readability_score"])
