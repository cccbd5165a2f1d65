from sqlalchemy.orm import Session
from ecfr_analyzer.dao.analysis_dao import upsert_age_distribution
from ecfr_analyzer.dao.corpus_dao import get_version_history
from ecfr_analyzer.models.job_record import JobKind
from ecfr_analyzer.tools.text_metrics import bucket_ages
from ecfr_analyzer.workers.base import TitleWorker, WorkItem


class AgeDistributionWorker(TitleWorker):
    """Buckets each title's amendment dates, as recorded by the version_history job."""
    kind = JobKind.AGE_DISTRIBUTION

    def process_item(self, db: Session, item: WorkItem) -> None:
        history = get_version_history(db, item.title_number)
        if history is None:
            raise LookupError(f"No version history for title {item.title_number}; run version_history first")
        distribution = bucket_ages(v.get("date") for v in history.versions or [])
        upsert_age_distribution(db, item.title_number, distribution)
