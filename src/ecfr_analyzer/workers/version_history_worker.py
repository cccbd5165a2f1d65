import logging
from sqlalchemy.orm import Session
from ecfr_analyzer.config import settings
from ecfr_analyzer.dao.analysis_dao import upsert_version_history
from ecfr_analyzer.models.job_record import JobKind
from ecfr_analyzer.tools.ecfr_client import EcfrClient
from ecfr_analyzer.workers.base import TitleWorker, WorkItem

logger = logging.getLogger(__name__)


class VersionHistoryWorker(TitleWorker):
    kind = JobKind.VERSION_HISTORY

    def __init__(self, *args, client: EcfrClient | None = None, request_delay: float | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.client = client or EcfrClient()
        self.request_delay = settings.ecfr_request_delay_seconds if request_delay is None else request_delay

    def process_item(self, db: Session, item: WorkItem) -> None:
        versions = self.client.fetch_title_versions(item.title_number)
        upsert_version_history(db, item.title_number, versions)
        logger.info("Title %s: %d versions recorded", item.title_number, len(versions))

    def pause_between_items(self) -> bool:
        return self.channel.wait_for_stop(self.request_delay)

    def close(self) -> None:
        self.client.close()
