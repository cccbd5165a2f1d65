"""
Worker entry points. run_worker() is the body shared by process and thread workers;
process_main() is the target handed to multiprocessing.
"""
import logging
import sys
from multiprocessing.connection import Connection
from typing import Callable
from ecfr_analyzer.config import configure_logging
from ecfr_analyzer.database import build_session_factory
from ecfr_analyzer.models.job_record import JobKind
from ecfr_analyzer.states.job_state import StartPayload, ErrorMessage
from ecfr_analyzer.workers.base import BaseWorker
from ecfr_analyzer.workers.channel import WorkerChannel
from ecfr_analyzer.workers.text_metrics_worker import TextMetricsWorker
from ecfr_analyzer.workers.age_distribution_worker import AgeDistributionWorker
from ecfr_analyzer.workers.version_history_worker import VersionHistoryWorker
from ecfr_analyzer.workers.section_analysis_worker import SectionAnalysisWorker

logger = logging.getLogger(__name__)

WORKER_CLASSES: dict[JobKind, type[BaseWorker]] = {
    JobKind.TEXT_METRICS    : TextMetricsWorker,
    JobKind.AGE_DISTRIBUTION: AgeDistributionWorker,
    JobKind.VERSION_HISTORY : VersionHistoryWorker,
    JobKind.SECTION_ANALYSIS: SectionAnalysisWorker,
}

WorkerFactory = Callable[[StartPayload, WorkerChannel], BaseWorker]


def build_worker(payload: StartPayload, channel: WorkerChannel) -> BaseWorker:
    worker_cls = WORKER_CLASSES[payload.job_kind]
    return worker_cls(payload, channel, build_session_factory(payload.database_url))


def run_worker(payload: dict, conn: Connection, factory: WorkerFactory | None = None) -> int:
    """Run one job to completion, stop or failure. Returns the exit code."""
    start = StartPayload.model_validate(payload)
    channel = WorkerChannel(conn)
    worker = None
    try:
        worker = (factory or build_worker)(start, channel)
        worker.run()
        return 0
    except Exception as e:
        logger.exception("[%s] Worker failed", start.job_kind.value)
        try:
            channel.send(ErrorMessage(error=f"{type(e).__name__}: {e}"))
        except (OSError, EOFError) as send_error:
            logger.error("[%s] Could not report failure, channel closed: %s", start.job_kind.value, send_error)
        return 1
    finally:
        if worker is not None:
            worker.close()


def process_main(payload: dict, conn: Connection) -> None:
    configure_logging()
    code = run_worker(payload, conn)
    conn.close()
    sys.exit(code)
