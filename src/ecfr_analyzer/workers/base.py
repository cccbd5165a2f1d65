"""
Generic job loop shared by all four analysis workers.

    enumerate -> skip what the resume cursor covers -> for each item:
        check stop -> process -> emit progress (+ new cursor, statistics)
    -> completed

Per-item exceptions are counted and the loop moves on. Database errors and
anything raised outside process_item() escape run() and end the worker.
"""
import logging
import time
from dataclasses import dataclass
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from ecfr_analyzer.dao.corpus_dao import get_active_titles
from ecfr_analyzer.models.job_record import JobRecord, JobKind
from ecfr_analyzer.states.job_state import (
    StartPayload, Progress, CurrentItem, Statistics,
    TitleCursor, SectionCursor, ProgressMessage, CompletedMessage, parse_resume_data,
)
from ecfr_analyzer.workers.channel import WorkerChannel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkItem:
    key: tuple                      # sort / resume key
    title_number: int
    name: str | None = None
    description: str | None = None
    document_id: int | None = None

    def current_item(self) -> CurrentItem:
        return CurrentItem(title_number=self.title_number, title_name=self.name, description=self.description)


class BaseWorker:
    kind: JobKind

    def __init__(self, payload: StartPayload, channel: WorkerChannel, session_factory: sessionmaker):
        self.payload = payload
        self.channel = channel
        self._session_factory = session_factory

    # ── Hooks ────────────────────────────────────────────────────────────────

    def enumerate_items(self, db: Session) -> list[WorkItem]:
        raise NotImplementedError

    def process_item(self, db: Session, item: WorkItem) -> None:
        raise NotImplementedError

    def cursor_for(self, item: WorkItem) -> TitleCursor | SectionCursor:
        return TitleCursor(last_title_number=item.title_number)

    def pause_between_items(self) -> bool:
        """Throttle hook. Returns True when a stop arrived during the pause."""
        return False

    def close(self) -> None:
        pass

    # ── Loop ─────────────────────────────────────────────────────────────────

    def load_resume(self, db: Session):
        if self.payload.restart:
            return None
        record = db.query(JobRecord).filter_by(job_kind=self.kind).first()
        return parse_resume_data(self.kind, record.resume_data if record else None)

    def run(self) -> None:
        with self._session_factory() as db:
            resume = self.load_resume(db)
            items = self.enumerate_items(db)
            items.sort(key=lambda i: i.key)
            total = len(items)
            pending = [i for i in items if resume is None or not resume.covers(i.key)]
            current = total - len(pending)
            if resume is not None:
                logger.info("[%s] Resuming after %s: %d of %d items already done",
                            self.kind.value, resume.model_dump(exclude={"kind"}), current, total)
            else:
                logger.info("[%s] Starting over %d items", self.kind.value, total)

            self.channel.send(ProgressMessage(progress=Progress.of(current, total)))

            processed = failed = 0
            elapsed_ms = 0.0
            cursor = resume
            for index, item in enumerate(pending):
                if self.channel.stop_requested() or (index > 0 and self.pause_between_items()):
                    self.channel.send(ProgressMessage(
                        progress=Progress.of(current, total),
                        resume_data=cursor,
                    ))
                    logger.info("[%s] Stop requested, exiting at %d/%d", self.kind.value, current, total)
                    return

                started = time.monotonic()
                try:
                    self.process_item(db, item)
                except SQLAlchemyError:
                    raise
                except Exception as e:
                    db.rollback()
                    failed += 1
                    logger.warning("[%s] Item %s failed: %s", self.kind.value, item.key, e)
                processed += 1
                elapsed_ms += (time.monotonic() - started) * 1000
                current += 1
                cursor = self.cursor_for(item)

                self.channel.send(ProgressMessage(
                    progress=Progress.of(current, total),
                    current_item=item.current_item(),
                    resume_data=cursor,
                    statistics=Statistics(
                        items_processed=processed,
                        items_failed=failed,
                        average_time_per_item=round(elapsed_ms / processed, 1),
                    ),
                ))

            logger.info("[%s] Completed: %d processed this run, %d failed", self.kind.value, processed, failed)
            self.channel.send(CompletedMessage(total=total, failed_count=failed))


class TitleWorker(BaseWorker):
    """Work set: every non-reserved title, ascending by number."""

    def enumerate_items(self, db: Session) -> list[WorkItem]:
        return [
            WorkItem(
                key=(t.number,),
                title_number=t.number,
                name=t.name,
                description=f"Title {t.number}: {t.name}",
            )
            for t in get_active_titles(db)
        ]
