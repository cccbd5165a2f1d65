"""
Analysis job orchestrator.

Owns the in-memory registry {JobKind -> WorkerHandle} and every JobRecord transition:

    stopped   --start-->                 running
    running   --worker completed-->      completed
    running   --worker error / crash-->  failed
    running   --stop (after grace)-->    stopped
    completed / failed --start-->        running   (resumes unless restart=true)

Runs on the host service's event loop. One listener task per live worker reads the
pipe from a thread and awaits each store write in turn, so messages are applied in
the order the worker sent them. Store calls run in worker threads and never block the loop.
"""
import asyncio
import logging
from datetime import datetime

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from ecfr_analyzer.dao.progress_store import ProgressStore, to_status
from ecfr_analyzer.models.job_record import JobKind, JobStatus
from ecfr_analyzer.services.audit_service import log_event
from ecfr_analyzer.states.job_state import (
    StartPayload, Progress, ProgressMessage, ErrorMessage, CompletedMessage, message_adapter,
    patches_for_progress, StatusPatch, ProgressTriplePatch, CurrentItemPatch, ResumeDataPatch,
    StatisticsPatch, ErrorPatch, TimestampPatch, RunTimePatch,
)
from ecfr_analyzer.workers.launcher import WorkerHandle

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.25
INTERRUPTED_ERROR = "Interrupted by service restart"


def _run_ms(since: datetime | None, now: datetime) -> int:
    if since is None:
        return 0
    return max(int((now - since).total_seconds() * 1000), 0)


class Orchestrator:
    def __init__(self, session_factory: sessionmaker, launcher, database_url: str,
                 grace_seconds: float = 1.0):
        self.store = ProgressStore(session_factory)
        self._session_factory = session_factory
        self._launcher = launcher
        self._database_url = database_url
        self._grace = grace_seconds
        self._workers: dict[JobKind, WorkerHandle] = {}
        self._listeners: dict[JobKind, asyncio.Task] = {}
        self._locks = {kind: asyncio.Lock() for kind in JobKind}

    # ── Setup / queries ──────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Ensure one JobRecord per kind; anything still 'running' lost its worker with the last process."""
        for kind in JobKind:
            record = await asyncio.to_thread(self.store.ensure, kind)
            if record.status == JobStatus.RUNNING and kind not in self._workers:
                logger.warning("[%s] Was running when the service went down; marking failed", kind.value)
                await self._persist(kind,
                                    StatusPatch(status=JobStatus.FAILED),
                                    ErrorPatch(error=INTERRUPTED_ERROR),
                                    TimestampPatch(field="last_stop_time", value=datetime.utcnow()))
        logger.info("Orchestrator initialized with %d job kinds", len(JobKind))

    def is_running(self, kind: JobKind) -> bool:
        return kind in self._workers

    def running_kinds(self) -> list[JobKind]:
        return list(self._workers)

    def status(self) -> list[dict]:
        return [to_status(r) for r in self.store.list_all()]

    def job_status(self, kind: JobKind) -> dict | None:
        record = self.store.load(kind)
        return to_status(record) if record else None

    def log_status(self) -> None:
        for s in self.status():
            p = s["progress"]
            logger.info("[status] %-16s %-9s %d/%d (%d%%) failed=%d",
                        s["jobKind"], s["status"], p["current"], p["total"], p["percentage"],
                        s["statistics"]["itemsFailed"])

    # ── Control operations ───────────────────────────────────────────────────

    async def start(self, kind: JobKind, restart: bool = False, actor: str = "api") -> dict:
        async with self._locks[kind]:
            return await self._start_locked(kind, restart, actor)

    async def stop(self, kind: JobKind, actor: str = "api") -> dict:
        async with self._locks[kind]:
            return await self._stop_locked(kind, actor)

    async def restart(self, kind: JobKind, actor: str = "api") -> dict:
        async with self._locks[kind]:
            if kind in self._workers:
                await self._stop_locked(kind, actor)
            return await self._start_locked(kind, True, actor)

    async def start_all(self, actor: str = "system") -> dict:
        results = {}
        for kind in JobKind:
            results[kind.value] = await self.start(kind, actor=actor)
        return results

    async def stop_all(self, actor: str = "system") -> dict:
        kinds = list(self._workers)
        if not kinds:
            return {}
        logger.info("Stopping %d running workers", len(kinds))
        results = await asyncio.gather(*(self.stop(kind, actor) for kind in kinds))
        return {kind.value: result for kind, result in zip(kinds, results)}

    async def _start_locked(self, kind: JobKind, restart: bool, actor: str) -> dict:
        record = await self._load(kind) or await asyncio.to_thread(self.store.ensure, kind)
        if record.status == JobStatus.RUNNING:
            await self._event("JOB_START_REJECTED", kind, actor, {"reason": "already running"})
            return {"success": False, "message": "Thread is already running"}

        if kind in self._workers:
            await self._stop_locked(kind, actor)

        now = datetime.utcnow()
        patches = [
            StatusPatch(status=JobStatus.RUNNING),
            ErrorPatch(error=None),
            TimestampPatch(field="last_start_time", value=now),
        ]
        if restart:
            patches += [
                ResumeDataPatch(resume_data=None),
                ProgressTriplePatch(progress=Progress()),
                CurrentItemPatch(current_item=None),
                StatisticsPatch(items_processed=0, items_failed=0, average_time_per_item=0.0),
            ]
        if not await self._persist(kind, *patches):
            return {"success": False, "message": "Could not persist job state"}

        payload = StartPayload(job_kind=kind, restart=restart, database_url=self._database_url)
        try:
            handle = self._launcher.launch(payload)
        except Exception as e:
            logger.exception("[%s] Failed to spawn worker", kind.value)
            await self._persist(kind,
                                StatusPatch(status=JobStatus.FAILED),
                                ErrorPatch(error=f"Failed to spawn worker: {e}"),
                                TimestampPatch(field="last_stop_time", value=datetime.utcnow()))
            return {"success": False, "message": f"Failed to start thread: {e}"}

        self._workers[kind] = handle
        self._listeners[kind] = asyncio.create_task(self._listen(kind, handle), name=f"listen-{kind.value}")
        await self._event("JOB_STARTED", kind, actor, {"restart": restart})
        logger.info("[%s] Started (restart=%s)", kind.value, restart)
        return {"success": True, "message": f"Thread {kind.value} started successfully"}

    async def _stop_locked(self, kind: JobKind, actor: str) -> dict:
        handle = self._workers.get(kind)
        if handle is None:
            record = await self._load(kind)
            if record is not None and record.status == JobStatus.RUNNING:
                # persisted as running with no live worker: settle it
                await self._persist(kind,
                                    StatusPatch(status=JobStatus.STOPPED),
                                    TimestampPatch(field="last_stop_time", value=datetime.utcnow()))
                return {"success": True, "message": f"Thread {kind.value} stopped successfully"}
            return {"success": False, "message": "Thread is not running"}

        handle.request_stop()
        exited = await asyncio.to_thread(handle.join, self._grace)
        if not exited:
            handle.terminate()
            await asyncio.to_thread(handle.join, self._grace)

        listener = self._listeners.get(kind)
        if listener is not None and listener is not asyncio.current_task():
            # wait without cancelling: an abandoned worker keeps being drained
            done, _ = await asyncio.wait({listener}, timeout=self._grace + 2 * POLL_INTERVAL)
            if not done:
                logger.warning("[%s] Listener did not drain in time; dropping its later messages", kind.value)

        if self._workers.get(kind) is not handle:
            # completed or failed while we were waiting; that outcome stands
            return {"success": True, "message": f"Thread {kind.value} finished before it could be stopped"}

        self._workers.pop(kind, None)
        self._listeners.pop(kind, None)
        handle.close()

        now = datetime.utcnow()
        record = await self._load(kind)
        await self._persist(kind,
                            StatusPatch(status=JobStatus.STOPPED),
                            TimestampPatch(field="last_stop_time", value=now),
                            RunTimePatch(add_ms=_run_ms(record.last_start_time if record else None, now)))
        await self._event("JOB_STOPPED", kind, actor)
        logger.info("[%s] Stopped", kind.value)
        return {"success": True, "message": f"Thread {kind.value} stopped successfully"}

    # ── Worker events ────────────────────────────────────────────────────────

    async def _listen(self, kind: JobKind, handle: WorkerHandle) -> None:
        while True:
            alive = handle.is_alive() and not handle.channel_closed
            messages = await asyncio.to_thread(handle.receive, POLL_INTERVAL)
            if await self._dispatch_all(kind, handle, messages):
                break
            if alive:
                continue

            # worker gone: pick up anything it wrote just before exiting
            if await self._dispatch_all(kind, handle, await asyncio.to_thread(handle.receive, 0)):
                break
            await asyncio.to_thread(handle.join, self._grace)
            if handle.stop_requested:
                break
            code = handle.exitcode
            reason = f"exit code {code}" if code else "Worker exited without completing"
            await self.handle_failure(kind, handle, reason)
            break

        await asyncio.to_thread(handle.join, self._grace)
        if self._workers.get(kind) is not handle:
            handle.close()

    async def _dispatch_all(self, kind: JobKind, handle: WorkerHandle, messages: list) -> bool:
        """Apply messages in order. True once a terminal message has been handled."""
        for raw in messages:
            try:
                message = message_adapter.validate_python(raw)
            except ValidationError as e:
                logger.warning("[%s] Discarding malformed worker message %r: %s", kind.value, raw, e)
                continue
            if isinstance(message, ProgressMessage):
                if self._workers.get(kind) is handle:
                    await self._persist(kind, *patches_for_progress(message))
            elif isinstance(message, ErrorMessage):
                await self.handle_failure(kind, handle, message.error)
                return True
            elif isinstance(message, CompletedMessage):
                await self.handle_completion(kind, handle, message)
                return True
        return False

    async def handle_completion(self, kind: JobKind, handle: WorkerHandle, message: CompletedMessage) -> None:
        if self._workers.get(kind) is not handle:
            return
        self._workers.pop(kind, None)
        self._listeners.pop(kind, None)

        now = datetime.utcnow()
        record = await self._load(kind)
        await self._persist(kind,
                            RunTimePatch(add_ms=_run_ms(record.last_start_time if record else None, now)),
                            StatusPatch(status=JobStatus.COMPLETED),
                            TimestampPatch(field="last_completed_time", value=now),
                            ProgressTriplePatch(progress=Progress.of(message.total, message.total)),
                            StatisticsPatch(items_failed=message.failed_count),
                            ResumeDataPatch(resume_data=None))
        await self._event("JOB_COMPLETED", kind, "worker", {"total": message.total, "failedCount": message.failed_count})
        logger.info("[%s] Completed: %d items, %d failed", kind.value, message.total, message.failed_count)

    async def handle_failure(self, kind: JobKind, handle: WorkerHandle, error: str) -> None:
        if self._workers.get(kind) is not handle:
            return
        self._workers.pop(kind, None)
        self._listeners.pop(kind, None)

        now = datetime.utcnow()
        record = await self._load(kind)
        await self._persist(kind,
                            StatusPatch(status=JobStatus.FAILED),
                            ErrorPatch(error=error),
                            TimestampPatch(field="last_stop_time", value=now),
                            RunTimePatch(add_ms=_run_ms(record.last_start_time if record else None, now)))
        await self._event("JOB_FAILED", kind, "worker", {"error": error})
        logger.error("[%s] Failed: %s", kind.value, error)

    # ── Persistence helpers ──────────────────────────────────────────────────
    # store calls may wait on database locks and retry backoff; always via to_thread

    async def _load(self, kind: JobKind):
        return await asyncio.to_thread(self.store.load, kind)

    async def _persist(self, kind: JobKind, *patches) -> bool:
        if not patches:
            return True
        try:
            await asyncio.to_thread(self.store.apply, kind, *patches)
            return True
        except (SQLAlchemyError, LookupError) as e:
            logger.error("[%s] Could not persist %s: %s", kind.value, [p.op for p in patches], e)
            return False

    async def _event(self, event_type: str, kind: JobKind, actor: str, detail: dict | None = None) -> None:
        def _write():
            with self._session_factory() as db:
                log_event(db, event_type, kind.value, actor=actor, detail=detail)

        try:
            await asyncio.to_thread(_write)
        except SQLAlchemyError as e:
            logger.error("Could not record %s for %s: %s", event_type, kind.value, e)
