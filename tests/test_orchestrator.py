"""
Orchestrator lifecycle: start / stop / restart / crash handling, driven with
in-thread workers (real worker loops) or scripted handles (exact message streams).
"""
import asyncio
import sqlite3

import pytest

from ecfr_analyzer.models.job_record import JobKind, JobStatus
from ecfr_analyzer.models.section_analysis import SectionAnalysis
from ecfr_analyzer.services.audit_service import list_events
from ecfr_analyzer.services.orchestrator import INTERRUPTED_ERROR
from ecfr_analyzer.states.job_state import (
    Progress, StatusPatch, ResumeDataPatch, ProgressTriplePatch, SectionCursor,
)
from ecfr_analyzer.workers.launcher import ThreadWorkerLauncher, ProcessWorkerLauncher
from ecfr_analyzer.workers.section_analysis_worker import SectionAnalysisWorker


def _section_launcher(session_factory, scorer):
    def factory(payload, channel):
        return SectionAnalysisWorker(payload, channel, session_factory, scorer=scorer, request_delay=0)
    return ThreadWorkerLauncher(factory)


def _record(orch, kind):
    return orch.store.load(kind)


def _finished(orch, kind):
    return lambda: not orch.is_running(kind) and _record(orch, kind).status != JobStatus.RUNNING


# ─── Scenarios ───────────────────────────────────────────────────────────────

class TestOrchestratorScenarios:

    async def test_cold_start_runs_to_completion(self, make_orchestrator, seed_titles, until):
        seed_titles(4)
        orch = await make_orchestrator(ThreadWorkerLauncher())
        kind = JobKind.TEXT_METRICS
        assert _record(orch, kind).status == JobStatus.STOPPED

        result = await orch.start(kind)
        assert result == {"success": True, "message": "Thread text_metrics started successfully"}
        assert orch.is_running(kind)

        assert await until(_finished(orch, kind))
        record = _record(orch, kind)
        assert record.status == JobStatus.COMPLETED
        assert record.resume_data is None
        assert record.progress_current == record.progress_total == 4
        assert record.progress_percentage == 100
        assert record.items_processed == 4
        assert record.last_completed_time is not None
        assert record.total_run_time >= 0

    async def test_start_when_already_running_is_rejected(self, make_orchestrator, scripted):
        handle_cls, launcher_cls = scripted
        launcher = launcher_cls(handle_cls([], exitcode=0, stay_alive=True))
        orch = await make_orchestrator(launcher)

        assert (await orch.start(JobKind.TEXT_METRICS))["success"] is True
        second = await orch.start(JobKind.TEXT_METRICS)
        assert second == {"success": False, "message": "Thread is already running"}
        assert len(launcher.launched) == 1

        stopped = await orch.stop(JobKind.TEXT_METRICS)
        assert stopped["success"] is True
        assert _record(orch, JobKind.TEXT_METRICS).status == JobStatus.STOPPED
        assert not orch.is_running(JobKind.TEXT_METRICS)

    async def test_cooperative_stop_then_resume(self, make_orchestrator, session_factory, db_session,
                                                seed_sections, fake_scorer_cls, until):
        keys = seed_sections(100)
        scorer = fake_scorer_cls(gate_at=31)
        orch = await make_orchestrator(_section_launcher(session_factory, scorer))
        kind = JobKind.SECTION_ANALYSIS

        await orch.start(kind)
        assert await until(lambda: _record(orch, kind).progress_current == 30)

        # the 31st call is in flight when the stop lands; it finishes, then the worker exits
        asyncio.get_running_loop().call_later(0.2, scorer.gate.set)
        result = await orch.stop(kind)
        assert result["success"] is True

        record = _record(orch, kind)
        assert record.status == JobStatus.STOPPED
        assert record.progress_total == 100
        assert record.progress_current == 31
        assert record.resume_data == SectionCursor(
            last_title_number=keys[30][0], last_section_identifier=keys[30][1]).model_dump()
        assert record.last_stop_time is not None
        assert db_session.query(SectionAnalysis).count() == 31

        await orch.start(kind)
        assert await until(_finished(orch, kind))
        record = _record(orch, kind)
        assert record.status == JobStatus.COMPLETED
        assert (record.progress_current, record.progress_total) == (100, 100)
        assert record.items_processed == 69
        assert len(scorer.calls) == 100
        assert db_session.query(SectionAnalysis).count() == 100

    async def test_restart_clears_progress_and_starts_from_first_section(
            self, make_orchestrator, session_factory, seed_sections, fake_scorer_cls, until):
        keys = seed_sections(100)
        scorer = fake_scorer_cls(gate_at=1)
        orch = await make_orchestrator(_section_launcher(session_factory, scorer))
        kind = JobKind.SECTION_ANALYSIS
        orch.store.apply(
            kind,
            StatusPatch(status=JobStatus.FAILED),
            ProgressTriplePatch(progress=Progress.of(50, 100)),
            ResumeDataPatch(resume_data=SectionCursor(
                last_title_number=keys[49][0], last_section_identifier=keys[49][1]).model_dump()),
        )

        result = await orch.restart(kind)
        assert result["success"] is True
        record = _record(orch, kind)
        assert record.status == JobStatus.RUNNING
        assert record.resume_data is None
        assert record.progress_current == 0

        assert await until(lambda: len(scorer.calls) == 1)
        assert scorer.calls[0] == f"§ {keys[0][1]} Section heading"
        assert _record(orch, kind).progress_current == 0

        scorer.gate.set()
        assert await until(_finished(orch, kind))
        assert _record(orch, kind).status == JobStatus.COMPLETED
        assert len(scorer.calls) == 100

    async def test_worker_crash_marks_failed_and_keeps_resume(self, make_orchestrator, scripted, until):
        handle_cls, launcher_cls = scripted
        progress = {
            "type": "progress",
            "progress": {"current": 3, "total": 10, "percentage": 30},
            "resume_data": {"kind": "title", "last_title_number": 3},
        }
        orch = await make_orchestrator(launcher_cls(handle_cls([progress], exitcode=1)))
        kind = JobKind.TEXT_METRICS

        await orch.start(kind)
        assert await until(_finished(orch, kind))
        record = _record(orch, kind)
        assert record.status == JobStatus.FAILED
        assert record.error == "exit code 1"
        assert record.resume_data == {"kind": "title", "last_title_number": 3}
        assert record.progress_current == 3
        assert not orch.is_running(kind)

    async def test_per_item_llm_timeouts(self, make_orchestrator, session_factory, db_session,
                                         seed_sections, fake_scorer_cls, until):
        seed_sections(20)
        orch = await make_orchestrator(_section_launcher(session_factory, fake_scorer_cls(fail_every=5)))
        kind = JobKind.SECTION_ANALYSIS

        await orch.start(kind)
        assert await until(_finished(orch, kind))
        record = _record(orch, kind)
        assert record.status == JobStatus.COMPLETED
        assert record.items_processed == 20
        assert record.items_failed == 4
        assert db_session.query(SectionAnalysis).count() == 16


# ─── Edge cases ──────────────────────────────────────────────────────────────

class TestOrchestratorEdges:

    async def test_stop_when_not_running(self, make_orchestrator, scripted):
        _, launcher_cls = scripted
        orch = await make_orchestrator(launcher_cls())
        assert await orch.stop(JobKind.AGE_DISTRIBUTION) == {"success": False, "message": "Thread is not running"}

    async def test_initialize_fails_records_left_running(self, session_factory, make_orchestrator, scripted):
        from ecfr_analyzer.dao.progress_store import ProgressStore
        store = ProgressStore(session_factory)
        store.ensure(JobKind.VERSION_HISTORY)
        store.apply(JobKind.VERSION_HISTORY, StatusPatch(status=JobStatus.RUNNING))

        _, launcher_cls = scripted
        orch = await make_orchestrator(launcher_cls())
        record = _record(orch, JobKind.VERSION_HISTORY)
        assert record.status == JobStatus.FAILED
        assert record.error == INTERRUPTED_ERROR
        assert len(orch.store.list_all()) == len(JobKind)

    async def test_worker_error_message_becomes_job_error(self, make_orchestrator, scripted, until):
        handle_cls, launcher_cls = scripted
        error = {"type": "error", "error": "OperationalError: database is locked"}
        orch = await make_orchestrator(launcher_cls(handle_cls([error], exitcode=1)))

        await orch.start(JobKind.VERSION_HISTORY)
        assert await until(_finished(orch, JobKind.VERSION_HISTORY))
        assert _record(orch, JobKind.VERSION_HISTORY).error == "OperationalError: database is locked"

    async def test_malformed_messages_are_discarded(self, make_orchestrator, scripted, until):
        handle_cls, launcher_cls = scripted
        messages = [{"type": "progress", "progress": {"current": "lots"}},
                    {"type": "banana"},
                    {"type": "completed", "total": 2, "failed_count": 0}]
        orch = await make_orchestrator(launcher_cls(handle_cls(messages, exitcode=0)))

        await orch.start(JobKind.TEXT_METRICS)
        assert await until(_finished(orch, JobKind.TEXT_METRICS))
        assert _record(orch, JobKind.TEXT_METRICS).status == JobStatus.COMPLETED

    async def test_spawn_failure(self, make_orchestrator):
        class BrokenLauncher:
            def launch(self, payload):
                raise OSError("fork refused")

        orch = await make_orchestrator(BrokenLauncher())
        result = await orch.start(JobKind.TEXT_METRICS)
        assert result["success"] is False
        record = _record(orch, JobKind.TEXT_METRICS)
        assert record.status == JobStatus.FAILED
        assert "fork refused" in record.error
        assert not orch.is_running(JobKind.TEXT_METRICS)

    async def test_start_all_and_stop_all(self, make_orchestrator, scripted, session_factory):
        handle_cls, launcher_cls = scripted
        handles = [handle_cls([], exitcode=0, stay_alive=True) for _ in JobKind]
        orch = await make_orchestrator(launcher_cls(*handles))

        started = await orch.start_all(actor="test")
        assert all(r["success"] for r in started.values())
        assert sorted(orch.running_kinds()) == sorted(JobKind)

        stopped = await orch.stop_all(actor="test")
        assert set(stopped) == {k.value for k in JobKind}
        assert orch.running_kinds() == []
        assert {s["status"] for s in orch.status()} == {"stopped"}
        assert all(h.closed for h in handles)

        with session_factory() as db:
            events = list_events(db)
        assert {e.event_type for e in events} >= {"JOB_STARTED", "JOB_STOPPED"}

    async def test_restart_after_failure(self, make_orchestrator, scripted, until):
        handle_cls, launcher_cls = scripted
        launcher = launcher_cls(
            handle_cls([], exitcode=2),
            handle_cls([{"type": "completed", "total": 0, "failed_count": 0}], exitcode=0),
        )
        orch = await make_orchestrator(launcher)
        kind = JobKind.AGE_DISTRIBUTION

        await orch.start(kind)
        assert await until(_finished(orch, kind))
        assert _record(orch, kind).error == "exit code 2"

        await orch.start(kind)
        assert await until(_finished(orch, kind))
        record = _record(orch, kind)
        assert record.status == JobStatus.COMPLETED
        assert record.error is None
        assert launcher.launched[1].restart is False

    async def test_worker_ignoring_stop_is_terminated(self, make_orchestrator, scripted, session_factory):
        handle_cls, launcher_cls = scripted
        handle = handle_cls([], exitcode=None, stay_alive=True, ignore_stop=True)
        orch = await make_orchestrator(launcher_cls(handle), grace_seconds=0.2)
        kind = JobKind.VERSION_HISTORY

        await orch.start(kind)
        result = await orch.stop(kind)
        assert result == {"success": True, "message": "Thread version_history stopped successfully"}
        assert handle.stop_requested and handle.terminated
        assert handle.closed
        assert not orch.is_running(kind)
        record = _record(orch, kind)
        assert record.status == JobStatus.STOPPED
        assert record.last_stop_time is not None

        with session_factory() as db:
            assert [e.event_type for e in list_events(db, job_kind=kind.value)][0] == "JOB_STOPPED"

    async def test_abandoned_worker_messages_are_dropped(self, make_orchestrator, scripted, until):
        handle_cls, launcher_cls = scripted
        handle = handle_cls([], exitcode=0, stay_alive=True, unkillable=True)
        orch = await make_orchestrator(launcher_cls(handle), grace_seconds=0.2)
        kind = JobKind.TEXT_METRICS

        await orch.start(kind)
        result = await orch.stop(kind)
        assert result["success"] is True
        assert handle.terminated
        assert handle.is_alive()
        assert not orch.is_running(kind)
        assert _record(orch, kind).status == JobStatus.STOPPED

        # the stuck worker finally writes; its listener is still draining but nothing lands
        handle.finish([
            {"type": "progress", "progress": {"current": 7, "total": 10, "percentage": 70}},
            {"type": "completed", "total": 10, "failed_count": 0},
        ])
        assert await until(lambda: handle.received == 2)
        await asyncio.sleep(0.3)

        record = _record(orch, kind)
        assert record.status == JobStatus.STOPPED
        assert record.progress_current == 0
        assert record.last_completed_time is None

    async def test_locked_database_does_not_block_the_loop(self, make_orchestrator, scripted, db_url):
        handle_cls, launcher_cls = scripted
        orch = await make_orchestrator(launcher_cls(handle_cls([], exitcode=0, stay_alive=True)))
        loop = asyncio.get_running_loop()
        gaps = []

        async def heartbeat():
            last = loop.time()
            while True:
                await asyncio.sleep(0.05)
                now = loop.time()
                gaps.append(now - last)
                last = now

        locker = sqlite3.connect(db_url.removeprefix("sqlite:///"), isolation_level=None)
        try:
            locker.execute("BEGIN EXCLUSIVE")
            beat = asyncio.create_task(heartbeat())
            loop.call_later(1.5, locker.execute, "ROLLBACK")

            started_at = loop.time()
            result = await orch.start(JobKind.TEXT_METRICS)
            elapsed = loop.time() - started_at
            beat.cancel()
        finally:
            locker.close()

        assert result["success"] is True
        assert elapsed >= 1.0
        assert gaps and max(gaps) < 0.5
        assert _record(orch, JobKind.TEXT_METRICS).status == JobStatus.RUNNING


@pytest.mark.slow
async def test_process_worker_end_to_end(make_orchestrator, seed_titles, until):
    seed_titles(3)
    orch = await make_orchestrator(ProcessWorkerLauncher())
    await orch.start(JobKind.TEXT_METRICS)
    assert await until(_finished(orch, JobKind.TEXT_METRICS), timeout=60)
    record = _record(orch, JobKind.TEXT_METRICS)
    assert record.status == JobStatus.COMPLETED
    assert record.progress_current == 3
