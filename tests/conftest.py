import asyncio
import threading
from datetime import date

import pytest
import pytest_asyncio

from ecfr_analyzer.database import Base, build_session_factory
from ecfr_analyzer.models import job_record, job_event, refresh_progress, section_analysis, metric, version_history  # noqa: F401
from ecfr_analyzer.models.document import Title, Document
from ecfr_analyzer.services.orchestrator import Orchestrator
from ecfr_analyzer.tools.section_scoring import SectionScores


# ── Database ─────────────────────────────────────────────────────────────────

@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'ecfr_test.db'}"


@pytest.fixture
def session_factory(db_url):
    factory = build_session_factory(db_url)
    Base.metadata.create_all(bind=factory.kw["bind"])
    yield factory
    factory.kw["bind"].dispose()


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def seed_titles(db_session):
    """Create numbered titles, each with a title-level document."""
    def _seed(count: int, content: str = "The applicant shall file the form. A fee is required.") -> list[int]:
        numbers = list(range(1, count + 1))
        for n in numbers:
            db_session.add(Title(number=n, name=f"Title {n} Name", reserved=False))
            db_session.add(Document(title_number=n, type="title", identifier=f"title-{n}",
                                    heading=f"Title {n}", content=content))
        db_session.commit()
        return numbers
    return _seed


@pytest.fixture
def seed_sections(db_session):
    """Create count section documents spread over titles; returns identifiers in processing order."""
    def _seed(count: int, per_title: int = 10) -> list[tuple[int, str]]:
        keys = []
        for i in range(count):
            title_number = i // per_title + 1
            identifier = f"{title_number}.{i % per_title:03d}"
            db_session.add(Document(
                title_number=title_number, type="section", identifier=identifier,
                heading=f"§ {identifier} Section heading", content=f"Section {identifier} text. It shall apply.",
                amendment_date=date(2001, 1, 1),
            ))
            keys.append((title_number, identifier))
        db_session.commit()
        return sorted(keys)
    return _seed


# ── Fakes ────────────────────────────────────────────────────────────────────

class FakeScorer:
    """Stands in for SectionScorer. Every fail_every-th call raises TimeoutError."""

    def __init__(self, fail_every: int | None = None, gate_at: int | None = None):
        self.calls = []
        self.fail_every = fail_every
        self.gate_at = gate_at
        self.gate = threading.Event()
        self._lock = threading.Lock()

    @property
    def metadata(self) -> dict:
        return {"model": "fake-model", "temperature": 0.3}

    def score(self, heading: str, content: str) -> SectionScores:
        with self._lock:
            self.calls.append(heading)
            n = len(self.calls)
        if self.gate_at is not None and n == self.gate_at:
            self.gate.wait(10)
        if self.fail_every and n % self.fail_every == 0:
            raise TimeoutError("LLM request timed out")
        return SectionScores(
            summary=f"Summary of {heading}",
            antiquated_score=10 + n % 90,
            antiquated_explanation="",
            business_unfriendly_score=55,
            business_unfriendly_explanation="Moderate paperwork",
        )


class FakeChannel:
    """In-memory WorkerChannel. stop_after=N requests a stop once N progress messages were sent."""

    def __init__(self, stop_after: int | None = None):
        self.sent = []
        self.stop_after = stop_after
        self._stop = False

    def send(self, message) -> None:
        self.sent.append(message)
        if self.stop_after is not None and len(self.progress()) >= self.stop_after + 1:
            self._stop = True

    def stop_requested(self) -> bool:
        return self._stop

    def wait_for_stop(self, seconds: float) -> bool:
        return self._stop

    def progress(self) -> list:
        return [m for m in self.sent if m.type == "progress"]


class ScriptedHandle:
    """
    Worker handle that replays fixed raw messages, then 'exits' with exitcode.
    ignore_stop=True models a worker that never checks for stop and only dies on terminate().
    unkillable=True also survives terminate(), like an abandoned worker thread, until finish().
    """

    def __init__(self, messages: list[dict], exitcode: int | None, stay_alive: bool = False,
                 ignore_stop: bool = False, unkillable: bool = False):
        self._messages = list(messages)
        self._exitcode = exitcode
        self._stay_alive = stay_alive
        self._ignore_stop = ignore_stop or unkillable
        self._unkillable = unkillable
        self.name = "scripted"
        self.stop_requested = False
        self.terminated = False
        self.channel_closed = False
        self.closed = False
        self.received = 0

    def request_stop(self):
        self.stop_requested = True
        if not self._ignore_stop:
            self._stay_alive = False

    def finish(self, messages: list[dict]):
        """Let a stuck worker write its last messages and exit."""
        self._messages.extend(messages)
        self._stay_alive = False

    def receive(self, timeout: float) -> list:
        out, self._messages = self._messages, []
        self.received += len(out)
        if not out and self._stay_alive and timeout:
            threading.Event().wait(min(timeout, 0.05))
        return out

    def is_alive(self) -> bool:
        return self._stay_alive or bool(self._messages)

    def join(self, timeout=None) -> bool:
        return not self.is_alive()

    def terminate(self):
        self.terminated = True
        if not self._unkillable:
            self._stay_alive = False

    def close(self):
        self.closed = True

    @property
    def exitcode(self):
        return None if self.is_alive() else self._exitcode


class ScriptedLauncher:
    def __init__(self, *handles):
        self.handles = list(handles)
        self.launched = []

    def launch(self, payload):
        handle = self.handles.pop(0)
        self.launched.append(payload)
        return handle


@pytest.fixture
def fake_scorer_cls():
    return FakeScorer


@pytest.fixture
def fake_channel_cls():
    return FakeChannel


@pytest.fixture
def scripted():
    return ScriptedHandle, ScriptedLauncher


# ── Orchestrator ─────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def make_orchestrator(session_factory, db_url):
    created = []

    async def _make(launcher, grace_seconds: float = 2.0) -> Orchestrator:
        orch = Orchestrator(session_factory, launcher, db_url, grace_seconds=grace_seconds)
        await orch.initialize()
        created.append(orch)
        return orch

    yield _make
    for orch in created:
        await orch.stop_all(actor="test")


async def wait_until(predicate, timeout: float = 10.0, interval: float = 0.02):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


@pytest.fixture
def until():
    return wait_until
