"""
Orchestrator side of a worker: how it is spawned and how it is talked to.

ProcessWorkerLauncher: one spawned OS process per job (production default).
ThreadWorkerLauncher: one OS thread per job, same pipe protocol. Threads cannot be
                      killed, so a thread that ignores stop is abandoned, not terminated.
"""
import logging
import multiprocessing
import threading
from multiprocessing.connection import Connection
from ecfr_analyzer.states.job_state import StartPayload, STOP_COMMAND
from ecfr_analyzer.workers.runner import run_worker, process_main, WorkerFactory

logger = logging.getLogger(__name__)


class WorkerHandle:
    """Live worker as seen by the orchestrator."""

    def __init__(self, conn: Connection, name: str):
        self._conn = conn
        self.name = name
        self.stop_requested = False
        self.channel_closed = False

    # ── Channel ──────────────────────────────────────────────────────────────

    def request_stop(self) -> None:
        self.stop_requested = True
        try:
            self._conn.send(STOP_COMMAND)
        except (OSError, EOFError):
            self.channel_closed = True

    def receive(self, timeout: float) -> list:
        """Everything readable within timeout, in arrival order."""
        messages = []
        try:
            if self._conn.poll(timeout):
                while True:
                    messages.append(self._conn.recv())
                    if not self._conn.poll(0):
                        break
        except (EOFError, OSError):
            self.channel_closed = True
        return messages

    def close(self) -> None:
        self._conn.close()

    # ── Lifecycle ────────────────────────────────────────────────────────────

    def is_alive(self) -> bool:
        raise NotImplementedError

    def join(self, timeout: float | None = None) -> bool:
        """Wait for exit. True if the worker is gone."""
        raise NotImplementedError

    def terminate(self) -> None:
        raise NotImplementedError

    @property
    def exitcode(self) -> int | None:
        raise NotImplementedError


class ProcessWorkerHandle(WorkerHandle):
    def __init__(self, process: multiprocessing.Process, conn: Connection):
        super().__init__(conn, process.name)
        self._process = process

    def is_alive(self) -> bool:
        return self._process.is_alive()

    def join(self, timeout: float | None = None) -> bool:
        self._process.join(timeout)
        return not self._process.is_alive()

    def terminate(self) -> None:
        logger.warning("Force-terminating worker %s (pid %s)", self.name, self._process.pid)
        self._process.terminate()

    @property
    def exitcode(self) -> int | None:
        return self._process.exitcode


class ThreadWorkerHandle(WorkerHandle):
    def __init__(self, payload: StartPayload, factory: WorkerFactory | None, name: str):
        parent, child = multiprocessing.Pipe(duplex=True)
        super().__init__(parent, name)
        self._child = child
        self._exitcode = None
        self._thread = threading.Thread(
            target=self._run, args=(payload.model_dump(mode="json"), factory), name=name, daemon=True
        )

    def _run(self, payload: dict, factory: WorkerFactory | None) -> None:
        try:
            self._exitcode = run_worker(payload, self._child, factory)
        except SystemExit as e:
            self._exitcode = e.code if isinstance(e.code, int) else 1
        finally:
            self._child.close()

    def start(self) -> None:
        self._thread.start()

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def join(self, timeout: float | None = None) -> bool:
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def terminate(self) -> None:
        logger.warning("Worker thread %s did not stop in time; abandoning it", self.name)

    @property
    def exitcode(self) -> int | None:
        return None if self._thread.is_alive() else self._exitcode


class ProcessWorkerLauncher:
    def __init__(self, start_method: str = "spawn"):
        self._ctx = multiprocessing.get_context(start_method)

    def launch(self, payload: StartPayload) -> WorkerHandle:
        parent, child = self._ctx.Pipe(duplex=True)
        process = self._ctx.Process(
            target=process_main,
            args=(payload.model_dump(mode="json"), child),
            name=f"worker-{payload.job_kind.value}",
            daemon=True,
        )
        process.start()
        child.close()
        logger.info("Spawned %s (pid %s)", process.name, process.pid)
        return ProcessWorkerHandle(process, parent)


class ThreadWorkerLauncher:
    def __init__(self, factory: WorkerFactory | None = None):
        self._factory = factory

    def launch(self, payload: StartPayload) -> WorkerHandle:
        handle = ThreadWorkerHandle(payload, self._factory, name=f"worker-{payload.job_kind.value}")
        handle.start()
        logger.info("Started %s on a thread", handle.name)
        return handle


def build_launcher(mode: str):
    if mode == "process":
        return ProcessWorkerLauncher()
    if mode == "thread":
        return ThreadWorkerLauncher()
    raise ValueError(f"Unknown WORKER_MODE '{mode}' (expected 'process' or 'thread')")
