"""
Worker side of the orchestrator <-> worker pipe.
Outbound: progress / error / completed (pydantic models, sent as plain dicts).
Inbound: only {"type": "stop"}.
"""
import logging
from multiprocessing.connection import Connection
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class WorkerChannel:
    def __init__(self, conn: Connection):
        self._conn = conn
        self._stop = False

    def send(self, message: BaseModel) -> None:
        self._conn.send(message.model_dump(mode="json"))

    def stop_requested(self) -> bool:
        """Non-blocking check between items."""
        self._drain(0)
        return self._stop

    def wait_for_stop(self, seconds: float) -> bool:
        """Sleep up to seconds, waking early if a stop arrives. Returns the stop flag."""
        if self._stop or seconds <= 0:
            return self.stop_requested()
        self._drain(seconds)
        return self._stop

    def _drain(self, timeout: float) -> None:
        try:
            if not self._conn.poll(timeout):
                return
            while True:
                message = self._conn.recv()
                if isinstance(message, dict) and message.get("type") == "stop":
                    self._stop = True
                else:
                    logger.warning("Ignoring unexpected inbound message: %r", message)
                if not self._conn.poll(0):
                    break
        except (EOFError, OSError):
            # orchestrator end closed: nobody is listening any more
            logger.warning("Orchestrator channel closed; stopping")
            self._stop = True
