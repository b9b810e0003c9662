"""
Worker channels

A WorkerChannel is the parent's handle on one transcription worker
process: start it, exchange protocol messages, observe its exit. Two
variants exist, chosen at construction time by relay_voice.placement:

- SubprocessChannel: a separate interpreter running ``-m relay_voice.worker``,
  framed JSON over stdin/stdout
- MultiprocessingChannel: a spawned child of the host interpreter,
  dicts over a multiprocessing Pipe
"""

import logging
import multiprocessing
import subprocess
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from relay_voice import ipc
from relay_voice.worker import serve_connection

logger = logging.getLogger(__name__)


class WorkerChannel(ABC):
    """Uniform surface over a worker process"""

    name = "abstract"

    @abstractmethod
    def start(self) -> None:
        """Launch the worker process"""

    @abstractmethod
    def send(self, message: Dict[str, Any]) -> None:
        """Send one protocol message. Raises OSError if the worker is gone."""

    @abstractmethod
    def recv(self) -> Optional[Dict[str, Any]]:
        """Block for the next message. Returns None once the worker's end closed."""

    @abstractmethod
    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        """Wait for exit. Returns the exit code, or None if still running."""

    @abstractmethod
    def kill(self) -> None:
        """Terminate the worker forcibly"""

    @property
    @abstractmethod
    def pid(self) -> Optional[int]:
        """Process id, once started"""


class SubprocessChannel(WorkerChannel):
    """Worker run by an external interpreter located on the system"""

    name = "subprocess"

    def __init__(self, interpreter: str, env: Optional[Dict[str, str]] = None):
        self.interpreter = interpreter
        self.env = env
        self._process: Optional[subprocess.Popen] = None

    def command(self) -> List[str]:
        return [self.interpreter, "-m", "relay_voice.worker"]

    def start(self) -> None:
        logger.info(f"Spawning transcription worker: {self.interpreter}")
        # stderr is inherited so worker logs reach the parent's console
        self._process = subprocess.Popen(
            self.command(),
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            env=self.env,
        )

    def send(self, message: Dict[str, Any]) -> None:
        if self._process is None or self._process.stdin is None:
            raise OSError("worker not started")
        ipc.write_message(self._process.stdin, message)

    def recv(self) -> Optional[Dict[str, Any]]:
        if self._process is None or self._process.stdout is None:
            return None
        try:
            return ipc.read_message(self._process.stdout)
        except OSError:
            return None

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        if self._process is None:
            return None
        try:
            return self._process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None

    def kill(self) -> None:
        if self._process is not None and self._process.poll() is None:
            self._process.kill()

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None


class MultiprocessingChannel(WorkerChannel):
    """
    Worker spawned from the host interpreter

    Portable fallback when no suitable system interpreter exists. Native
    acceleration libraries may not match the host build, so the supervisor
    prefers the portable backend here.
    """

    name = "multiprocessing"

    def __init__(self):
        self._context = multiprocessing.get_context("spawn")
        self._conn = None
        self._process = None

    def start(self) -> None:
        parent_conn, child_conn = self._context.Pipe()
        self._process = self._context.Process(
            target=serve_connection,
            args=(child_conn,),
            name="relay-voice-worker",
            daemon=True,
        )
        logger.info("Spawning transcription worker via multiprocessing")
        self._process.start()
        child_conn.close()
        self._conn = parent_conn

    def send(self, message: Dict[str, Any]) -> None:
        if self._conn is None:
            raise OSError("worker not started")
        self._conn.send(message)

    def recv(self) -> Optional[Dict[str, Any]]:
        if self._conn is None:
            return None
        try:
            return self._conn.recv()
        except (EOFError, OSError):
            return None

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        if self._process is None:
            return None
        self._process.join(timeout)
        return self._process.exitcode

    def kill(self) -> None:
        if self._process is not None and self._process.is_alive():
            self._process.kill()

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None
