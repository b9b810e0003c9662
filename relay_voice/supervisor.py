"""
Transcription worker supervisor

Owns the lifecycle of one isolated transcription worker:
- spawn, model loading with backend fallback and download progress
- one transcription request at a time, each with its own Future
- hard timeout so callers always unblock
- crash detection, pending-request failure and delayed respawn
- graceful shutdown that is never mistaken for a crash
"""

import logging
import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from relay_voice import ipc
from relay_voice.channels import WorkerChannel
from relay_voice.errors import (
    InvalidAudio,
    ModelLoadFailure,
    TranscriptionTimeout,
    WorkerBusy,
    WorkerCrash,
    WorkerNotReady,
)
from relay_voice.worker import PORTABLE_BACKEND

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60.0
DEFAULT_RESPAWN_DELAY = 2.0
DEFAULT_READY_TIMEOUT = 30.0
MIN_AUDIO_BYTES = 2

# Chinese variants Whisper only knows as "zh"
WHISPER_LANGUAGE_MAP = {
    "cmn": "zh",
    "yue": "zh",
}


class WorkerState(Enum):
    SPAWNING = "spawning"
    READY = "ready"
    LOADING_MODEL = "loading_model"
    READY_FOR_WORK = "ready_for_work"
    BUSY = "busy"
    CRASHED = "crashed"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


@dataclass
class TranscriptionResult:
    """Recognized text, or why there is none"""
    success: bool
    text: str = ""
    error: Optional[str] = None
    timed_out: bool = False


@dataclass
class LoadResult:
    success: bool
    backend: Optional[str] = None
    error: Optional[str] = None


@dataclass
class LoadProgress:
    file: str
    loaded_bytes: int
    total_bytes: int

    @property
    def fraction(self) -> float:
        if self.total_bytes <= 0:
            return 0.0
        return self.loaded_bytes / self.total_bytes


@dataclass
class _Request:
    audio: bytes
    language: Optional[str]
    future: Future
    dispatched: bool = False
    timer: Optional[threading.Timer] = None


def normalize_language(tag: Optional[str]) -> Optional[str]:
    """
    Map a BCP-47 tag ("en-US", "cmn-CN") to the ISO 639-1 code Whisper
    expects. Returns "auto" for auto-detect, None when no hint is given.
    """
    if not tag:
        return None
    if tag == "auto":
        return "auto"
    primary = tag.split("-")[0].lower()
    return WHISPER_LANGUAGE_MAP.get(primary, primary)


class TranscriptionSupervisor:
    """
    Supervises one transcription worker process

    The owning session marks itself with activate()/deactivate(); only an
    active supervisor respawns a crashed worker.
    """

    def __init__(
        self,
        channel_factory: Callable[[], WorkerChannel],
        preferred_backend: str = PORTABLE_BACKEND,
        timeout: float = DEFAULT_TIMEOUT,
        respawn_delay: float = DEFAULT_RESPAWN_DELAY,
        ready_timeout: float = DEFAULT_READY_TIMEOUT,
        min_audio_bytes: int = MIN_AUDIO_BYTES,
        on_status: Optional[Callable[[str], None]] = None,
        on_progress: Optional[Callable[[LoadProgress], None]] = None,
        on_crash: Optional[Callable[[WorkerCrash], None]] = None,
    ):
        """
        Initialize supervisor

        Args:
            channel_factory: Creates a fresh WorkerChannel for every spawn
            preferred_backend: Backend the worker tries first
            timeout: Hard limit for one transcription, in seconds
            respawn_delay: Delay before respawning a crashed worker
            ready_timeout: How long to wait for a spawned worker to report ready
            min_audio_bytes: Shorter audio is rejected without dispatch
            on_status: Callback for user-visible status messages
            on_progress: Callback for model download progress
            on_crash: Callback for unexpected worker exits
        """
        self.channel_factory = channel_factory
        self.preferred_backend = preferred_backend
        self.timeout = timeout
        self.respawn_delay = respawn_delay
        self.ready_timeout = ready_timeout
        self.min_audio_bytes = min_audio_bytes
        self.on_status = on_status
        self.on_progress = on_progress
        self.on_crash = on_crash

        self._lock = threading.RLock()
        self._state = WorkerState.STOPPED
        self._channel: Optional[WorkerChannel] = None
        self._reader: Optional[threading.Thread] = None
        self._ready = threading.Event()

        self._pending: Optional[_Request] = None
        # Worker is still chewing on a request whose caller already timed out
        self._abandoned = False
        self._pending_load: Optional[Future] = None
        self._model_args: Optional[Tuple[str, Optional[str], str]] = None
        self._backend: Optional[str] = None

        self._active = False
        self._shutting_down = False
        self._respawn_timer: Optional[threading.Timer] = None

        # Statistics
        self.crash_count = 0
        self.timeout_count = 0
        self.transcription_count = 0

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def backend(self) -> Optional[str]:
        """Backend the loaded model actually runs on"""
        return self._backend

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def has_pending_request(self) -> bool:
        return self._pending is not None

    def activate(self) -> None:
        """Mark the owning session active: crashes are respawned"""
        self._active = True

    def deactivate(self) -> None:
        """Mark the owning session inactive: crashes are not respawned"""
        self._active = False
        with self._lock:
            if self._respawn_timer:
                self._respawn_timer.cancel()
                self._respawn_timer = None

    def start(self) -> None:
        """Spawn the worker if it is not running"""
        with self._lock:
            if self._channel is not None:
                return
            self._spawn_locked()

    def _spawn_locked(self) -> None:
        channel = self.channel_factory()
        self._state = WorkerState.SPAWNING
        self._ready.clear()
        self._shutting_down = False
        self._abandoned = False

        try:
            channel.start()
        except OSError as e:
            self._state = WorkerState.CRASHED
            logger.error(f"Could not spawn transcription worker: {e}")
            raise WorkerCrash(message=f"Could not spawn transcription worker: {e}") from e

        self._channel = channel
        self._reader = threading.Thread(
            target=self._read_loop,
            args=(channel,),
            name="relay-voice-worker-reader",
            daemon=True,
        )
        self._reader.start()
        logger.info(f"Transcription worker spawned (pid: {channel.pid})")

    def shutdown(self, timeout: float = 5.0) -> None:
        """
        Release the worker gracefully

        The worker is asked to free its model and exit; it is killed if it
        does not exit within timeout. The exit is not treated as a crash.
        """
        self.deactivate()

        with self._lock:
            channel = self._channel
            if channel is None:
                self._state = WorkerState.STOPPED
                return
            self._shutting_down = True
            self._state = WorkerState.SHUTTING_DOWN
            reader = self._reader

        logger.info("Shutting down transcription worker")
        try:
            channel.send(ipc.make_shutdown_request())
        except (OSError, ValueError) as e:
            logger.debug(f"Shutdown message not delivered: {e}")

        if channel.wait(timeout) is None:
            logger.warning("Transcription worker did not exit, killing it")
            channel.kill()
            channel.wait(timeout)

        if reader is not None and reader is not threading.current_thread():
            reader.join(timeout)

    def load_model(
        self,
        model_id: str,
        cache_dir: Optional[str] = None,
        preferred_backend: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> LoadResult:
        """
        Load a model in the worker (idempotent)

        Args:
            model_id: Model size or Hub repository id
            cache_dir: Where model assets are downloaded
            preferred_backend: Backend to try first, defaults to the supervisor's
            timeout: Give up waiting after this many seconds (None = no limit)

        Returns:
            LoadResult with the backend actually used
        """
        backend = preferred_backend or self.preferred_backend

        with self._lock:
            if (
                self._state in (WorkerState.READY_FOR_WORK, WorkerState.BUSY)
                and self._model_args is not None
                and self._model_args[0] == model_id
            ):
                return LoadResult(True, backend=self._backend)
            if self._channel is None:
                try:
                    self._spawn_locked()
                except WorkerCrash as e:
                    return self._load_failed(str(e))

        if not self._ready.wait(self.ready_timeout):
            return self._load_failed("Transcription worker did not become ready")

        with self._lock:
            channel = self._channel
            if channel is None:
                return self._load_failed("Transcription worker exited before loading")

            if self._pending_load is not None:
                future = self._pending_load
            else:
                self._model_args = (model_id, cache_dir, backend)
                future = Future()
                self._pending_load = future
                self._state = WorkerState.LOADING_MODEL
                try:
                    channel.send(ipc.make_load_request(model_id, cache_dir, backend))
                except (OSError, ValueError) as e:
                    self._pending_load = None
                    self._state = WorkerState.READY
                    return self._load_failed(f"Could not reach worker: {e}")

        logger.info(f"Loading model {model_id} (preferred backend: {backend})")
        try:
            result = future.result(timeout)
        except FutureTimeoutError:
            return self._load_failed(f"Model load timed out after {timeout}s")

        if not result.success:
            return self._load_failed(result.error or "unknown error")
        return result

    def _load_failed(self, reason: str) -> LoadResult:
        error = ModelLoadFailure(reason)
        logger.error(f"Failed to load Whisper model: {error}")
        self._notify(f"Failed to load Whisper model: {error}")
        return LoadResult(False, error=str(error))

    def submit(self, audio: bytes, language_hint: Optional[str] = None) -> "Future[TranscriptionResult]":
        """
        Dispatch one transcription request

        Returns:
            Future resolving to a TranscriptionResult, or failing with
            WorkerCrash if the worker dies first

        Raises:
            InvalidAudio: audio too short, nothing was dispatched
            WorkerNotReady: no model loaded
            WorkerBusy: another request is outstanding
        """
        if not audio or len(audio) < self.min_audio_bytes:
            raise InvalidAudio(f"Invalid audio buffer: {len(audio) if audio else 0} bytes")

        with self._lock:
            if self._channel is None or self._state not in (WorkerState.READY_FOR_WORK, WorkerState.BUSY):
                raise WorkerNotReady("Whisper model not loaded")
            if self._pending is not None:
                raise WorkerBusy("A transcription request is already in flight")

            request = _Request(audio=audio, language=normalize_language(language_hint), future=Future())
            self._pending = request
            request.timer = threading.Timer(self.timeout, self._on_timeout, args=(request,))
            request.timer.daemon = True
            request.timer.start()

            if self._abandoned:
                logger.info("Worker still busy with a timed-out request, queueing")
                return request.future

            failure = self._dispatch_locked(request)

        if failure is not None:
            self._finish(request, failure)
        return request.future

    def transcribe(self, audio: bytes, language_hint: Optional[str] = None) -> TranscriptionResult:
        """
        Transcribe and wait for the result

        Never waits longer than the hard timeout; a timeout yields an empty
        result with timed_out set. Raises WorkerCrash if the worker dies.
        """
        future = self.submit(audio, language_hint)
        return future.result()

    def _dispatch_locked(self, request: _Request) -> Optional[TranscriptionResult]:
        logger.debug(f"Dispatching transcription ({len(request.audio)} bytes)")
        try:
            self._channel.send(ipc.make_transcribe_request(request.audio, request.language))
        except (OSError, ValueError) as e:
            logger.error(f"Failed to send to worker: {e}")
            self._pending = None
            if request.timer:
                request.timer.cancel()
            return TranscriptionResult(False, error=f"Failed to send to worker: {e}")

        request.dispatched = True
        self._state = WorkerState.BUSY
        return None

    def _on_timeout(self, request: _Request) -> None:
        with self._lock:
            if self._pending is not request:
                return
            self._pending = None
            if request.dispatched:
                self._abandoned = True
            self.timeout_count += 1

        error = TranscriptionTimeout("Transcription timed out")
        logger.error(f"{error} after {self.timeout}s")
        self._notify(str(error))
        self._finish(request, TranscriptionResult(False, error=str(error), timed_out=True))

    @staticmethod
    def _finish(request: _Request, result: Any = None, exception: Optional[BaseException] = None) -> None:
        """Resolve a request's future exactly once. Call without the lock held."""
        if request.timer:
            request.timer.cancel()
        if request.future.done():
            return
        if exception is not None:
            request.future.set_exception(exception)
        else:
            request.future.set_result(result)

    def _read_loop(self, channel: WorkerChannel) -> None:
        while True:
            try:
                message = channel.recv()
            except Exception as e:
                logger.error(f"Worker channel error: {e}")
                message = None
            if message is None:
                break
            try:
                self._handle_message(channel, message)
            except Exception as e:
                logger.error(f"Error handling worker message {message.get('type')}: {e}")

        code = channel.wait(5.0)
        if code is None:
            channel.kill()
            code = channel.wait(5.0)
        self._handle_exit(channel, code)

    def _handle_message(self, channel: WorkerChannel, message: Dict[str, Any]) -> None:
        msg_type = message.get("type")
        resolve: List[Tuple[Any, Any]] = []

        with self._lock:
            if channel is not self._channel:
                logger.debug(f"Ignoring {msg_type} from stale worker")
                return

            if msg_type == ipc.READY:
                self._state = WorkerState.READY
                self._ready.set()
                logger.info("Transcription worker ready")

            elif msg_type == ipc.LOAD_RESULT:
                result = LoadResult(
                    success=bool(message.get("success")),
                    backend=message.get("backendUsed"),
                    error=message.get("error"),
                )
                if result.success:
                    self._state = WorkerState.READY_FOR_WORK
                    self._backend = result.backend
                    logger.info(f"Whisper model loaded (backend: {result.backend})")
                else:
                    self._state = WorkerState.READY
                if self._pending_load is not None:
                    resolve.append((self._pending_load, result))
                    self._pending_load = None

            elif msg_type == ipc.TRANSCRIBE_RESULT:
                resolve.extend(self._on_transcribe_result_locked(message))

            elif msg_type == ipc.PROGRESS:
                progress = LoadProgress(
                    file=message.get("file", ""),
                    loaded_bytes=int(message.get("loadedBytes") or 0),
                    total_bytes=int(message.get("totalBytes") or 0),
                )
                if self.on_progress:
                    resolve.append((self.on_progress, progress))

            elif msg_type == ipc.STATUS:
                resolve.append((self._notify, message.get("message", "")))

            else:
                logger.warning(f"Unknown worker message: {msg_type}")

        for target, value in resolve:
            if isinstance(target, _Request):
                self._finish(target, value)
            elif isinstance(target, Future):
                if not target.done():
                    target.set_result(value)
            else:
                target(value)

    def _on_transcribe_result_locked(self, message: Dict[str, Any]) -> List[Tuple[Any, Any]]:
        request = self._pending

        if self._abandoned:
            self._abandoned = False
            logger.info("Discarding late result of a timed-out request")
            if request is not None and not request.dispatched:
                failure = self._dispatch_locked(request)
                if failure is not None:
                    return [(request, failure)]
            else:
                self._state = WorkerState.READY_FOR_WORK
            return []

        if request is None or not request.dispatched:
            logger.warning("Unexpected transcription result, no request pending")
            return []

        self._pending = None
        self._state = WorkerState.READY_FOR_WORK

        if message.get("success"):
            self.transcription_count += 1
            result = TranscriptionResult(True, text=message.get("text") or "")
            logger.debug(f"Transcription: {result.text!r}")
        else:
            result = TranscriptionResult(False, error=message.get("error") or "unknown error")
            logger.error(f"Worker transcription error: {result.error}")
        return [(request, result)]

    def _handle_exit(self, channel: WorkerChannel, code: Optional[int]) -> None:
        with self._lock:
            if channel is not self._channel:
                return
            self._channel = None
            self._ready.clear()
            request = self._pending
            self._pending = None
            self._abandoned = False
            load = self._pending_load
            self._pending_load = None

            if self._shutting_down:
                self._shutting_down = False
                self._state = WorkerState.STOPPED
                intentional = True
            else:
                self._state = WorkerState.CRASHED
                self.crash_count += 1
                intentional = False
                if self._active:
                    self._respawn_timer = threading.Timer(self.respawn_delay, self._respawn)
                    self._respawn_timer.daemon = True
                    self._respawn_timer.start()

        if intentional:
            logger.info(f"Transcription worker exited (code: {code})")
            if request is not None:
                self._finish(request, TranscriptionResult(False, error="Transcription worker shut down"))
            if load is not None and not load.done():
                load.set_result(LoadResult(False, error="Transcription worker shut down"))
            return

        crash = WorkerCrash(code)
        logger.error(str(crash))

        if request is not None:
            self._finish(request, exception=crash)
        if load is not None and not load.done():
            load.set_result(LoadResult(False, error=str(crash)))

        if self._active:
            self._notify(f"Whisper crashed (exit code: {code}). Respawning worker...")
        else:
            self._notify(f"Whisper crashed (exit code: {code})")

        if self.on_crash:
            self.on_crash(crash)

    def _respawn(self) -> None:
        with self._lock:
            self._respawn_timer = None
            if not self._active or self._channel is not None:
                return
            logger.info("Respawning transcription worker")
            try:
                self._spawn_locked()
            except WorkerCrash as e:
                self._notify(f"Could not respawn transcription worker: {e}")
                return
            model_args = self._model_args

        if model_args is not None:
            model_id, cache_dir, backend = model_args
            self.load_model(model_id, cache_dir, backend)

    def _notify(self, message: str) -> None:
        if self.on_status:
            try:
                self.on_status(message)
            except Exception as e:
                logger.error(f"Error in status callback: {e}")

    def get_stats(self) -> dict:
        """Get supervisor statistics"""
        return {
            "state": self._state.value,
            "backend": self._backend,
            "transcription_count": self.transcription_count,
            "timeout_count": self.timeout_count,
            "crash_count": self.crash_count,
        }
