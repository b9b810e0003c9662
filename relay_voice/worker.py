"""
Transcription worker process

Runs faster-whisper in an isolated child process. If the native inference
library faults, only this process dies and the supervisor respawns it.

Started either as ``python -m relay_voice.worker`` (framed JSON over
stdin/stdout) or through multiprocessing via serve_connection().
Nothing here raises across the process boundary: every failure is
reported as a result message.
"""

import fnmatch
import gc
import logging
import os
import sys
import threading
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from relay_voice import ipc

logger = logging.getLogger(__name__)

SAMPLE_RATE = 16000
# Cap at ~30 seconds (16kHz, 16-bit mono)
MAX_AUDIO_BYTES = SAMPLE_RATE * 2 * 30

ACCELERATED_BACKEND = "cuda"
PORTABLE_BACKEND = "cpu"
COMPUTE_TYPES = {
    "cuda": "float16",
    "cpu": "int8",
    "auto": "default",
}

# Files faster-whisper needs from a CTranslate2 model repository
MODEL_FILE_PATTERNS = [
    "config.json",
    "preprocessor_config.json",
    "model.bin",
    "tokenizer.json",
    "vocabulary.*",
]

ProgressCallback = Callable[[str, int, int], None]

# Seconds between partial-download size checks
PROGRESS_INTERVAL = 0.5


def resolve_repo_id(model_id: str) -> str:
    """Map a short model size ("small", "large-v3") to its Hub repository"""
    if "/" in model_id:
        return model_id
    return f"Systran/faster-whisper-{model_id}"


def incomplete_bytes(folder: str) -> int:
    """Bytes written so far to partial downloads in a hub blobs folder"""
    try:
        names = os.listdir(folder)
    except FileNotFoundError:
        return 0

    written = 0
    for name in names:
        if not name.endswith(".incomplete"):
            continue
        try:
            written += os.path.getsize(os.path.join(folder, name))
        except FileNotFoundError:
            # Completed and renamed since listing
            continue
    return written


class DownloadMonitor:
    """
    Reports byte progress of one file while the hub client downloads it

    The hub client writes into a ``.incomplete`` blob that grows until the
    download finishes; its size is polled from a background thread.
    """

    def __init__(
        self,
        folder: str,
        name: str,
        done: int,
        size: int,
        total: int,
        on_progress: ProgressCallback,
        interval: Optional[float] = None,
    ):
        self.folder = folder
        self.name = name
        self.done = done
        self.size = size
        self.total = total
        self.on_progress = on_progress
        self.interval = PROGRESS_INTERVAL if interval is None else interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._reported = done

    def __enter__(self) -> "DownloadMonitor":
        self._thread = threading.Thread(target=self._run, name="relay-voice-download-progress", daemon=True)
        self._thread.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join()

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            loaded = self.done + min(incomplete_bytes(self.folder), self.size)
            if loaded > self._reported:
                self._reported = loaded
                self.on_progress(self.name, loaded, self.total)

def download_model_files(
    model_id: str,
    cache_dir: Optional[str],
    on_progress: ProgressCallback,
) -> str:
    """
    Fetch model files one by one, reporting cumulative bytes

    Returns:
        Local directory holding the model
    """
    from huggingface_hub import HfApi, constants, hf_hub_download, snapshot_download
    from huggingface_hub.file_download import repo_folder_name

    if os.path.isdir(model_id):
        return model_id

    repo_id = resolve_repo_id(model_id)
    try:
        info = HfApi().model_info(repo_id, files_metadata=True)
    except Exception as e:
        logger.warning(f"Cannot reach model hub ({e}), trying local cache")
        return snapshot_download(
            repo_id,
            cache_dir=cache_dir,
            allow_patterns=MODEL_FILE_PATTERNS,
            local_files_only=True,
        )

    files = [
        sibling for sibling in info.siblings
        if any(fnmatch.fnmatch(sibling.rfilename, pattern) for pattern in MODEL_FILE_PATTERNS)
    ]
    total = sum(sibling.size or 0 for sibling in files)
    loaded = 0
    local_dir = None
    blobs = os.path.join(
        cache_dir or constants.HF_HUB_CACHE,
        repo_folder_name(repo_id=repo_id, repo_type="model"),
        "blobs",
    )

    for sibling in files:
        monitor = DownloadMonitor(blobs, sibling.rfilename, loaded, sibling.size or 0, total, on_progress)
        with monitor:
            path = hf_hub_download(repo_id, sibling.rfilename, cache_dir=cache_dir)
        local_dir = os.path.dirname(path)
        loaded += sibling.size or 0
        on_progress(sibling.rfilename, loaded, total)

    if local_dir is None:
        raise FileNotFoundError(f"No model files found in {repo_id}")
    return local_dir


def create_whisper_model(model_path: str, backend: str) -> Any:
    """Instantiate faster-whisper on the given backend"""
    from faster_whisper import WhisperModel

    return WhisperModel(
        model_path,
        device=backend,
        compute_type=COMPUTE_TYPES.get(backend, "default"),
    )


def pcm16_to_float32(pcm: bytes) -> np.ndarray:
    """Convert PCM16 little-endian bytes to float32 in [-1, 1)"""
    aligned = len(pcm) - (len(pcm) % 2)
    if aligned == 0:
        return np.zeros(0, dtype=np.float32)
    return np.frombuffer(pcm[:aligned], dtype="<i2").astype(np.float32) / 32768.0


class WorkerLoop:
    """
    Message loop of the transcription worker

    Handles one message at a time, which is what serializes transcription
    requests on the worker side.
    """

    def __init__(
        self,
        send: Callable[[Dict[str, Any]], None],
        receive: Callable[[], Optional[Dict[str, Any]]],
        model_factory: Callable[[str, str], Any] = create_whisper_model,
        downloader: Callable[[str, Optional[str], ProgressCallback], str] = download_model_files,
        beam_size: int = 5,
    ):
        self._send_raw = send
        self._receive = receive
        self._model_factory = model_factory
        self._downloader = downloader
        self.beam_size = beam_size

        self._model: Any = None
        self._model_id: Optional[str] = None
        self._backend: Optional[str] = None

    def run(self) -> int:
        """Serve messages until shutdown or EOF. Returns the exit code."""
        self._send(ipc.make_ready())

        while True:
            message = self._receive()
            if message is None:
                logger.info("Parent closed the channel, exiting")
                break
            if not self.handle(message):
                break

        self._release()
        return 0

    def handle(self, message: Dict[str, Any]) -> bool:
        """Handle one message. Returns False when the loop should stop."""
        msg_type = message.get("type")

        if msg_type == ipc.LOAD:
            self._load(
                message.get("modelId", ""),
                message.get("cacheDir"),
                message.get("backend") or PORTABLE_BACKEND,
            )
        elif msg_type == ipc.TRANSCRIBE:
            self._transcribe(message.get("audioBase64", ""), message.get("languageHint"))
        elif msg_type == ipc.SHUTDOWN:
            logger.info("Shutdown requested")
            return False
        else:
            logger.warning(f"Unknown message type: {msg_type}")

        return True

    def _send(self, message: Dict[str, Any]) -> None:
        try:
            self._send_raw(message)
        except (OSError, ValueError) as e:
            # Parent may have disconnected
            logger.debug(f"Could not send {message.get('type')}: {e}")

    def _load(self, model_id: str, cache_dir: Optional[str], backend: str) -> None:
        if self._model is not None and self._model_id == model_id:
            self._send(ipc.make_load_result(True, backend_used=self._backend))
            return

        self._send(ipc.make_status("Loading Whisper model (first time may take a while)..."))

        try:
            model_path = self._downloader(
                model_id,
                cache_dir,
                lambda name, loaded, total: self._send(ipc.make_progress(name, loaded, total)),
            )
        except Exception as e:
            logger.error(f"Model download failed: {e}")
            self._send(ipc.make_load_result(False, error=f"download failed: {e}"))
            return

        backends: List[str] = [backend]
        if backend != PORTABLE_BACKEND:
            backends.append(PORTABLE_BACKEND)

        errors = []
        for candidate in backends:
            try:
                model = self._model_factory(model_path, candidate)
            except Exception as e:
                logger.warning(f"Backend '{candidate}' failed to load model: {e}")
                errors.append(f"{candidate}: {e}")
                if candidate != backends[-1]:
                    self._send(ipc.make_status(
                        f"Backend '{candidate}' unavailable, falling back to '{backends[-1]}'"
                    ))
                continue

            self._release()
            self._model = model
            self._model_id = model_id
            self._backend = candidate
            logger.info(f"Model {model_id} loaded (backend: {candidate})")
            self._send(ipc.make_load_result(True, backend_used=candidate))
            return

        self._send(ipc.make_load_result(False, error="; ".join(errors)))

    def _transcribe(self, audio_base64: str, language_hint: Optional[str]) -> None:
        if self._model is None:
            self._send(ipc.make_transcribe_result(False, error="Whisper model not loaded"))
            return

        try:
            pcm = ipc.decode_audio(audio_base64)
        except (ValueError, TypeError) as e:
            self._send(ipc.make_transcribe_result(False, error=f"Unreadable audio: {e}"))
            return

        if len(pcm) < 2:
            self._send(ipc.make_transcribe_result(False, error="Audio buffer too small"))
            return

        audio = pcm16_to_float32(pcm[:MAX_AUDIO_BYTES])
        if len(audio) == 0:
            self._send(ipc.make_transcribe_result(False, error="Empty audio after conversion"))
            return

        language = None if language_hint in (None, "", "auto") else language_hint

        try:
            segments, _info = self._model.transcribe(
                audio,
                language=language,
                beam_size=self.beam_size,
            )
            text = " ".join(segment.text.strip() for segment in segments).strip()
        except Exception as e:
            logger.error(f"Transcription error: {e}")
            self._send(ipc.make_transcribe_result(False, error=str(e)))
            return

        self._send(ipc.make_transcribe_result(True, text=text))

    def _release(self) -> None:
        if self._model is not None:
            self._model = None
            self._model_id = None
            self._backend = None
            gc.collect()


def serve_connection(conn) -> None:
    """Entry point for the multiprocessing channel"""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s worker %(name)s: %(message)s",
        stream=sys.stderr,
    )

    def receive() -> Optional[Dict[str, Any]]:
        try:
            return conn.recv()
        except EOFError:
            return None

    WorkerLoop(send=conn.send, receive=receive).run()
    conn.close()


def main() -> int:
    """Entry point for the subprocess channel"""
    # Keep the protocol on the real stdout; anything a native library
    # prints to fd 1 lands on stderr instead
    protocol_out = os.fdopen(os.dup(sys.stdout.fileno()), "wb")
    os.dup2(sys.stderr.fileno(), sys.stdout.fileno())
    sys.stdout = sys.stderr
    protocol_in = sys.stdin.buffer

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s worker %(name)s: %(message)s",
        stream=sys.stderr,
    )

    loop = WorkerLoop(
        send=lambda message: ipc.write_message(protocol_out, message),
        receive=lambda: ipc.read_message(protocol_in),
    )
    return loop.run()


if __name__ == "__main__":
    sys.exit(main())
