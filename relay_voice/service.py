"""
relay-voice listen service

Foreground daemon that:
- Places and supervises the transcription worker, loads the model
- Captures microphone audio and runs the local pipeline
- Optionally keeps a remote streaming session alive, forwarding transcripts
"""

import logging
import signal
import sys
import threading
from typing import Optional

from relay_voice.config import Config
from relay_voice.history import ConversationHistory
from relay_voice.pipeline import VoicePipeline
from relay_voice.placement import resolve_placement
from relay_voice.resample import SampleRateConverter
from relay_voice.segmenter import VoiceActivitySegmenter
from relay_voice.session import SessionManager, SessionStatus
from relay_voice.supervisor import LoadProgress, TranscriptionSupervisor
from relay_voice.transport import WebSocketTransport

logger = logging.getLogger(__name__)


def build_supervisor(config: Config, on_status=None, on_progress=None) -> TranscriptionSupervisor:
    """Create a supervisor whose worker placement follows the config"""
    placement = resolve_placement(
        backend=config.transcription.backend,
        interpreter=config.transcription.interpreter,
    )
    logger.info(
        f"Worker placement: {placement.kind} "
        f"(interpreter: {placement.interpreter or 'host'}, backend: {placement.preferred_backend})"
    )
    return TranscriptionSupervisor(
        channel_factory=placement.create_channel,
        preferred_backend=placement.preferred_backend,
        timeout=config.transcription.timeout,
        respawn_delay=config.transcription.respawn_delay,
        on_status=on_status,
        on_progress=on_progress,
    )


def build_pipeline(config: Config, supervisor: TranscriptionSupervisor, **kwargs) -> VoicePipeline:
    """Create the converter -> segmenter -> supervisor pipeline from config"""
    converter = SampleRateConverter(config.audio.source_rate, config.audio.target_rate)
    segmenter = VoiceActivitySegmenter(
        mode=config.vad.resolve_mode(),
        max_segment_bytes=config.vad.max_segment_bytes(config.audio.target_rate),
        min_segment_bytes=config.vad.min_segment_bytes,
        sample_rate=config.audio.target_rate,
    )
    return VoicePipeline(
        supervisor,
        converter=converter,
        segmenter=segmenter,
        language=config.transcription.language,
        **kwargs,
    )


class ListenService:
    """
    Microphone-to-transcript service

    Manages:
    - Transcription worker supervision
    - Audio capture and the local pipeline
    - The optional remote session
    """

    def __init__(self, config: Config, verbose: bool = False):
        """
        Initialize service

        Args:
            config: Configuration
            verbose: Enable verbose logging
        """
        self.config = config
        self.verbose = verbose
        self._stop = threading.Event()
        self._supervisor: Optional[TranscriptionSupervisor] = None
        self._pipeline: Optional[VoicePipeline] = None
        self._capture = None
        self._session: Optional[SessionManager] = None
        self._last_transcript: Optional[str] = None

    def run(self) -> int:
        """Run the service (blocking). Returns an exit code."""
        signal.signal(signal.SIGTERM, self._signal_handler)
        signal.signal(signal.SIGINT, self._signal_handler)

        self._supervisor = build_supervisor(
            self.config,
            on_status=self._on_status,
            on_progress=self._on_progress,
        )
        self._supervisor.start()

        cache_dir = self.config.get_cache_dir()
        result = self._supervisor.load_model(
            self.config.transcription.model,
            str(cache_dir) if cache_dir else None,
        )
        if not result.success:
            logger.error("No transcription backend could load the model; restart after fixing the setup")
            self._cleanup()
            return 1

        if self.config.session.url:
            self._session = SessionManager(
                self.config.session.provider_config(self.config.transcription.language),
                WebSocketTransport(),
                on_status=self._on_session_status,
                on_message=self._on_remote_message,
                max_attempts=self.config.session.max_attempts,
                backoff=self.config.session.backoff,
                context_turns=self.config.session.context_turns,
                history=ConversationHistory(self.config.session.history_limit),
            )
            self._session.connect()

        self._pipeline = build_pipeline(
            self.config,
            self._supervisor,
            on_transcript=self._on_transcript,
            on_status=self._on_status,
            session=self._session,
        )
        self._pipeline.start()

        # PortAudio is loaded on import, only needed when capturing
        from relay_voice.capture import MicrophoneSource

        self._capture = MicrophoneSource(
            self._pipeline.feed,
            sample_rate=self.config.audio.source_rate,
            block_size=self.config.audio.block_size,
            device=self.config.audio.mic_device,
        )
        self._capture.start()

        logger.info("Listening (Ctrl+C to stop)")
        while not self._stop.wait(0.5):
            pass

        self._cleanup()
        return 0

    def _signal_handler(self, signum: int, frame) -> None:
        """Handle termination signals"""
        logger.info(f"Received signal {signum}, shutting down...")
        self._stop.set()

    def _on_transcript(self, text: str) -> None:
        print(text, flush=True)
        if self._session is not None:
            self._last_transcript = text

    def _on_remote_message(self, text: str) -> None:
        # The endpoint's reply completes the turn started by the last transcript
        if self._last_transcript:
            self._session.record_turn(self._last_transcript, text)
            self._last_transcript = None
        sys.stdout.write(f"> {text}\n")
        sys.stdout.flush()

    def _on_status(self, message: str) -> None:
        if self.verbose:
            logger.info(f"Status: {message}")

    def _on_progress(self, progress: LoadProgress) -> None:
        logger.info(
            f"Downloading {progress.file}: "
            f"{progress.loaded_bytes}/{progress.total_bytes} bytes ({progress.fraction:.0%})"
        )

    def _on_session_status(self, status: SessionStatus) -> None:
        logger.info(f"Session: {status}")

    def _cleanup(self) -> None:
        """Cleanup resources"""
        logger.info("Cleaning up...")

        if self._capture:
            self._capture.stop()
        if self._pipeline:
            self._pipeline.stop()
        if self._session:
            self._session.close()
        if self._supervisor:
            self._supervisor.shutdown()

        logger.info("Service stopped")


def run_service(config: Config, verbose: bool = False) -> int:
    """
    Run the listen service

    Args:
        config: Configuration
        verbose: Enable verbose logging
    """
    service = ListenService(config, verbose=verbose)
    return service.run()
