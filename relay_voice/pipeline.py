"""
Local speech pipeline

Wires the stages together:
raw audio -> sample rate conversion -> VAD segmentation -> transcription
worker -> transcript callback and optional response generator.

Audio is fed from a single producer (the capture callback). Completed
segments go through a bounded queue to one transcription thread, so at
most one request is ever in flight.
"""

import logging
import queue
import threading
from typing import Callable, Optional

from relay_voice.errors import InvalidAudio, WorkerBusy, WorkerCrash, WorkerNotReady
from relay_voice.resample import SampleRateConverter
from relay_voice.segmenter import Segment, VoiceActivitySegmenter
from relay_voice.session import SessionManager
from relay_voice.supervisor import TranscriptionSupervisor

logger = logging.getLogger(__name__)

# Given a transcript, produce a reply (or None)
ResponseGenerator = Callable[[str], Optional[str]]

MIN_TRANSCRIPT_CHARS = 2


class VoicePipeline:
    """
    Real-time utterance transcription

    A remote session, when attached, is sent every transcript and records
    completed turns for context replay. Its connection state never affects
    this pipeline.
    """

    def __init__(
        self,
        supervisor: TranscriptionSupervisor,
        converter: Optional[SampleRateConverter] = None,
        segmenter: Optional[VoiceActivitySegmenter] = None,
        language: Optional[str] = None,
        on_transcript: Optional[Callable[[str], None]] = None,
        response_generator: Optional[ResponseGenerator] = None,
        session: Optional[SessionManager] = None,
        on_status: Optional[Callable[[str], None]] = None,
        queue_size: int = 4,
    ):
        """
        Initialize pipeline

        Args:
            supervisor: Transcription worker supervisor (model already loaded)
            converter: Sample rate converter (24kHz -> 16kHz by default)
            segmenter: VAD segmenter
            language: Language hint passed with every request
            on_transcript: Callback for finalized transcripts
            response_generator: Produces a reply for each transcript
            session: Remote session that receives transcripts and completed turns
            on_status: Callback for user-visible status messages
            queue_size: Segments waiting for transcription before dropping
        """
        self.supervisor = supervisor
        self.converter = converter or SampleRateConverter()
        self.segmenter = segmenter or VoiceActivitySegmenter()
        self.language = language
        self.on_transcript = on_transcript
        self.response_generator = response_generator
        self.session = session
        self.on_status = on_status

        self.is_running = False
        self._segments: "queue.Queue[Optional[Segment]]" = queue.Queue(maxsize=queue_size)
        self._thread: Optional[threading.Thread] = None
        self._reset_requested = threading.Event()

        # Statistics
        self.transcription_count = 0
        self.dropped_segments = 0

    def start(self) -> None:
        """Start the transcription thread"""
        if self.is_running:
            logger.warning("Pipeline already running")
            return

        self.is_running = True
        self.supervisor.activate()
        self._thread = threading.Thread(
            target=self._transcription_worker,
            name="relay-voice-transcription",
            daemon=True,
        )
        self._thread.start()
        self._notify("Listening...")
        logger.info("Pipeline started")

    def stop(self, timeout: float = 2.0) -> None:
        """Stop the pipeline; the worker process is kept alive"""
        if not self.is_running:
            return

        self.is_running = False
        self.supervisor.deactivate()
        try:
            self._segments.put_nowait(None)
        except queue.Full:
            # Worker thread drains, then sees is_running is False
            pass

        if self._thread:
            self._thread.join(timeout=timeout)

        # Leftover segments (and the sentinel) must not leak into the next start
        while True:
            try:
                self._segments.get_nowait()
            except queue.Empty:
                break

        self.converter.reset()
        self.segmenter.reset()
        logger.info(f"Pipeline stopped (transcriptions: {self.transcription_count})")

    def feed(self, chunk: bytes) -> None:
        """Feed one raw audio chunk at the converter's source rate"""
        if not self.is_running:
            return

        if self._reset_requested.is_set():
            self._reset_requested.clear()
            self.converter.reset()
            self.segmenter.reset()
            logger.info("Audio state reset after transcription failure")

        pcm = self.converter.process(chunk)
        if not pcm:
            return

        segment = self.segmenter.process(pcm)
        if segment is not None:
            self._enqueue(segment)

    def _enqueue(self, segment: Segment) -> None:
        label = "forced" if segment.forced else "complete"
        logger.info(f"Speech segment {label} ({segment.duration:.2f}s), queued for transcription")
        try:
            self._segments.put_nowait(segment)
        except queue.Full:
            self.dropped_segments += 1
            logger.warning("Transcription backlog full, dropping segment")

    def _transcription_worker(self) -> None:
        while self.is_running:
            segment = self._segments.get()
            if segment is None:
                break
            self.process_segment(segment)

    def process_segment(self, segment: Segment) -> Optional[str]:
        """
        Transcribe one segment and hand the text on

        Returns:
            The transcript, or None if nothing usable came back
        """
        self._notify("Transcribing...")

        try:
            result = self.supervisor.transcribe(segment.audio, self.language)
        except (InvalidAudio, WorkerNotReady, WorkerBusy) as e:
            logger.warning(f"Segment not transcribed: {e}")
            self._notify("Listening...")
            return None
        except WorkerCrash as e:
            logger.error(f"Transcription failed: {e}")
            self._reset_requested.set()
            return None

        if result.timed_out:
            self._reset_requested.set()
            self._notify("Listening...")
            return None

        text = result.text.strip() if result.success else ""
        if len(text) < MIN_TRANSCRIPT_CHARS:
            logger.debug("Empty transcription, skipping")
            self._notify("Listening...")
            return None

        self.transcription_count += 1
        logger.info(f"Transcribed: {len(text.split())} words")

        if self.on_transcript:
            try:
                self.on_transcript(text)
            except Exception as e:
                logger.error(f"Error in transcription callback: {e}")

        if self.session is not None and not self.session.send_text(text):
            logger.info("Session not connected, transcript kept local")

        if self.response_generator:
            self._notify("Generating response...")
            try:
                reply = self.response_generator(text)
            except Exception as e:
                logger.error(f"Response generator error: {e}")
                reply = None
            if reply and self.session is not None:
                self.session.record_turn(text, reply)

        self._notify("Listening...")
        return text

    def _notify(self, message: str) -> None:
        if self.on_status:
            try:
                self.on_status(message)
            except Exception as e:
                logger.error(f"Error in status callback: {e}")

    def get_stats(self) -> dict:
        """Get pipeline statistics"""
        return {
            "transcription_count": self.transcription_count,
            "dropped_segments": self.dropped_segments,
            "is_running": self.is_running,
            "segmenter": self.segmenter.get_statistics(),
            "supervisor": self.supervisor.get_stats(),
        }
