"""
Energy-based Voice Activity Detection (VAD) segmenter

Turns a stream of resampled PCM16 frames into discrete speech segments:
- RMS energy per frame decides voiced vs. silent
- Entry hysteresis rejects transient noise
- Exit hysteresis tolerates short pauses mid-utterance
- A hard duration cap forces emission during non-stop speech
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import numpy as np

logger = logging.getLogger(__name__)

BYTES_PER_SAMPLE = 2
DEFAULT_SAMPLE_RATE = 16000

# ~30 seconds at 16kHz, 16-bit mono
DEFAULT_MAX_SEGMENT_BYTES = DEFAULT_SAMPLE_RATE * BYTES_PER_SAMPLE * 30
# ~0.5 seconds at 16kHz, 16-bit mono
DEFAULT_MIN_SEGMENT_BYTES = 16000


@dataclass(frozen=True)
class VADMode:
    """Thresholds tuned for one noise profile"""
    energy_threshold: float
    speech_frames_required: int
    silence_frames_required: int


# Empirically tuned, not derived. Override per deployment via config.
VAD_MODES: Dict[str, VADMode] = {
    "NORMAL": VADMode(0.01, 3, 30),
    "LOW_BITRATE": VADMode(0.008, 4, 35),
    "AGGRESSIVE": VADMode(0.015, 2, 20),
    "VERY_AGGRESSIVE": VADMode(0.02, 2, 15),
}

DEFAULT_MODE = "VERY_AGGRESSIVE"


@dataclass
class Segment:
    """A completed speech region"""
    audio: bytes
    forced: bool = False
    sample_rate: int = DEFAULT_SAMPLE_RATE

    @property
    def duration(self) -> float:
        return len(self.audio) / (self.sample_rate * BYTES_PER_SAMPLE)


def rms(frame: bytes) -> float:
    """Root mean square of a PCM16 frame, samples normalized to [-1, 1)"""
    usable = len(frame) - (len(frame) % BYTES_PER_SAMPLE)
    if usable == 0:
        return 0.0
    samples = np.frombuffer(frame[:usable], dtype="<i2").astype(np.float64) / 32768.0
    return float(np.sqrt(np.mean(samples * samples)))


class VoiceActivitySegmenter:
    """
    Hysteresis state machine over per-frame RMS energy

    Feed frames one at a time with process(). A segment is returned (and
    passed to on_segment, when given) when speech ends or the buffer reaches
    the hard cap. Segments below min_segment_bytes are dropped silently.
    """

    def __init__(
        self,
        mode: VADMode = VAD_MODES[DEFAULT_MODE],
        max_segment_bytes: int = DEFAULT_MAX_SEGMENT_BYTES,
        min_segment_bytes: int = DEFAULT_MIN_SEGMENT_BYTES,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        on_segment: Optional[Callable[[Segment], None]] = None,
    ):
        """
        Initialize segmenter

        Args:
            mode: Energy threshold and entry/exit frame counts
            max_segment_bytes: Hard cap, forces emission mid-utterance
            min_segment_bytes: Shorter segments are discarded
            sample_rate: Rate of incoming frames (for segment durations)
            on_segment: Callback for emitted segments
        """
        self.mode = mode
        self.max_segment_bytes = max_segment_bytes
        self.min_segment_bytes = min_segment_bytes
        self.sample_rate = sample_rate
        self.on_segment = on_segment

        self._speaking = False
        self._voice_frames = 0
        self._silence_frames = 0
        self._buffer: List[bytes] = []
        self._buffered_bytes = 0

        # Statistics
        self.frames_processed = 0
        self.segments_emitted = 0
        self.segments_discarded = 0

    @property
    def is_speaking(self) -> bool:
        return self._speaking

    @property
    def buffered_bytes(self) -> int:
        return self._buffered_bytes

    def reset(self) -> None:
        """Return to SILENCE and drop any partial segment"""
        self._speaking = False
        self._voice_frames = 0
        self._silence_frames = 0
        self._buffer = []
        self._buffered_bytes = 0

    def process(self, frame: bytes) -> Optional[Segment]:
        """
        Process one frame

        Args:
            frame: PCM16 little-endian mono bytes

        Returns:
            Completed segment, or None
        """
        self.frames_processed += 1
        energy = rms(frame)

        if energy > self.mode.energy_threshold:
            self._voice_frames += 1
            self._silence_frames = 0

            if not self._speaking and self._voice_frames >= self.mode.speech_frames_required:
                self._speaking = True
                self._buffer = []
                self._buffered_bytes = 0
                logger.debug(f"Speech started (RMS: {energy:.4f})")
        else:
            self._silence_frames += 1
            self._voice_frames = 0

            if self._speaking and self._silence_frames >= self.mode.silence_frames_required:
                self._speaking = False
                logger.debug(f"Speech ended, accumulated {len(self._buffer)} frames")
                return self._emit(forced=False)

        if self._speaking:
            self._buffer.append(bytes(frame))
            self._buffered_bytes += len(frame)

            if self._buffered_bytes >= self.max_segment_bytes:
                logger.info(
                    f"Speech buffer limit reached ({self._buffered_bytes} bytes), forcing emission"
                )
                self._speaking = False
                self._voice_frames = 0
                self._silence_frames = 0
                return self._emit(forced=True)

        return None

    def _emit(self, forced: bool) -> Optional[Segment]:
        audio = b"".join(self._buffer)
        self._buffer = []
        self._buffered_bytes = 0

        if len(audio) < self.min_segment_bytes:
            self.segments_discarded += 1
            logger.debug(f"Segment too short ({len(audio)} bytes), discarding")
            return None

        segment = Segment(audio=audio, forced=forced, sample_rate=self.sample_rate)
        self.segments_emitted += 1

        if self.on_segment:
            self.on_segment(segment)
        return segment

    def get_statistics(self) -> dict:
        """Get segmenter statistics"""
        return {
            "frames_processed": self.frames_processed,
            "segments_emitted": self.segments_emitted,
            "segments_discarded": self.segments_discarded,
            "is_speaking": self._speaking,
        }
