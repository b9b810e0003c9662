"""
Microphone capture

Reads PCM16 mono blocks from the microphone with sounddevice and hands
each one to a callback (normally VoicePipeline.feed).
"""

import logging
import threading
import time
from typing import Callable, Optional

import sounddevice as sd

logger = logging.getLogger(__name__)


class MicrophoneSource:
    """
    Continuous capture from one input device

    Blocks are delivered on sounddevice's callback thread, one at a time,
    which makes this the pipeline's single producer.
    """

    def __init__(
        self,
        on_audio: Callable[[bytes], None],
        sample_rate: int = 24000,
        block_size: int = 480,
        device: Optional[int] = None,
    ):
        """
        Initialize capture

        Args:
            on_audio: Receives each PCM16 little-endian mono block
            sample_rate: Capture rate in Hz
            block_size: Frames per block
            device: Input device index, auto-detected when None
        """
        self.on_audio = on_audio
        self.sample_rate = sample_rate
        self.block_size = block_size
        self.device = device

        self.is_running = False
        self._thread: Optional[threading.Thread] = None
        self.blocks_captured = 0

    def start(self) -> None:
        """Start capturing"""
        if self.is_running:
            logger.warning("Capture already running")
            return

        if self.device is None:
            self.device = auto_detect_microphone()

        self.is_running = True
        self._thread = threading.Thread(
            target=self._capture_worker,
            name="relay-voice-capture",
            daemon=True,
        )
        self._thread.start()
        logger.info(f"Capture started (mic device: {self.device})")

    def stop(self) -> None:
        """Stop capturing"""
        if not self.is_running:
            return

        self.is_running = False
        if self._thread:
            self._thread.join(timeout=2.0)

        logger.info(f"Capture stopped (blocks: {self.blocks_captured})")

    def _capture_worker(self) -> None:
        def audio_callback(indata, frames, time_info, status):
            if status:
                logger.warning(f"Audio status: {status}")
            self.blocks_captured += 1
            try:
                self.on_audio(bytes(indata))
            except Exception as e:
                logger.error(f"Error in audio callback: {e}")

        try:
            with sd.RawInputStream(
                device=self.device,
                channels=1,
                samplerate=self.sample_rate,
                blocksize=self.block_size,
                dtype="int16",
                callback=audio_callback,
            ):
                logger.info("Audio stream started")
                while self.is_running:
                    time.sleep(0.1)
        except Exception as e:
            logger.error(f"Capture worker error: {e}")
            self.is_running = False


def auto_detect_microphone() -> int:
    """Auto-detect default microphone device"""
    try:
        default_idx = sd.default.device[0]
        device_info = sd.query_devices(default_idx)
        if device_info['max_input_channels'] > 0:
            logger.info(f"Auto-detected microphone: [{default_idx}] {device_info['name']}")
            return default_idx
    except Exception as e:
        logger.warning(f"Could not auto-detect default mic: {e}")

    # Fallback: find first microphone
    try:
        devices = sd.query_devices()
        for idx, device in enumerate(devices):
            if device['max_input_channels'] > 0:
                logger.info(f"Using first available mic: [{idx}] {device['name']}")
                return idx
    except Exception as e:
        logger.error(f"Could not detect any microphone: {e}")

    return 0
