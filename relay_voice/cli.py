"""
relay-voice CLI

Entry point for the relay-voice command.
"""

import argparse
import logging
import sys
import wave
from pathlib import Path
from typing import List, Optional

import numpy as np

from relay_voice import __version__
from relay_voice.config import Config
from relay_voice.errors import ConfigError, RelayVoiceError
from relay_voice.placement import resolve_placement
from relay_voice.resample import SampleRateConverter
from relay_voice.service import build_supervisor, run_service
from relay_voice.worker import MAX_AUDIO_BYTES

# Exit codes
EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_USAGE = 2

WORKER_SAMPLE_RATE = 16000


def setup_logging(verbose: bool = False) -> None:
    """Configure logging"""
    level = logging.DEBUG if verbose else logging.INFO
    format_str = "%(asctime)s %(levelname)s %(name)s: %(message)s"

    logging.basicConfig(
        level=level,
        format=format_str,
        stream=sys.stdout,
    )

    # Reduce noise from third-party libraries
    logging.getLogger("faster_whisper").setLevel(logging.WARNING)
    logging.getLogger("huggingface_hub").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser"""
    parser = argparse.ArgumentParser(
        prog="relay-voice",
        description="Resilient real-time speech pipeline",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"relay-voice {__version__}",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        help="Path to config file (default: config.yml in current directory)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # listen command
    listen_parser = subparsers.add_parser(
        "listen",
        help="Transcribe the microphone continuously",
    )
    listen_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    listen_parser.add_argument(
        "--session-url",
        help="WebSocket endpoint that receives transcripts (overrides session.url)",
    )

    # transcribe command
    transcribe_parser = subparsers.add_parser(
        "transcribe",
        help="Transcribe a 16-bit WAV file",
    )
    transcribe_parser.add_argument(
        "file",
        type=Path,
        help="Path to a PCM16 WAV file",
    )
    transcribe_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    # probe command
    subparsers.add_parser(
        "probe",
        help="Show where the transcription worker would run",
    )

    return parser


def read_wav_pcm16(path: Path) -> bytes:
    """
    Read a PCM16 WAV file as 16kHz mono bytes

    Raises:
        RelayVoiceError: If the file is not 16-bit PCM
    """
    with wave.open(str(path), "rb") as wav:
        if wav.getsampwidth() != 2:
            raise RelayVoiceError(f"{path} is not 16-bit PCM")
        channels = wav.getnchannels()
        rate = wav.getframerate()
        frames = wav.readframes(wav.getnframes())

    if channels > 1:
        samples = np.frombuffer(frames, dtype="<i2").reshape(-1, channels)[:, 0]
        frames = samples.astype("<i2").tobytes()

    if rate != WORKER_SAMPLE_RATE:
        frames = SampleRateConverter(rate, WORKER_SAMPLE_RATE).process(frames)
    return frames


def split_audio(audio: bytes, chunk_bytes: int = MAX_AUDIO_BYTES) -> List[bytes]:
    """Cut PCM16 audio into pieces the worker accepts whole"""
    chunk_bytes -= chunk_bytes % 2
    return [audio[start:start + chunk_bytes] for start in range(0, len(audio), chunk_bytes)]


def transcribe_file(config: Config, path: Path) -> int:
    """
    Transcribe one file through a supervised worker

    Files longer than the worker's per-request limit are sent in
    consecutive pieces and the texts joined.

    Returns:
        Exit code
    """
    logger = logging.getLogger(__name__)
    try:
        audio = read_wav_pcm16(path)
    except (OSError, wave.Error, RelayVoiceError) as e:
        logger.error(f"Cannot read {path}: {e}")
        return EXIT_ERROR

    chunks = split_audio(audio)
    if not chunks:
        logger.error(f"{path} contains no audio")
        return EXIT_ERROR

    supervisor = build_supervisor(config)
    try:
        supervisor.start()
        cache_dir = config.get_cache_dir()
        loaded = supervisor.load_model(
            config.transcription.model,
            str(cache_dir) if cache_dir else None,
        )
        if not loaded.success:
            return EXIT_ERROR

        texts = []
        for index, chunk in enumerate(chunks, start=1):
            if len(chunks) > 1:
                logger.info(f"Transcribing part {index}/{len(chunks)}")
            result = supervisor.transcribe(chunk, config.transcription.language)
            if not result.success:
                logger.error(f"Transcription failed on part {index}/{len(chunks)}: {result.error}")
                return EXIT_ERROR
            if result.text.strip():
                texts.append(result.text.strip())

        print(" ".join(texts))
        return EXIT_SUCCESS
    except RelayVoiceError as e:
        logger.error(str(e))
        return EXIT_ERROR
    finally:
        supervisor.shutdown()


def probe(config: Config) -> int:
    """Print the worker placement decision"""
    placement = resolve_placement(
        backend=config.transcription.backend,
        interpreter=config.transcription.interpreter,
    )
    print(f"placement: {placement.kind}")
    print(f"interpreter: {placement.interpreter or 'host (multiprocessing)'}")
    print(f"preferred backend: {placement.preferred_backend}")
    if placement.degraded:
        print("warning: no system Python found, transcription will be slower")
    return EXIT_SUCCESS


def main(args: Optional[List[str]] = None) -> int:
    """Main entry point"""
    parser = create_parser()
    parsed = parser.parse_args(args)

    if not parsed.command:
        parser.print_help()
        return EXIT_USAGE

    setup_logging(verbose=getattr(parsed, "verbose", False))

    try:
        config = Config.load(parsed.config)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_ERROR

    if parsed.command == "listen":
        if parsed.session_url:
            config.session.url = parsed.session_url
        return run_service(config, verbose=parsed.verbose)

    elif parsed.command == "transcribe":
        return transcribe_file(config, parsed.file)

    elif parsed.command == "probe":
        return probe(config)

    else:
        print(f"Unknown command: {parsed.command}", file=sys.stderr)
        return EXIT_USAGE


if __name__ == "__main__":
    sys.exit(main())
