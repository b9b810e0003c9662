"""
Configuration management for relay-voice
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from relay_voice.errors import ConfigError
from relay_voice.segmenter import (
    BYTES_PER_SAMPLE,
    DEFAULT_MIN_SEGMENT_BYTES,
    DEFAULT_MODE,
    VAD_MODES,
    VADMode,
)
from relay_voice.transport import ProviderConfig

logger = logging.getLogger(__name__)


@dataclass
class AudioConfig:
    """Audio configuration"""
    source_rate: int = 24000
    target_rate: int = 16000
    mic_device: Optional[int] = None
    block_size: int = 480


@dataclass
class VADConfig:
    """Voice Activity Detection configuration"""
    mode: str = DEFAULT_MODE
    energy_threshold: Optional[float] = None
    speech_frames_required: Optional[int] = None
    silence_frames_required: Optional[int] = None
    max_segment_seconds: float = 30.0
    min_segment_bytes: int = DEFAULT_MIN_SEGMENT_BYTES

    def resolve_mode(self) -> VADMode:
        """Named mode with any per-field overrides applied"""
        base = VAD_MODES.get(self.mode.upper())
        if base is None:
            raise ConfigError(f"Unknown VAD mode: {self.mode} (expected one of {', '.join(VAD_MODES)})")
        return VADMode(
            energy_threshold=self.energy_threshold if self.energy_threshold is not None else base.energy_threshold,
            speech_frames_required=self.speech_frames_required or base.speech_frames_required,
            silence_frames_required=self.silence_frames_required or base.silence_frames_required,
        )

    def max_segment_bytes(self, sample_rate: int) -> int:
        return int(self.max_segment_seconds * sample_rate) * BYTES_PER_SAMPLE


@dataclass
class TranscriptionConfig:
    """Transcription configuration"""
    model: str = "small"
    cache_dir: Optional[str] = None
    backend: str = "auto"
    language: str = "en-US"
    timeout: float = 60.0
    respawn_delay: float = 2.0
    interpreter: Optional[str] = None


@dataclass
class SessionConfig:
    """Remote session configuration"""
    url: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    instructions: Optional[str] = None
    max_attempts: int = 3
    backoff: float = 2.0
    context_turns: int = 20
    history_limit: int = 200

    def provider_config(self, language: str = "en-US") -> ProviderConfig:
        """Immutable snapshot used for every (re)connection"""
        if not self.url:
            raise ConfigError("session.url is not configured")
        return ProviderConfig(
            url=self.url,
            headers=tuple(sorted(self.headers.items())),
            instructions=self.instructions,
            language=language,
        )


@dataclass
class Config:
    """Main configuration container"""
    audio: AudioConfig = field(default_factory=AudioConfig)
    vad: VADConfig = field(default_factory=VADConfig)
    transcription: TranscriptionConfig = field(default_factory=TranscriptionConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    config_path: Path = field(default_factory=Path.cwd)

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Config":
        """
        Load configuration from YAML file

        Args:
            config_path: Path to config file. If None, uses config.yml in the
                        current directory, or built-in defaults when absent.

        Returns:
            Config object

        Raises:
            ConfigError: If an explicit config file is missing or invalid
        """
        if config_path is None:
            resolved_path = Path.cwd() / "config.yml"
            if not resolved_path.exists():
                logger.info("No config.yml found, using defaults")
                return cls()
        else:
            resolved_path = config_path

        if not resolved_path.exists():
            logger.error(f"Config file not found: {resolved_path}")
            logger.error("Please copy config.example.yml to config.yml and customize it.")
            raise ConfigError(f"Config file not found: {resolved_path}")

        config_data = _load_yaml(resolved_path)
        logger.info(f"Loaded config from {resolved_path}")

        try:
            config = cls(
                audio=AudioConfig(**(config_data.get("audio") or {})),
                vad=VADConfig(**(config_data.get("vad") or {})),
                transcription=TranscriptionConfig(**(config_data.get("transcription") or {})),
                session=SessionConfig(**(config_data.get("session") or {})),
                config_path=resolved_path.parent,
            )
        except TypeError as e:
            raise ConfigError(f"Invalid config file {resolved_path}: {e}") from e

        # Fail early on an unknown VAD mode
        config.vad.resolve_mode()
        return config

    def get_cache_dir(self) -> Optional[Path]:
        """Get the absolute model cache directory, if one is configured"""
        if not self.transcription.cache_dir:
            return None
        cache_dir = Path(self.transcription.cache_dir).expanduser()
        if cache_dir.is_absolute():
            return cache_dir
        return self.config_path / cache_dir


def _load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file and return as dict"""
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
            return data if data else {}
    except (OSError, yaml.YAMLError) as e:
        logger.error(f"Error loading config file {path}: {e}")
        raise ConfigError(f"Error loading config file {path}: {e}") from e
