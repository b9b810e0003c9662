"""
Error taxonomy for relay-voice

Every failure that leaves a component is one of these classes. The
``category`` attribute tells callers how to treat it:

- transient: handled internally (retry, fallback), surfaced as status only
- crash: worker died unexpectedly, a respawn is in progress
- terminal: nothing more will be attempted, the user must restart manually
- input: rejected before any expensive work was dispatched
"""

TRANSIENT = "transient"
CRASH = "crash"
TERMINAL = "terminal"
INPUT = "input"


class RelayVoiceError(Exception):
    """Base class for all relay-voice errors"""
    category = TERMINAL


class ConfigError(RelayVoiceError):
    """Configuration file missing, unreadable or invalid"""
    category = INPUT


class InvalidAudio(RelayVoiceError):
    """Audio too short or unreadable, never dispatched to the worker"""
    category = INPUT


class WorkerNotReady(RelayVoiceError):
    """No model is loaded in the transcription worker"""
    category = INPUT


class WorkerBusy(RelayVoiceError):
    """A transcription request is already outstanding"""
    category = INPUT


class TranscriptionTimeout(RelayVoiceError):
    """The worker did not answer within the hard timeout"""
    category = TRANSIENT


class ModelLoadFailure(RelayVoiceError):
    """Every transcription backend failed to load the model"""
    category = TERMINAL


class WorkerCrash(RelayVoiceError):
    """The transcription worker exited unexpectedly"""
    category = CRASH

    def __init__(self, exit_code=None, message=None):
        self.exit_code = exit_code
        super().__init__(message or f"Transcription worker crashed (exit code: {exit_code})")


class SessionClosed(RelayVoiceError):
    """The session was closed by the user and refuses further network work"""
    category = TERMINAL


class ReconnectExhausted(RelayVoiceError):
    """All reconnection attempts failed"""
    category = TERMINAL
