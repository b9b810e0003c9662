"""
relay-voice: Resilient real-time speech pipeline

Turns continuous microphone audio into utterances, transcribes each one in
an isolated, crash-recoverable worker process, and keeps a remote streaming
conversation alive across dropped connections.
"""

__version__ = "0.1.0"
