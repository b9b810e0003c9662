"""
Worker IPC protocol

JSON messages exchanged between the supervisor and the transcription
worker. Over byte streams (the subprocess channel) each message is framed
with a length prefix; the multiprocessing channel sends the dicts as-is.
"""

import base64
import json
import logging
import struct
from typing import Any, BinaryIO, Dict, Optional

logger = logging.getLogger(__name__)

# Message framing: 4-byte length prefix (big-endian) + JSON payload
HEADER_SIZE = 4
# 30s of 16kHz PCM16 is ~1.3MB once base64 encoded
MAX_MESSAGE_SIZE = 4 * 1024 * 1024

# parent -> worker
LOAD = "load"
TRANSCRIBE = "transcribe"
SHUTDOWN = "shutdown"

# worker -> parent
READY = "ready"
LOAD_RESULT = "load-result"
PROGRESS = "progress"
TRANSCRIBE_RESULT = "transcribe-result"
STATUS = "status"


def write_message(stream: BinaryIO, message: Dict[str, Any]) -> None:
    """
    Write a framed JSON message to a binary stream

    Args:
        stream: Writable binary stream (pipe)
        message: Dictionary to send as JSON
    """
    payload = json.dumps(message).encode('utf-8')

    if len(payload) > MAX_MESSAGE_SIZE:
        raise ValueError(f"Message too large: {len(payload)} bytes")

    header = struct.pack('>I', len(payload))
    stream.write(header + payload)
    stream.flush()


def read_message(stream: BinaryIO) -> Optional[Dict[str, Any]]:
    """
    Read a framed JSON message from a binary stream

    Args:
        stream: Readable binary stream (pipe)

    Returns:
        Parsed message dictionary, or None if the stream closed
    """
    header = _read_exact(stream, HEADER_SIZE)
    if not header:
        return None

    length = struct.unpack('>I', header)[0]

    if length > MAX_MESSAGE_SIZE:
        raise ValueError(f"Message too large: {length} bytes")

    payload = _read_exact(stream, length)
    if payload is None:
        return None

    return json.loads(payload.decode('utf-8'))


def _read_exact(stream: BinaryIO, size: int) -> Optional[bytes]:
    """Read exactly size bytes, or None if the stream closed first"""
    data = b''
    while len(data) < size:
        chunk = stream.read(size - len(data))
        if not chunk:
            return None
        data += chunk
    return data


def encode_audio(audio: bytes) -> str:
    return base64.b64encode(audio).decode('ascii')


def decode_audio(audio_base64: str) -> bytes:
    return base64.b64decode(audio_base64)


# Request helpers (parent -> worker)

def make_load_request(model_id: str, cache_dir: Optional[str], backend: str) -> Dict[str, Any]:
    """Create a 'load' request"""
    return {"type": LOAD, "modelId": model_id, "cacheDir": cache_dir, "backend": backend}


def make_transcribe_request(audio: bytes, language_hint: Optional[str]) -> Dict[str, Any]:
    """Create a 'transcribe' request"""
    return {
        "type": TRANSCRIBE,
        "audioBase64": encode_audio(audio),
        "languageHint": language_hint,
    }


def make_shutdown_request() -> Dict[str, Any]:
    """Create a 'shutdown' request"""
    return {"type": SHUTDOWN}


# Response helpers (worker -> parent)

def make_ready() -> Dict[str, Any]:
    return {"type": READY}


def make_load_result(
    success: bool,
    backend_used: Optional[str] = None,
    error: Optional[str] = None,
) -> Dict[str, Any]:
    """Create a 'load-result' response"""
    response: Dict[str, Any] = {"type": LOAD_RESULT, "success": success}
    if backend_used is not None:
        response["backendUsed"] = backend_used
    if error is not None:
        response["error"] = error
    return response


def make_progress(file: str, loaded_bytes: int, total_bytes: int) -> Dict[str, Any]:
    return {
        "type": PROGRESS,
        "file": file,
        "loadedBytes": loaded_bytes,
        "totalBytes": total_bytes,
    }


def make_transcribe_result(
    success: bool,
    text: Optional[str] = None,
    error: Optional[str] = None,
) -> Dict[str, Any]:
    """Create a 'transcribe-result' response"""
    response: Dict[str, Any] = {"type": TRANSCRIBE_RESULT, "success": success}
    if text is not None:
        response["text"] = text
    if error is not None:
        response["error"] = error
    return response


def make_status(message: str) -> Dict[str, Any]:
    return {"type": STATUS, "message": message}
