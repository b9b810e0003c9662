import io
import struct

import pytest

from relay_voice import ipc


def test_framed_messages_round_trip_in_order():
    stream = io.BytesIO()
    ipc.write_message(stream, ipc.make_ready())
    ipc.write_message(stream, ipc.make_load_result(True, backend_used="cpu"))
    stream.seek(0)

    assert ipc.read_message(stream) == {"type": "ready"}
    assert ipc.read_message(stream) == {"type": "load-result", "success": True, "backendUsed": "cpu"}
    assert ipc.read_message(stream) is None


def test_header_is_big_endian_length():
    stream = io.BytesIO()
    ipc.write_message(stream, ipc.make_shutdown_request())
    raw = stream.getvalue()
    (length,) = struct.unpack(">I", raw[:4])
    assert length == len(raw) - 4


def test_truncated_payload_reads_as_closed():
    stream = io.BytesIO()
    ipc.write_message(stream, ipc.make_status("Loading Whisper model..."))
    truncated = io.BytesIO(stream.getvalue()[:-3])
    assert ipc.read_message(truncated) is None


def test_oversized_frame_is_rejected():
    stream = io.BytesIO(struct.pack(">I", ipc.MAX_MESSAGE_SIZE + 1))
    with pytest.raises(ValueError):
        ipc.read_message(stream)


def test_transcribe_request_carries_audio_as_base64():
    audio = bytes(range(256)) * 4
    request = ipc.make_transcribe_request(audio, "en")
    assert request["type"] == ipc.TRANSCRIBE
    assert request["languageHint"] == "en"
    assert ipc.decode_audio(request["audioBase64"]) == audio


def test_optional_fields_are_omitted():
    assert ipc.make_transcribe_result(False, error="boom") == {
        "type": "transcribe-result",
        "success": False,
        "error": "boom",
    }
    assert ipc.make_progress("model.bin", 10, 100) == {
        "type": "progress",
        "file": "model.bin",
        "loadedBytes": 10,
        "totalBytes": 100,
    }
