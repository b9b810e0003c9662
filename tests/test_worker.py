import time
from types import SimpleNamespace

import numpy as np

from relay_voice import ipc, worker
from relay_voice.worker import (
    MAX_AUDIO_BYTES,
    WorkerLoop,
    incomplete_bytes,
    pcm16_to_float32,
    resolve_repo_id,
)


class FakeSegment:
    def __init__(self, text):
        self.text = text


class FakeModel:
    def __init__(self, texts=(" hello ", "world ")):
        self.texts = texts
        self.calls = []

    def transcribe(self, audio, language=None, beam_size=5):
        self.calls.append((audio, language))
        return iter([FakeSegment(text) for text in self.texts]), None


def _fake_downloader(model_id, cache_dir, on_progress):
    on_progress("config.json", 10, 110)
    on_progress("model.bin", 110, 110)
    return f"/models/{model_id}"


def _make_loop(failing_backends=(), model=None, downloader=_fake_downloader):
    sent = []
    created = []
    model = model or FakeModel()

    def factory(path, backend):
        created.append((path, backend))
        if backend in failing_backends:
            raise RuntimeError(f"{backend} not available")
        return model

    loop = WorkerLoop(send=sent.append, receive=lambda: None, model_factory=factory, downloader=downloader)
    return loop, sent, created, model


def _of_type(sent, msg_type):
    return [message for message in sent if message["type"] == msg_type]


def test_resolve_repo_id():
    assert resolve_repo_id("small") == "Systran/faster-whisper-small"
    assert resolve_repo_id("org/custom-model") == "org/custom-model"


def test_pcm16_to_float32_scales_and_drops_odd_byte():
    audio = pcm16_to_float32(np.array([0, 16384, -32768], dtype="<i2").tobytes() + b"\x01")
    assert audio.dtype == np.float32
    assert audio.tolist() == [0.0, 0.5, -1.0]


def test_transcribe_before_load_reports_not_loaded():
    loop, sent, _, _ = _make_loop()
    loop.handle(ipc.make_transcribe_request(b"\x00\x00" * 100, "en"))
    assert sent == [ipc.make_transcribe_result(False, error="Whisper model not loaded")]


def test_load_reports_progress_and_backend():
    loop, sent, created, _ = _make_loop()
    loop.handle(ipc.make_load_request("small", None, "cuda"))

    progress = _of_type(sent, ipc.PROGRESS)
    assert [message["file"] for message in progress] == ["config.json", "model.bin"]
    assert progress[-1]["loadedBytes"] == progress[-1]["totalBytes"]
    assert created == [("/models/small", "cuda")]
    assert _of_type(sent, ipc.LOAD_RESULT) == [ipc.make_load_result(True, backend_used="cuda")]


def test_load_falls_back_to_portable_backend():
    loop, sent, created, _ = _make_loop(failing_backends=("cuda",))
    loop.handle(ipc.make_load_request("small", None, "cuda"))

    assert [backend for _, backend in created] == ["cuda", "cpu"]
    assert any("falling back" in message["message"] for message in _of_type(sent, ipc.STATUS))
    assert _of_type(sent, ipc.LOAD_RESULT) == [ipc.make_load_result(True, backend_used="cpu")]


def test_load_fails_when_every_backend_fails():
    loop, sent, _, _ = _make_loop(failing_backends=("cuda", "cpu"))
    loop.handle(ipc.make_load_request("small", None, "cuda"))

    (result,) = _of_type(sent, ipc.LOAD_RESULT)
    assert result["success"] is False
    assert "cuda" in result["error"] and "cpu" in result["error"]


def test_load_is_idempotent_for_same_model():
    loop, sent, created, _ = _make_loop()
    loop.handle(ipc.make_load_request("small", None, "cpu"))
    loop.handle(ipc.make_load_request("small", None, "cpu"))

    assert len(created) == 1
    assert len(_of_type(sent, ipc.LOAD_RESULT)) == 2


def test_download_failure_is_reported():
    def broken_downloader(model_id, cache_dir, on_progress):
        raise OSError("network unreachable")

    loop, sent, created, _ = _make_loop(downloader=broken_downloader)
    loop.handle(ipc.make_load_request("small", None, "cpu"))

    (result,) = _of_type(sent, ipc.LOAD_RESULT)
    assert result["success"] is False
    assert "network unreachable" in result["error"]
    assert created == []


def test_transcribe_joins_segments_and_maps_auto_language():
    loop, sent, _, model = _make_loop()
    loop.handle(ipc.make_load_request("small", None, "cpu"))
    sent.clear()

    loop.handle(ipc.make_transcribe_request(b"\x00\x10" * 1600, "auto"))
    loop.handle(ipc.make_transcribe_request(b"\x00\x10" * 1600, "de"))

    assert sent == [
        ipc.make_transcribe_result(True, text="hello world"),
        ipc.make_transcribe_result(True, text="hello world"),
    ]
    assert [language for _, language in model.calls] == [None, "de"]


def test_transcribe_caps_audio_length():
    loop, _, _, model = _make_loop()
    loop.handle(ipc.make_load_request("small", None, "cpu"))
    loop.handle(ipc.make_transcribe_request(b"\x00\x00" * (MAX_AUDIO_BYTES // 2 + 1000), None))

    audio, _ = model.calls[0]
    assert len(audio) == MAX_AUDIO_BYTES // 2


def test_model_error_becomes_result_message():
    class ExplodingModel(FakeModel):
        def transcribe(self, audio, language=None, beam_size=5):
            raise RuntimeError("decoder failure")

    loop, sent, _, _ = _make_loop(model=ExplodingModel())
    loop.handle(ipc.make_load_request("small", None, "cpu"))
    sent.clear()
    loop.handle(ipc.make_transcribe_request(b"\x00\x10" * 100, "en"))

    assert sent == [ipc.make_transcribe_result(False, error="decoder failure")]


def test_run_sends_ready_and_stops_on_shutdown():
    inbox = [
        ipc.make_load_request("small", None, "cpu"),
        ipc.make_shutdown_request(),
        ipc.make_transcribe_request(b"\x00\x10" * 100, "en"),
    ]
    sent = []
    loop = WorkerLoop(
        send=sent.append,
        receive=lambda: inbox.pop(0) if inbox else None,
        model_factory=lambda path, backend: FakeModel(),
        downloader=_fake_downloader,
    )

    assert loop.run() == 0
    assert sent[0] == ipc.make_ready()
    assert not _of_type(sent, ipc.TRANSCRIBE_RESULT)
    assert len(inbox) == 1


def test_run_exits_when_parent_closes_channel():
    sent = []
    loop = WorkerLoop(send=sent.append, receive=lambda: None)
    assert loop.run() == 0
    assert sent == [ipc.make_ready()]


def test_send_failure_does_not_escape():
    def broken_send(message):
        raise BrokenPipeError("parent gone")

    loop = WorkerLoop(send=broken_send, receive=lambda: None)
    assert loop.run() == 0


def test_incomplete_bytes_counts_partial_blobs(tmp_path):
    (tmp_path / "abc.incomplete").write_bytes(b"\x00" * 300)
    (tmp_path / "done").write_bytes(b"\x00" * 1000)
    assert incomplete_bytes(str(tmp_path)) == 300
    assert incomplete_bytes(str(tmp_path / "missing")) == 0


def test_download_reports_progress_within_a_file(tmp_path, monkeypatch):
    import huggingface_hub

    sizes = {"model.bin": 1000, "config.json": 10}

    class FakeApi:
        def model_info(self, repo_id, files_metadata=False):
            siblings = [SimpleNamespace(rfilename=name, size=size) for name, size in sizes.items()]
            siblings.append(SimpleNamespace(rfilename="README.md", size=5))
            return SimpleNamespace(siblings=siblings)

    def fake_download(repo_id, filename, cache_dir=None):
        blobs = tmp_path / "models--Systran--faster-whisper-small" / "blobs"
        blobs.mkdir(parents=True, exist_ok=True)
        partial = blobs / f"{filename}.incomplete"
        partial.write_bytes(b"\x00" * (sizes[filename] // 2))
        time.sleep(0.2)
        partial.rename(blobs / filename)
        snapshot = tmp_path / "snapshot"
        snapshot.mkdir(exist_ok=True)
        return str(snapshot / filename)

    monkeypatch.setattr(huggingface_hub, "HfApi", FakeApi)
    monkeypatch.setattr(huggingface_hub, "hf_hub_download", fake_download)
    monkeypatch.setattr(worker, "PROGRESS_INTERVAL", 0.02)

    progress = []
    local_dir = worker.download_model_files("small", str(tmp_path), lambda *args: progress.append(args))

    assert local_dir == str(tmp_path / "snapshot")
    assert ("model.bin", 500, 1010) in progress
    assert progress[-1] == ("config.json", 1010, 1010)
    loaded = [value for _, value, _ in progress]
    assert loaded == sorted(loaded)
