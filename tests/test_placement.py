from pathlib import Path

from relay_voice import placement
from relay_voice.channels import MultiprocessingChannel, SubprocessChannel


def _make_pyenv(home: Path, versions) -> None:
    for version in versions:
        bin_dir = home / ".pyenv" / "versions" / version / "bin"
        bin_dir.mkdir(parents=True)
        (bin_dir / "python3").write_text("")


def test_find_system_interpreter_returns_first_passing_probe(monkeypatch):
    monkeypatch.setattr(placement, "candidate_interpreters", lambda: ["/a/python3", "/b/python3", "/c/python3"])
    probed = []

    def probe(path):
        probed.append(path)
        return path.startswith("/b")

    assert placement.find_system_interpreter(probe=probe) == "/b/python3"
    assert probed == ["/a/python3", "/b/python3"]


def test_find_system_interpreter_none_usable(monkeypatch):
    monkeypatch.setattr(placement, "candidate_interpreters", lambda: ["/a/python3"])
    assert placement.find_system_interpreter(probe=lambda path: False) is None


def test_candidates_prefer_path_then_pyenv(monkeypatch, tmp_path):
    _make_pyenv(tmp_path, ["3.9.1", "3.12.2", "3.10.4"])
    monkeypatch.setattr(placement, "_home", lambda: tmp_path)
    monkeypatch.setattr(placement.shutil, "which", lambda name: "/usr/bin/python3" if name == "python3" else None)

    candidates = placement.candidate_interpreters()

    assert candidates[0] == "/usr/bin/python3"
    assert candidates[1] == str(tmp_path / ".pyenv" / "versions" / "3.12.2" / "bin" / "python3")
    # /usr/bin/python3 is also a well-known path but appears only once
    assert candidates.count("/usr/bin/python3") == 1
    assert str(tmp_path / ".asdf" / "shims" / "python3") in candidates


def test_missing_interpreter_is_not_usable(tmp_path):
    assert not placement.is_usable_interpreter(str(tmp_path / "no-python"))
    assert not placement.is_usable_interpreter("")


def test_worker_env_puts_package_root_first(monkeypatch):
    monkeypatch.setenv("PYTHONPATH", "/elsewhere")
    env = placement.worker_env()
    first, rest = env["PYTHONPATH"].split(placement.os.pathsep, 1)
    assert (Path(first) / "relay_voice" / "worker.py").exists()
    assert rest == "/elsewhere"


def test_system_interpreter_means_subprocess_and_accelerated_backend():
    result = placement.resolve_placement(interpreter="/usr/bin/python3")
    assert result.kind == SubprocessChannel.name
    assert result.preferred_backend == "cuda"
    assert not result.degraded

    channel = result.create_channel()
    assert isinstance(channel, SubprocessChannel)
    assert channel.command() == ["/usr/bin/python3", "-m", "relay_voice.worker"]


def test_explicit_backend_is_kept():
    result = placement.resolve_placement(backend="cpu", interpreter="/usr/bin/python3")
    assert result.preferred_backend == "cpu"


def test_no_interpreter_falls_back_to_portable_worker(monkeypatch):
    monkeypatch.setattr(placement, "get_system_interpreter", lambda: None)
    result = placement.resolve_placement()
    assert result.kind == MultiprocessingChannel.name
    assert result.interpreter is None
    assert result.preferred_backend == "cpu"
    assert result.degraded
    assert isinstance(result.create_channel(), MultiprocessingChannel)
