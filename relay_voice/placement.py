"""
Worker process placement

Native inference libraries are built against a particular interpreter. If
the host process is an embedded or frozen runtime, loading them in a child
of that runtime can fault on a binary-interface mismatch. So the worker is
preferably run by a genuine system Python, found via PATH and the usual
version-manager locations and validated by a probe. When none is usable,
the worker falls back to a multiprocessing child of the host with the
portable backend.
"""

import functools
import glob
import logging
import os
import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

from relay_voice.channels import MultiprocessingChannel, SubprocessChannel, WorkerChannel
from relay_voice.worker import ACCELERATED_BACKEND, PORTABLE_BACKEND

logger = logging.getLogger(__name__)

PROBE_TIMEOUT = 10.0
PROBE_CODE = "import relay_voice.worker; print('ok')"

INTERPRETER_NAMES = ["python3", "python"]


def _home() -> Path:
    return Path.home()


def _well_known_paths() -> List[str]:
    """Version-manager shims and system locations, in preference order"""
    home = _home()
    return [
        str(home / ".asdf" / "shims" / "python3"),
        str(home / ".local" / "share" / "mise" / "shims" / "python3"),
        str(home / ".mise" / "shims" / "python3"),
        "/opt/homebrew/bin/python3",
        "/usr/local/bin/python3",
        "/usr/bin/python3",
    ]


def _version_key(path: str) -> tuple:
    version_dir = Path(path).parents[1].name
    return tuple(int(part) for part in re.findall(r"\d+", version_dir))


def find_pyenv_interpreter() -> Optional[str]:
    """Latest pyenv-installed interpreter, if any"""
    versions = glob.glob(str(_home() / ".pyenv" / "versions" / "*" / "bin" / "python3"))
    if not versions:
        return None
    versions.sort(key=_version_key, reverse=True)
    return versions[0]


def worker_env() -> Dict[str, str]:
    """Environment that lets a foreign interpreter import this package"""
    env = dict(os.environ)
    package_root = str(Path(__file__).resolve().parent.parent)
    existing = env.get("PYTHONPATH")
    env["PYTHONPATH"] = package_root if not existing else os.pathsep.join([package_root, existing])
    return env


def is_usable_interpreter(path: str) -> bool:
    """Run a trivial probe: can this interpreter import the worker?"""
    if not path or not os.path.exists(path):
        return False
    try:
        result = subprocess.run(
            [path, "-c", PROBE_CODE],
            capture_output=True,
            text=True,
            timeout=PROBE_TIMEOUT,
            env=worker_env(),
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"Probe failed for {path}: {e}")
        return False
    return result.returncode == 0 and result.stdout.strip() == "ok"


def candidate_interpreters() -> List[str]:
    """All candidate paths, PATH lookup first"""
    candidates: List[str] = []
    for name in INTERPRETER_NAMES:
        found = shutil.which(name)
        if found:
            candidates.append(found)

    pyenv = find_pyenv_interpreter()
    if pyenv:
        candidates.append(pyenv)

    candidates.extend(_well_known_paths())

    # De-duplicate, keeping order
    seen = set()
    unique = []
    for candidate in candidates:
        if candidate not in seen:
            seen.add(candidate)
            unique.append(candidate)
    return unique


def find_system_interpreter(probe: Callable[[str], bool] = is_usable_interpreter) -> Optional[str]:
    """First candidate that passes the probe"""
    for candidate in candidate_interpreters():
        if probe(candidate):
            return candidate
    return None


@functools.lru_cache(maxsize=1)
def get_system_interpreter() -> Optional[str]:
    """Cached lookup, searched once per process lifetime"""
    interpreter = find_system_interpreter()
    if interpreter:
        logger.info(f"Found system Python: {interpreter}")
    else:
        logger.warning("No system Python found, will fall back to the portable worker backend")
    return interpreter


@dataclass(frozen=True)
class Placement:
    """Where the worker runs and which backend it should try first"""
    kind: str
    interpreter: Optional[str]
    preferred_backend: str

    @property
    def degraded(self) -> bool:
        return self.kind == MultiprocessingChannel.name

    def create_channel(self) -> WorkerChannel:
        if self.kind == SubprocessChannel.name:
            return SubprocessChannel(self.interpreter, env=worker_env())
        return MultiprocessingChannel()


def resolve_placement(backend: str = "auto", interpreter: Optional[str] = None) -> Placement:
    """
    Decide worker placement

    Args:
        backend: "auto" to derive from placement, or an explicit backend
        interpreter: Explicit interpreter path, skips the search

    Returns:
        Placement describing the channel and preferred backend
    """
    if interpreter is None:
        interpreter = get_system_interpreter()

    if interpreter:
        preferred = ACCELERATED_BACKEND if backend == "auto" else backend
        return Placement(SubprocessChannel.name, interpreter, preferred)

    logger.warning(
        "Transcription worker will run in the host interpreter on the "
        f"'{PORTABLE_BACKEND}' backend; expect slower transcription"
    )
    preferred = PORTABLE_BACKEND if backend == "auto" else backend
    return Placement(MultiprocessingChannel.name, None, preferred)
