"""Scripted stand-ins for test binary processes."""

import io
import json
import subprocess
import sys
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional

from cargo_loom.constants import ENV_CHECKPOINT_FILE, ENV_LOOM_LOCATION
from cargo_loom.process import ProcessFactory


def libtest_lines(*messages: dict) -> bytes:
    return b"".join(json.dumps(m).encode("utf-8") + b"\n" for m in messages)


class FakeProcess:
    """Enough of subprocess.Popen for the runner."""

    def __init__(self, stdout: bytes = b"", stderr: bytes = b"", returncode: int = 0, piped: bool = True):
        self.stdout = io.BytesIO(stdout) if piped else None
        self._stdout = stdout
        self._stderr = stderr
        self._returncode = returncode
        self.returncode: Optional[int] = None

    def wait(self) -> int:
        self.returncode = self._returncode
        return self.returncode

    def communicate(self):
        self.returncode = self._returncode
        return self._stdout, self._stderr


class Call:
    def __init__(self, argv: List[str], env: Dict[str, str], stdout, stderr):
        self.argv = argv
        self.env = env
        self.stdout = stdout
        self.stderr = stderr

    @property
    def is_generation(self) -> bool:
        return ENV_CHECKPOINT_FILE in self.env and ENV_LOOM_LOCATION not in self.env

    @property
    def is_diagnostic(self) -> bool:
        return self.env.get(ENV_LOOM_LOCATION) == "1"


Script = Callable[[Call], FakeProcess]


class FakeFactory(ProcessFactory):
    """
    Records every spawn and answers it from `script`.

    Generation runs write a small JSON checkpoint, like loom would.
    """

    def __init__(self, script: Optional[Script] = None, write_checkpoints: bool = True):
        self.script = script or (lambda call: FakeProcess(returncode=101))
        self.write_checkpoints = write_checkpoints
        self.calls: List[Call] = []
        self._lock = threading.Lock()

    def spawn(self, argv, env, stdout=None, stderr=None):
        call = Call(list(argv), dict(env), stdout, stderr)
        with self._lock:
            self.calls.append(call)
        proc = self.script(call)
        if call.is_generation and self.write_checkpoints:
            Path(env[ENV_CHECKPOINT_FILE]).write_text(json.dumps({"path": [0, 1]}))
        if stdout != subprocess.PIPE:
            proc.stdout = None
        return proc

    def calls_for(self, test_name: str) -> List[Call]:
        with self._lock:
            return [c for c in self.calls if test_name in c.argv]


class PythonScriptFactory(ProcessFactory):
    """Runs "binaries" that are really Python scripts, with this interpreter."""

    def spawn(self, argv, env, stdout=None, stderr=None):
        return super().spawn([sys.executable] + list(argv), env, stdout=stdout, stderr=stderr)
