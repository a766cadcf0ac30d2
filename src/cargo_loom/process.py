"""Spawning test binaries."""

import os
import subprocess
from typing import IO, Dict, List, Optional, Union

from cargo_loom.constants import MANAGED_ENV
from cargo_loom.errors import SpawnError

Stream = Optional[Union[int, IO]]


def child_env(env: Dict[str, str]) -> Dict[str, str]:
    """
    The current environment with `env` layered on top.

    loom variables the runner manages are dropped from the inherited
    environment first, so e.g. a stray LOOM_CHECKPOINT_FILE never reaches
    a discovery run.
    """
    full_env = {k: v for k, v in os.environ.items() if k not in MANAGED_ENV}
    full_env.update(env)
    return full_env


class ProcessFactory:
    """
    Starts child processes for test binaries.

    Subclass and override `spawn` to change how binaries are launched (for
    example in tests).
    """

    def spawn(
        self,
        argv: List[str],
        env: Dict[str, str],
        stdout: Stream = None,
        stderr: Stream = None,
    ) -> subprocess.Popen:
        return subprocess.Popen(argv, env=child_env(env), stdout=stdout, stderr=stderr)


def spawn_checked(
    factory: ProcessFactory,
    action: str,
    target: str,
    argv: List[str],
    env: Dict[str, str],
    stdout: Stream = None,
    stderr: Stream = None,
) -> subprocess.Popen:
    """Spawn through `factory`, turning OS failures into SpawnError."""
    try:
        return factory.spawn(argv, env, stdout=stdout, stderr=stderr)
    except OSError as e:
        raise SpawnError(action, target, e) from e
