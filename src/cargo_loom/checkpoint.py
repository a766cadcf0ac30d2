"""Checkpoint file locations.

A checkpoint is the file loom writes to persist exploration progress for a
single failing test. Its existence (and well-formedness) is the only signal
used to decide whether it has to be generated again.
"""

import json
import time
from pathlib import Path
from typing import List, Optional

from cargo_loom.constants import CHECKPOINT_SUFFIX, LAYOUT_BINARY, LAYOUT_SUITE
from cargo_loom.errors import SetupError
from cargo_loom.ledger import TestSuite


def escape_test_name(name: str) -> str:
    """Escape a test name so it is a safe file name with no raw `-`."""
    return name.replace("%", "%25").replace("-", "%2D").replace("/", "%2F")


def unescape_test_name(stem: str) -> str:
    return stem.replace("%2F", "/").replace("%2D", "-").replace("%25", "%")


def checkpoint_path(root: Path, suite_name: str, test_name: str) -> Path:
    """
    Path of the checkpoint for one test in the flat (suite) layout.

    `<root>/<suite>-<test>.json`. Test names are escaped, so the last raw
    `-` in the file name always separates the suite from the test and two
    different (suite, test) pairs never share a path.
    """
    return Path(root) / f"{suite_name}-{escape_test_name(test_name)}{CHECKPOINT_SUFFIX}"


def binary_checkpoint_path(root: Path, binary_name: str, test_name: str) -> Path:
    """Path of the checkpoint for one test in the per-binary layout."""
    return Path(root) / binary_name / f"{escape_test_name(test_name)}{CHECKPOINT_SUFFIX}"


def ensure_dir(path: Path) -> Path:
    """Create `path` and any missing parents."""
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise SetupError(f"failed to create checkpoint directory `{path}`: {e}") from e
    return path


def is_checkpointed(path: Path) -> bool:
    """
    Whether a usable checkpoint exists at `path`.

    A file that is missing, unreadable, or not valid JSON (e.g. a write
    interrupted by a signal) counts as not generated.
    """
    try:
        json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, ValueError):
        return False
    return True


def run_root(base: Path, run_id: Optional[str] = None) -> Path:
    """
    Checkpoint root for this invocation.

    With no run id the root is shared across invocations so checkpoints for
    an unchanged binary are reused. `run_id="now"` qualifies it with the
    current Unix timestamp.
    """
    if run_id is None:
        return base
    if run_id == "now":
        run_id = str(int(time.time()))
    return base / run_id


class CheckpointStore:
    """Computes checkpoint paths under one root directory."""

    def __init__(self, root: Path, layout: str = LAYOUT_BINARY):
        if layout not in (LAYOUT_BINARY, LAYOUT_SUITE):
            raise ValueError(f"unknown checkpoint layout: {layout}")
        self.root = Path(root)
        self.layout = layout

    def __repr__(self) -> str:
        return f"CheckpointStore(root={str(self.root)!r}, layout={self.layout!r})"

    def suite_dir(self, suite: TestSuite) -> Path:
        """Directory holding the checkpoints of `suite`."""
        if self.layout == LAYOUT_BINARY:
            return self.root / suite.binary_name
        return self.root

    def case_path(self, suite: TestSuite, test_name: str) -> Path:
        """Checkpoint of one test; the suite layout names files after `suite.key`."""
        if self.layout == LAYOUT_BINARY:
            return binary_checkpoint_path(self.root, suite.binary_name, test_name)
        return checkpoint_path(self.root, suite.key, test_name)

    def existing_tests(self, suite: TestSuite, name_filter: Optional[str] = None) -> List[str]:
        """
        Names of tests in `suite` that already have a checkpoint file.

        Args:
            suite: The suite whose checkpoint directory is scanned.
            name_filter: If given, only names containing this substring.

        Returns:
            Sorted test names (empty if the directory does not exist).
        """
        directory = self.suite_dir(suite)
        if not directory.is_dir():
            return []

        names = []
        for path in directory.glob(f"*{CHECKPOINT_SUFFIX}"):
            if not path.is_file():
                continue
            stem = path.name[: -len(CHECKPOINT_SUFFIX)]
            if self.layout == LAYOUT_SUITE:
                prefix = f"{suite.key}-"
                # a raw `-` left over means the file belongs to another suite
                if not stem.startswith(prefix) or "-" in stem[len(prefix):]:
                    continue
                stem = stem[len(prefix):]
            name = unescape_test_name(stem)
            if name_filter is None or name_filter in name:
                names.append(name)

        return sorted(names)
