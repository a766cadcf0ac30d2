"""Discovery pass: run each suite once to find out which tests fail.

The suite runs with loom's diagnostics disabled (no checkpoints, no
logging, no location capture), which is much faster than a diagnostic run.
Tests that already have a checkpoint from an earlier run against the same
binary are counted as failing without running them again.
"""

import logging
import subprocess
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Union

from cargo_loom.checkpoint import CheckpointStore, ensure_dir
from cargo_loom.config import LoomOptions
from cargo_loom.constants import LIBTEST_JSON_ARGS
from cargo_loom.events import Decoded, DecodeError, SuiteFailed, SuiteOk, SuiteStarted, TestFailed, decode_stream
from cargo_loom.ledger import FailureLedger, TestSuite
from cargo_loom.process import ProcessFactory, spawn_checked

logger = logging.getLogger(__name__)

EventCallback = Callable[[Decoded, float], None]
CheckpointedCallback = Callable[[List[str]], None]


@dataclass
class SuiteReport:
    """What happened while running one suite."""
    suite: TestSuite
    test_count: Optional[int] = None
    result: Optional[Union[SuiteOk, SuiteFailed]] = None
    newly_failed: List[str] = field(default_factory=list)
    previously_checkpointed: List[str] = field(default_factory=list)
    decode_errors: int = 0
    returncode: Optional[int] = None
    elapsed: float = 0.0

    @property
    def failed_tests(self) -> List[str]:
        return self.previously_checkpointed + self.newly_failed

    @property
    def crashed(self) -> bool:
        """The binary exited abnormally without reporting a suite result."""
        return self.result is None and self.returncode not in (None, 0)


def discovery_command(
    suite: TestSuite,
    options: LoomOptions,
    name_filter: Optional[str] = None,
    skip: Optional[List[str]] = None,
) -> List[str]:
    """Argument vector for the discovery run of `suite`."""
    argv = [str(suite.path)] + LIBTEST_JSON_ARGS + list(options.test_args)
    if name_filter:
        argv.append(name_filter)
    for name in skip or []:
        argv.extend(["--skip", name])
    return argv


def discover_failures(
    suite: TestSuite,
    options: LoomOptions,
    store: CheckpointStore,
    ledger: FailureLedger,
    factory: Optional[ProcessFactory] = None,
    name_filter: Optional[str] = None,
    on_event: Optional[EventCallback] = None,
    on_checkpointed: Optional[CheckpointedCallback] = None,
) -> SuiteReport:
    """
    Run `suite` once and record its failing tests in `ledger`.

    Args:
        suite: The test binary to run.
        options: Loom limits forwarded through the environment.
        store: Where checkpoints for this suite live.
        ledger: Receives one FailingCase per failing test.
        factory: Spawns the binary (default: ProcessFactory()).
        name_filter: Only run tests whose name contains this substring.
        on_event: Called with every decoded line and the elapsed seconds.
        on_checkpointed: Called once with the previously checkpointed tests.

    Returns:
        SuiteReport for this suite.

    Raises:
        SpawnError: If the binary could not be started.
        SetupError: If the checkpoint directory could not be created.
    """
    factory = factory or ProcessFactory()
    report = SuiteReport(suite=suite)

    if suite.is_lib:
        logger.info("Running unittests (%s)", suite.path)
    else:
        logger.info("Running %s (%s)", suite.name, suite.path)

    checkpoint_dir = store.suite_dir(suite)
    if checkpoint_dir.is_dir():
        for name in store.existing_tests(suite, name_filter):
            ledger.fail_test(suite, name, store.case_path(suite, name))
            report.previously_checkpointed.append(name)
        if report.previously_checkpointed and on_checkpointed is not None:
            on_checkpointed(list(report.previously_checkpointed))
    else:
        ensure_dir(checkpoint_dir)

    argv = discovery_command(suite, options, name_filter, report.previously_checkpointed)
    logger.debug("discovery command for %s: %s", suite.key, argv)

    t0 = time.monotonic()
    proc = spawn_checked(
        factory,
        "run test suite",
        suite.key,
        argv,
        options.discovery_env(),
        stdout=subprocess.PIPE,
    )
    try:
        for decoded in decode_stream(proc.stdout):
            if isinstance(decoded, DecodeError):
                report.decode_errors += 1
                logger.warning(
                    "error from test suite %s: %s (line: %r)",
                    suite.key, decoded.reason, decoded.line,
                )
            elif isinstance(decoded, TestFailed):
                # already recorded from a checkpoint or an earlier event
                if not ledger.contains(suite, decoded.name):
                    report.newly_failed.append(decoded.name)
                ledger.fail_test(suite, decoded.name, store.case_path(suite, decoded.name))
            elif isinstance(decoded, SuiteStarted):
                report.test_count = decoded.test_count
            elif isinstance(decoded, (SuiteOk, SuiteFailed)):
                report.result = decoded
                report.elapsed = time.monotonic() - t0

            if on_event is not None:
                on_event(decoded, time.monotonic() - t0)
    finally:
        proc.stdout.close()
        report.returncode = proc.wait()

    if report.result is None:
        report.elapsed = time.monotonic() - t0
    if report.crashed:
        logger.warning(
            "test suite %s exited with status %s before reporting a result",
            suite.key, report.returncode,
        )

    logger.debug("%s: %d failing tests", suite.key, len(report.failed_tests))

    return report
