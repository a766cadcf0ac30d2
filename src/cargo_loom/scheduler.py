"""Concurrent diagnostic re-runs of failing tests.

Every failing test is re-run as an independent task:

1. If its checkpoint file is missing (or malformed), run the test alone with
   checkpointing enabled to generate it. The test is known to fail, so a
   non-zero exit is expected.
2. Run it again from the checkpoint with loom logging and location capture
   enabled, capturing stdout and stderr.

Tasks share nothing but the read-only ledger, so they run in parallel and
their results are handed back in completion order.
"""

import logging
import subprocess
import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional

from cargo_loom.checkpoint import is_checkpointed
from cargo_loom.config import LoomOptions
from cargo_loom.errors import LoomError, OutputDecodeError, SpawnError
from cargo_loom.ledger import FailingCase, FailureLedger, TestSuite
from cargo_loom.process import ProcessFactory, spawn_checked

logger = logging.getLogger(__name__)


@dataclass
class TestOutput:
    """Captured output of one diagnostic re-run."""
    name: str
    returncode: int
    stdout: bytes
    stderr: bytes

    def stdout_text(self) -> str:
        return self._decode(self.stdout, "stdout")

    def stderr_text(self) -> str:
        return self._decode(self.stderr, "stderr")

    def _decode(self, data: bytes, stream: str) -> str:
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise OutputDecodeError(self.name, stream, e) from e


@dataclass
class RerunResult:
    """Outcome of one re-run task: either an output or an error."""
    name: str
    output: Optional[TestOutput] = None
    error: Optional[LoomError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def checked(self) -> "RerunResult":
        """This result, or an error result if the output is not valid UTF-8."""
        if self.output is None:
            return self
        try:
            self.output.stdout_text()
            self.output.stderr_text()
        except OutputDecodeError as e:
            return RerunResult(name=self.name, error=e)
        return self


def rerun_command(suite: TestSuite, case: FailingCase, options: LoomOptions) -> List[str]:
    """Argument vector that runs exactly one test of `suite`."""
    return [str(suite.path)] + list(options.test_args) + [case.name, "--exact"]


def rerun_case(
    suite: TestSuite,
    case: FailingCase,
    options: LoomOptions,
    factory: ProcessFactory,
) -> TestOutput:
    """
    Generate (if needed) the checkpoint for `case`, then re-run it with
    diagnostics enabled.

    Raises:
        SpawnError: If either child process could not be started.
    """
    pretty_name = case.pretty_name
    argv = rerun_command(suite, case, options)
    t0 = time.monotonic()

    if is_checkpointed(case.checkpoint):
        logger.debug("Already checkpointed %s", pretty_name)
    else:
        logger.info("Generating checkpoint for %s", pretty_name)
        proc = spawn_checked(
            factory,
            "checkpoint",
            pretty_name,
            argv,
            options.checkpoint_env(case.checkpoint),
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
        proc.wait()
        logger.debug(
            "checkpointed %s in %.2fs (file: %s)",
            pretty_name, time.monotonic() - t0, case.checkpoint,
        )

    # now, run it again with logging
    proc = spawn_checked(
        factory,
        "rerun",
        pretty_name,
        argv,
        options.diagnostic_env(case.checkpoint),
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
    )
    stdout, stderr = proc.communicate()
    return TestOutput(
        name=pretty_name,
        returncode=proc.returncode,
        stdout=stdout or b"",
        stderr=stderr or b"",
    )


class RerunBatch:
    """Submitted re-run tasks, drained in completion order."""

    def __init__(self, executor: Optional[ThreadPoolExecutor], futures: Dict[Future, str]):
        self._executor = executor
        self._futures = futures

    def __len__(self) -> int:
        return len(self._futures)

    def __enter__(self) -> "RerunBatch":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def results(self) -> Iterator[RerunResult]:
        """
        Yield one RerunResult per task as each task finishes.

        An exception in one task becomes that task's error result.
        """
        for future in as_completed(self._futures):
            name = self._futures[future]
            try:
                output = future.result()
            except LoomError as e:
                logger.debug("rerun of %s failed: %s", name, e)
                yield RerunResult(name=name, error=e)
            except Exception as e:
                # e.g. ValueError from Popen, or a custom factory's own error
                logger.debug("rerun of %s raised", name, exc_info=True)
                yield RerunResult(name=name, error=SpawnError("rerun", name, e))
            else:
                yield RerunResult(name=name, output=output)

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None


def run_failed(
    ledger: FailureLedger,
    options: LoomOptions,
    factory: Optional[ProcessFactory] = None,
) -> RerunBatch:
    """
    Start a re-run task for every failing test in `ledger`.

    Returns as soon as every task is submitted. The ledger is only read.
    """
    factory = factory or ProcessFactory()
    cases = list(ledger.items())
    if not cases:
        return RerunBatch(None, {})

    # One worker per case; the number of tests is only bounded by the OS.
    executor = ThreadPoolExecutor(max_workers=len(cases), thread_name_prefix="loom-rerun")
    futures = {
        executor.submit(rerun_case, suite, case, options, factory): case.pretty_name
        for suite, case in cases
    }
    return RerunBatch(executor, futures)
