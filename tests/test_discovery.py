"""Tests for the discovery pass."""

import logging
import subprocess
from pathlib import Path

import pytest

from cargo_loom import events, ledger
from cargo_loom.checkpoint import CheckpointStore
from cargo_loom.config import LoomOptions
from cargo_loom.constants import (
    ENV_CHECKPOINT_FILE,
    ENV_LOOM_LOCATION,
    ENV_LOOM_LOG,
    ENV_MAX_BRANCHES,
    ENV_MAX_DURATION,
    LAYOUT_SUITE,
)
from cargo_loom.discovery import discover_failures, discovery_command
from cargo_loom.errors import SpawnError
from cargo_loom.ledger import FailureLedger

from fake_process import FakeFactory, FakeProcess, libtest_lines


# =============================================================================
# FIXTURES
# =============================================================================

MYSUITE = ledger.TestSuite(path=Path("/t/deps/mysuite-0123abcd"), name="mysuite", kind="test")

STARTED = {"type": "suite", "event": "started", "test_count": 3}
COUNTS_FAILED = {"passed": 1, "failed": 2, "ignored": 0, "measured": 0, "filtered_out": 0}
COUNTS_OK = {"passed": 3, "failed": 0, "ignored": 0, "measured": 0, "filtered_out": 0}

TWO_FAILURES = libtest_lines(
    STARTED,
    {"type": "test", "event": "started", "name": "a::b"},
    {"type": "test", "event": "failed", "name": "a::b"},
    {"type": "test", "event": "ok", "name": "a::c"},
    {"type": "test", "event": "failed", "name": "a::d"},
    dict(type="suite", event="failed", **COUNTS_FAILED),
)

ALL_PASS = libtest_lines(
    STARTED,
    {"type": "test", "event": "ok", "name": "a::b"},
    {"type": "test", "event": "ok", "name": "a::c"},
    {"type": "test", "event": "ok", "name": "a::d"},
    dict(type="suite", event="ok", **COUNTS_OK),
)


def factory_printing(output: bytes, returncode: int = 0) -> FakeFactory:
    return FakeFactory(lambda call: FakeProcess(stdout=output, returncode=returncode))


class TestDiscoveryScenarios:
    """Failing tests end up in the ledger, passing suites leave no trace."""

    def test_two_failures_recorded(self, tmp_path):
        failures = FailureLedger()
        factory = factory_printing(TWO_FAILURES, returncode=101)

        report = discover_failures(MYSUITE, LoomOptions(), CheckpointStore(tmp_path), failures, factory)

        assert [c.name for c in failures.cases("mysuite")] == ["a::b", "a::d"]
        assert failures.suite("mysuite") is MYSUITE
        assert report.newly_failed == ["a::b", "a::d"]
        assert report.test_count == 3
        assert report.result == events.SuiteFailed(**COUNTS_FAILED)
        assert report.returncode == 101
        assert not report.crashed

    def test_checkpoint_paths_under_binary_dir(self, tmp_path):
        failures = FailureLedger()
        discover_failures(MYSUITE, LoomOptions(), CheckpointStore(tmp_path), failures, factory_printing(TWO_FAILURES))

        case = failures.cases("mysuite")[0]
        assert case.checkpoint == tmp_path / "mysuite-0123abcd" / "a::b.json"
        assert (tmp_path / "mysuite-0123abcd").is_dir()
        assert failures.checkpoint_dirs == {tmp_path / "mysuite-0123abcd"}

    def test_passing_suite_not_retained(self, tmp_path):
        failures = FailureLedger()
        report = discover_failures(MYSUITE, LoomOptions(), CheckpointStore(tmp_path), failures, factory_printing(ALL_PASS))

        assert failures.is_empty()
        assert failures.suite("mysuite") is None
        assert report.failed_tests == []
        assert isinstance(report.result, events.SuiteOk)

    def test_exactly_one_process_per_suite(self, tmp_path):
        factory = factory_printing(TWO_FAILURES)
        discover_failures(MYSUITE, LoomOptions(), CheckpointStore(tmp_path), FailureLedger(), factory)
        assert len(factory.calls) == 1
        assert factory.calls[0].stdout == subprocess.PIPE


class TestPreviouslyCheckpointed:
    """Checkpoints from an earlier run count as failures without re-running."""

    def test_flat_root_checkpoint_is_reused(self, tmp_path):
        run1 = tmp_path / "run1"
        run1.mkdir()
        (run1 / "mysuite-a::b.json").write_text("{}")
        failures = FailureLedger()
        factory = factory_printing(libtest_lines(dict(type="suite", event="ok", **COUNTS_OK)))
        seen = []

        report = discover_failures(
            MYSUITE, LoomOptions(), CheckpointStore(run1, LAYOUT_SUITE), failures, factory,
            on_checkpointed=seen.append,
        )

        assert [c.name for c in failures.cases("mysuite")] == ["a::b"]
        assert failures.cases("mysuite")[0].checkpoint == run1 / "mysuite-a::b.json"
        assert report.previously_checkpointed == ["a::b"]
        assert seen == [["a::b"]]
        # one discovery run, told to skip the known failure
        assert len(factory.calls) == 1
        argv = factory.calls[0].argv
        assert argv[argv.index("--skip") + 1] == "a::b"

    def test_binary_dir_checkpoints_are_reused(self, tmp_path):
        store = CheckpointStore(tmp_path)
        store.suite_dir(MYSUITE).mkdir()
        store.case_path(MYSUITE, "a::b").write_text("{}")
        failures = FailureLedger()
        factory = factory_printing(TWO_FAILURES)

        report = discover_failures(MYSUITE, LoomOptions(), store, failures, factory)

        # a::b is known from the checkpoint; the fake binary still reports it
        assert [c.name for c in failures.cases("mysuite")] == ["a::b", "a::d"]
        assert report.previously_checkpointed == ["a::b"]
        assert report.newly_failed == ["a::d"]
        assert report.failed_tests == ["a::b", "a::d"]

    def test_repeated_failure_counted_once(self, tmp_path):
        output = libtest_lines(
            STARTED,
            {"type": "test", "event": "failed", "name": "a::b"},
            {"type": "test", "event": "failed", "name": "a::b"},
            dict(type="suite", event="failed", **COUNTS_FAILED),
        )
        failures = FailureLedger()

        report = discover_failures(MYSUITE, LoomOptions(), CheckpointStore(tmp_path), failures, factory_printing(output))

        assert report.failed_tests == ["a::b"]
        assert len(failures) == 1

    def test_name_filter_applies_to_checkpoints(self, tmp_path):
        store = CheckpointStore(tmp_path)
        store.suite_dir(MYSUITE).mkdir()
        store.case_path(MYSUITE, "a::b").write_text("{}")
        store.case_path(MYSUITE, "other::x").write_text("{}")
        failures = FailureLedger()
        factory = factory_printing(libtest_lines(dict(type="suite", event="ok", **COUNTS_OK)))

        discover_failures(MYSUITE, LoomOptions(), store, failures, factory, name_filter="other")

        assert [c.name for c in failures.cases("mysuite")] == ["other::x"]
        argv = factory.calls[0].argv
        assert "other" in argv
        assert "a::b" not in argv


class TestDiscoveryCommand:
    """The discovery run has diagnostics disabled."""

    def test_argv_order(self):
        options = LoomOptions(test_args=("--test-threads", "1"))
        argv = discovery_command(MYSUITE, options, "a::", ["a::b"])
        assert argv == [
            "/t/deps/mysuite-0123abcd",
            "-Z", "unstable-options", "--format", "json",
            "--test-threads", "1",
            "a::",
            "--skip", "a::b",
        ]

    def test_environment(self, tmp_path):
        factory = factory_printing(ALL_PASS)
        options = LoomOptions(max_branches=500, max_duration_secs=30)
        discover_failures(MYSUITE, options, CheckpointStore(tmp_path), FailureLedger(), factory)

        env = factory.calls[0].env
        assert env[ENV_LOOM_LOG] == "off"
        assert env[ENV_MAX_BRANCHES] == "500"
        assert env[ENV_MAX_DURATION] == "30"
        assert ENV_CHECKPOINT_FILE not in env
        assert ENV_LOOM_LOCATION not in env


class TestDiscoveryErrors:
    """Bad output and crashes are reported without losing progress."""

    def test_malformed_line_is_skipped(self, tmp_path, caplog):
        output = (
            libtest_lines(STARTED)
            + b"thread 'main' panicked at 'oops'\n"
            + libtest_lines(
                {"type": "test", "event": "failed", "name": "a::d"},
                dict(type="suite", event="failed", **COUNTS_FAILED),
            )
        )
        failures = FailureLedger()
        with caplog.at_level(logging.WARNING, logger="cargo_loom"):
            report = discover_failures(MYSUITE, LoomOptions(), CheckpointStore(tmp_path), failures, factory_printing(output))

        assert report.decode_errors == 1
        assert [c.name for c in failures.cases("mysuite")] == ["a::d"]
        assert any("mysuite" in r.getMessage() for r in caplog.records if r.levelno == logging.WARNING)

    def test_crash_keeps_partial_events(self, tmp_path):
        """A binary killed mid-run still contributes the failures it reported."""
        output = libtest_lines(STARTED, {"type": "test", "event": "failed", "name": "a::b"})
        failures = FailureLedger()
        report = discover_failures(
            MYSUITE, LoomOptions(), CheckpointStore(tmp_path), failures, factory_printing(output, returncode=-9)
        )

        assert report.crashed
        assert report.returncode == -9
        assert [c.name for c in failures.cases("mysuite")] == ["a::b"]

    def test_spawn_failure(self, tmp_path):
        def missing_binary(call):
            raise FileNotFoundError(2, "No such file or directory", call.argv[0])

        with pytest.raises(SpawnError) as exc_info:
            discover_failures(MYSUITE, LoomOptions(), CheckpointStore(tmp_path), FailureLedger(), FakeFactory(missing_binary))
        assert "mysuite" in str(exc_info.value)

    def test_events_are_forwarded(self, tmp_path):
        seen = []
        discover_failures(
            MYSUITE, LoomOptions(), CheckpointStore(tmp_path), FailureLedger(), factory_printing(TWO_FAILURES),
            on_event=lambda decoded, elapsed: seen.append(decoded),
        )
        assert len(seen) == 6
        assert isinstance(seen[1], events.OtherEvent)
        assert seen[-1] == events.SuiteFailed(**COUNTS_FAILED)
