"""Tests for the cargo-loom command line."""

import logging

import pytest
from click.testing import CliRunner

from cargo_loom import cli as cli_module
from cargo_loom.cli import cli, main
from cargo_loom.config import ConfigError
from cargo_loom.logging_utils import LOGGER_NAME


@pytest.fixture(autouse=True)
def restore_logger():
    """The CLI reconfigures the package logger; put it back afterwards."""
    logger = logging.getLogger(LOGGER_NAME)
    saved = (list(logger.handlers), logger.level, logger.propagate)
    yield
    logger.handlers[:] = saved[0]
    logger.setLevel(saved[1])
    logger.propagate = saved[2]


@pytest.fixture
def recorded_app(monkeypatch):
    """Replace App with a recorder so no cargo process is started."""
    calls = []

    class RecordingApp:
        exit_code = 0

        def __init__(self, **kwargs):
            kwargs["loom_options"].validate()
            calls.append(kwargs)

        def run_all(self):
            return RecordingApp.exit_code

    monkeypatch.setattr(cli_module, "App", RecordingApp)
    return calls


class TestCliHelp:
    def test_help(self):
        result = CliRunner().invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "--max-branches" in result.output
        assert "--checkpoint-interval" in result.output
        assert "TESTNAME" in result.output

    def test_cargo_subcommand_form(self):
        """`cargo loom --help` runs `cargo-loom loom --help`."""
        with pytest.raises(SystemExit) as exc_info:
            main(["loom", "--help"])
        assert exc_info.value.code == 0


class TestCliOptions:
    """Flags, environment variables and settings files become options."""

    def test_defaults(self, recorded_app):
        result = CliRunner().invoke(cli, [])
        assert result.exit_code == 0, result.output
        kwargs = recorded_app[0]
        loom = kwargs["loom_options"]
        assert loom.max_branches == 1000
        assert loom.max_threads == 4
        assert loom.loom_log == "trace"
        assert loom.max_duration_secs is None
        assert kwargs["name_filter"] is None
        assert kwargs["layout"] == "binary"
        assert kwargs["cargo_options"].release

    def test_testname_and_test_args(self, recorded_app):
        result = CliRunner().invoke(cli, ["a::", "--", "--test-threads", "1"])
        assert result.exit_code == 0, result.output
        assert recorded_app[0]["name_filter"] == "a::"
        assert recorded_app[0]["loom_options"].test_args == ("--test-threads", "1")

    def test_test_args_without_testname(self, recorded_app):
        result = CliRunner().invoke(cli, ["--", "--nocapture"])
        assert result.exit_code == 0, result.output
        assert recorded_app[0]["name_filter"] is None
        assert recorded_app[0]["loom_options"].test_args == ("--nocapture",)

    def test_environment_variables(self, recorded_app):
        env = {"LOOM_MAX_BRANCHES": "77", "LOOM_MAX_DURATION": "30"}
        result = CliRunner().invoke(cli, [], env=env)
        assert result.exit_code == 0, result.output
        assert recorded_app[0]["loom_options"].max_branches == 77
        assert recorded_app[0]["loom_options"].max_duration_secs == 30

    def test_features_split(self, recorded_app):
        result = CliRunner().invoke(cli, ["--features", "a,b c", "-p", "sync"])
        assert result.exit_code == 0, result.output
        cargo = recorded_app[0]["cargo_options"]
        assert cargo.features == ("a", "b", "c")
        assert cargo.packages == ("sync",)

    def test_settings_file_supplies_defaults(self, recorded_app, tmp_path):
        settings = tmp_path / "loom.yaml"
        settings.write_text("max_branches: 5000\nmax_threads: 2\n")
        result = CliRunner().invoke(cli, ["--config", str(settings), "--max-threads", "3"])
        assert result.exit_code == 0, result.output
        loom = recorded_app[0]["loom_options"]
        assert loom.max_branches == 5000
        assert loom.max_threads == 3


class TestCliErrors:
    """Configuration errors stop the run before anything is built."""

    def test_max_threads_out_of_range(self):
        result = CliRunner().invoke(cli, ["--max-threads", "9"])
        assert result.exit_code == 1
        assert "max_threads" in result.output

    def test_bad_settings_file(self, tmp_path):
        settings = tmp_path / "loom.yaml"
        settings.write_text("max_branchez: 1\n")
        result = CliRunner().invoke(cli, ["--config", str(settings)])
        assert result.exit_code == 2
        assert "max_branchez" in result.output

    def test_missing_settings_file(self, tmp_path):
        result = CliRunner().invoke(cli, ["--config", str(tmp_path / "nope.yaml")])
        assert result.exit_code == 2

    def test_run_failure_exit_code(self, recorded_app, monkeypatch):
        monkeypatch.setattr(cli_module.App, "exit_code", 1)
        result = CliRunner().invoke(cli, [])
        assert result.exit_code == 1

    def test_metadata_error(self, monkeypatch):
        def fail(options):
            raise ConfigError("getting cargo metadata: could not find `Cargo.toml`")

        monkeypatch.setattr("cargo_loom.app.load_metadata", fail)
        result = CliRunner().invoke(cli, [])
        assert result.exit_code == 1
        assert "error: getting cargo metadata" in result.output
