"""CLI entrypoint for cargo-loom."""

import sys
from pathlib import Path
from typing import List, Optional

import click
from dotenv import load_dotenv

from cargo_loom.app import App
from cargo_loom.config import CargoOptions, ConfigError, LoomOptions, load_settings
from cargo_loom.constants import (
    CHECKPOINT_LAYOUTS,
    DEFAULT_CHECKPOINT_INTERVAL,
    DEFAULT_LOOM_LOG,
    DEFAULT_MAX_BRANCHES,
    DEFAULT_MAX_THREADS,
    ENV_CHECKPOINT_INTERVAL,
    ENV_LOOM_LOG,
    ENV_MANIFEST_PATH,
    ENV_MAX_BRANCHES,
    ENV_MAX_DURATION,
    ENV_MAX_PERMUTATIONS,
    ENV_MAX_THREADS,
    ENV_RUNNER_LOG,
    ENV_TERM_COLOR,
    LAYOUT_BINARY,
)
from cargo_loom.errors import SetupError
from cargo_loom.logging_utils import configure_logging, parse_level
from cargo_loom.render import COLOR_MODES, MESSAGE_FORMATS, RenderSettings

# Load .env file on CLI startup
load_dotenv()


def _apply_settings_file(ctx: click.Context, param: click.Parameter, value: Optional[str]):
    """Use the settings file (if any) as the defaults for every other option."""
    try:
        settings = load_settings(Path(value) if value else None)
    except ConfigError as e:
        raise click.BadParameter(str(e), ctx=ctx, param=param)
    if settings:
        ctx.default_map = {**(ctx.default_map or {}), **settings}
    return value


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(package_name="cargo-loom")
@click.option(
    "--config", "config_file",
    type=click.Path(dir_okay=False),
    is_eager=True,
    expose_value=False,
    callback=_apply_settings_file,
    help="YAML settings file with option defaults (default: ./cargo-loom.yaml if present).",
)
# loom options
@click.option(
    "--max-branches",
    type=int,
    default=DEFAULT_MAX_BRANCHES,
    show_default=True,
    envvar=ENV_MAX_BRANCHES,
    help="Maximum number of thread switches per permutation.",
)
@click.option(
    "--max-permutations",
    type=int,
    default=None,
    envvar=ENV_MAX_PERMUTATIONS,
    help="Maximum number of permutations to explore (unbounded if unset).",
)
@click.option(
    "--max-threads",
    type=int,
    default=DEFAULT_MAX_THREADS,
    show_default=True,
    envvar=ENV_MAX_THREADS,
    help="Max number of threads to check as part of the execution (at most 4).",
)
@click.option(
    "--checkpoint-interval",
    type=int,
    default=DEFAULT_CHECKPOINT_INTERVAL,
    show_default=True,
    envvar=ENV_CHECKPOINT_INTERVAL,
    help="How often loom writes the checkpoint file.",
)
@click.option(
    "--max-duration-secs",
    type=int,
    default=None,
    envvar=ENV_MAX_DURATION,
    help="Maximum duration to run each loom model for during discovery, in seconds.",
)
@click.option(
    "--loom-log",
    default=DEFAULT_LOOM_LOG,
    show_default=True,
    envvar=ENV_LOOM_LOG,
    help="Log level filter for loom when re-running failed tests.",
)
# cargo options
@click.option(
    "--manifest-path",
    type=click.Path(dir_okay=False),
    default=None,
    envvar=ENV_MANIFEST_PATH,
    help="Path to Cargo.toml.",
)
@click.option("-p", "--package", multiple=True, help="Package(s) to test.")
@click.option("--workspace", is_flag=True, help="Test all packages in the workspace.")
@click.option("--exclude", multiple=True, help="Exclude packages from the test (with --workspace).")
@click.option("--features", multiple=True, help="Space or comma separated list of features to activate.")
@click.option("--all-features", is_flag=True, help="Activate all available features.")
@click.option("--no-default-features", is_flag=True, help="Do not activate the `default` feature.")
@click.option("--lib", is_flag=True, help="Test only this package's library unit tests.")
@click.option("--tests", is_flag=True, help="Test all tests.")
# output options
@click.option(
    "--color",
    type=click.Choice(COLOR_MODES),
    default="auto",
    show_default=True,
    envvar=ENV_TERM_COLOR,
    help="Controls when colored output is used.",
)
@click.option(
    "--message-format",
    type=click.Choice(MESSAGE_FORMATS),
    default="human",
    show_default=True,
    help="The output format for test events and diagnostics.",
)
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"]),
    default="info",
    show_default=True,
    envvar=ENV_RUNNER_LOG,
    help="Verbosity of cargo-loom's own log messages.",
)
# checkpoint options
@click.option(
    "--run-id",
    default=None,
    help="Put checkpoints in a sub-directory for this run ('now' for a Unix timestamp).",
)
@click.option(
    "--checkpoint-layout",
    type=click.Choice(CHECKPOINT_LAYOUTS),
    default=LAYOUT_BINARY,
    show_default=True,
    help="One directory per test binary, or flat <suite>-<test>.json files.",
)
@click.argument("testname", required=False)
@click.argument("test_args", nargs=-1, type=click.UNPROCESSED)
def cli(
    max_branches: int,
    max_permutations: Optional[int],
    max_threads: int,
    checkpoint_interval: int,
    max_duration_secs: Optional[int],
    loom_log: str,
    manifest_path: Optional[str],
    package: tuple,
    workspace: bool,
    exclude: tuple,
    features: tuple,
    all_features: bool,
    no_default_features: bool,
    lib: bool,
    tests: bool,
    color: str,
    message_format: str,
    log_level: str,
    run_id: Optional[str],
    checkpoint_layout: str,
    testname: Optional[str],
    test_args: tuple,
):
    """Run loom tests, then re-run the failing ones with diagnostics.

    The tests are compiled and run once with loom's logging, location capture
    and checkpointing disabled, to quickly find the tests that fail. Each
    failing test then gets a checkpoint file and is re-run from it with
    logging and location capture enabled.

    TESTNAME only runs tests whose names contain it. Arguments after `--`
    are passed to the test binaries.
    """
    # `cargo-loom -- --nocapture` puts the first test arg in TESTNAME
    if testname is not None and testname.startswith("-"):
        test_args = (testname,) + tuple(test_args)
        testname = None

    render_settings = RenderSettings(color=color, message_format=message_format)
    configure_logging(
        parse_level(log_level),
        message_format=message_format,
        color=render_settings.should_color(),
    )

    loom_options = LoomOptions(
        max_branches=max_branches,
        max_permutations=max_permutations,
        max_threads=max_threads,
        checkpoint_interval=checkpoint_interval,
        max_duration_secs=max_duration_secs,
        loom_log=loom_log,
        test_args=tuple(test_args),
    )
    cargo_options = CargoOptions(
        manifest_path=Path(manifest_path) if manifest_path else None,
        packages=tuple(package),
        workspace=workspace,
        exclude=tuple(exclude),
        features=tuple(f for value in features for f in value.replace(",", " ").split()),
        all_features=all_features,
        no_default_features=no_default_features,
        lib=lib,
        tests=tests,
    )

    try:
        app = App(
            cargo_options=cargo_options,
            loom_options=loom_options,
            render_settings=render_settings,
            name_filter=testname,
            run_id=run_id,
            layout=checkpoint_layout,
        )
        exit_code = app.run_all()
    except (ConfigError, SetupError) as e:
        click.echo(f"error: {e}", err=True)
        raise SystemExit(1)

    raise SystemExit(exit_code)


def main(argv: Optional[List[str]] = None) -> None:
    """Console script entry point; also works as `cargo loom ...`."""
    args = list(sys.argv[1:] if argv is None else argv)
    # cargo runs subcommands as `cargo-loom loom <args>`
    if args and args[0] == "loom":
        args = args[1:]
    cli.main(args=args, prog_name="cargo-loom")


if __name__ == "__main__":
    main()
