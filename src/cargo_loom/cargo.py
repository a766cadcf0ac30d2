"""Cargo integration: workspace metadata and building loom test binaries."""

import json
import logging
import os
import subprocess
from pathlib import Path
from typing import Any, Dict, Iterable, List

from cargo_loom.config import CargoOptions, ConfigError
from cargo_loom.constants import LOOM_RUSTFLAGS
from cargo_loom.errors import BuildError
from cargo_loom.ledger import TestSuite, label_suites

logger = logging.getLogger(__name__)


def _feature_args(options: CargoOptions) -> List[str]:
    args = []
    if options.all_features:
        args.append("--all-features")
    if options.no_default_features:
        args.append("--no-default-features")
    if options.features:
        args.extend(["--features", " ".join(options.features)])
    return args


def load_metadata(options: CargoOptions) -> Dict[str, Any]:
    """
    Run `cargo metadata` for the workspace.

    Raises:
        ConfigError: If cargo is missing, fails, or prints invalid JSON.
    """
    cmd = ["cargo", "metadata", "--format-version", "1", "--no-deps"]
    if options.manifest_path is not None:
        cmd.extend(["--manifest-path", str(options.manifest_path)])
    cmd.extend(_feature_args(options))

    try:
        result = subprocess.run(cmd, capture_output=True, text=True)
    except OSError as e:
        raise ConfigError(f"getting cargo metadata: could not run cargo: {e}") from e

    if result.returncode != 0:
        raise ConfigError(f"getting cargo metadata: {result.stderr.strip()}")

    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise ConfigError(f"getting cargo metadata: invalid JSON: {e}") from e


def loom_target_dir(metadata: Dict[str, Any]) -> Path:
    """`<workspace>/target/loom`: kept apart so loom builds don't thrash the normal target dir."""
    return Path(metadata["workspace_root"]) / "target" / "loom"


def select_packages(metadata: Dict[str, Any], options: CargoOptions) -> List[str]:
    """
    Names of the packages to test, following cargo's package selection.

    Raises:
        ConfigError: If a requested package is not in the workspace.
    """
    members = set(metadata.get("workspace_members", []))
    packages = [p for p in metadata.get("packages", []) if p["id"] in members]
    names = [p["name"] for p in packages]

    if options.packages:
        unknown = [name for name in options.packages if name not in names]
        if unknown:
            raise ConfigError(f"package(s) not found in workspace: {', '.join(unknown)}")
        return list(options.packages)

    if options.workspace:
        return [name for name in names if name not in options.exclude]

    root_manifest = Path(metadata["workspace_root"]) / "Cargo.toml"
    for package in packages:
        if Path(package["manifest_path"]) == root_manifest:
            return [package["name"]]

    # virtual workspace: every member
    return [name for name in names if name not in options.exclude]


def build_command(package: str, options: CargoOptions, target_dir: Path) -> List[str]:
    cmd = [
        "cargo", "test", "--no-run",
        "--message-format=json-render-diagnostics",
        "--package", package,
        "--target-dir", str(target_dir),
    ]
    if options.release:
        cmd.append("--release")
    if options.lib:
        cmd.append("--lib")
    if options.tests or not options.lib:
        cmd.append("--tests")
    cmd.extend(_feature_args(options))
    if options.manifest_path is not None:
        cmd.extend(["--manifest-path", str(options.manifest_path)])
    return cmd


def build_env(options: CargoOptions) -> Dict[str, str]:
    env = dict(os.environ)
    rustflags = options.extra_rustflags.strip()
    env["RUSTFLAGS"] = f"{rustflags} {LOOM_RUSTFLAGS}" if rustflags else LOOM_RUSTFLAGS
    return env


def parse_build_messages(lines: Iterable[str]) -> List[TestSuite]:
    """Extract test executables from cargo's JSON build messages, one key per suite."""
    suites = []
    for line in lines:
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            message = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("skipping non-JSON cargo output: %r", line)
            continue
        if message.get("reason") != "compiler-artifact":
            continue
        if not message.get("profile", {}).get("test") or not message.get("executable"):
            continue
        target = message.get("target", {})
        kinds = target.get("kind") or ["test"]
        suites.append(TestSuite(path=Path(message["executable"]), name=target["name"], kind=kinds[0]))
    return label_suites(suites)


def build_tests(package: str, options: CargoOptions, target_dir: Path) -> List[TestSuite]:
    """
    Compile the loom test binaries of `package`.

    Compiler diagnostics go straight to stderr.

    Raises:
        BuildError: If cargo cannot be started or the build fails.
    """
    cmd = build_command(package, options, target_dir)
    logger.info("Compiling %s", package)
    logger.debug("build command: %s", cmd)

    try:
        result = subprocess.run(cmd, stdout=subprocess.PIPE, text=True, env=build_env(options))
    except OSError as e:
        raise BuildError(package, f"could not run cargo: {e}") from e

    if result.returncode != 0:
        raise BuildError(package, f"cargo exited with status {result.returncode}")

    return parse_build_messages(result.stdout.splitlines())
