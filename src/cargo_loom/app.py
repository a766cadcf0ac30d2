"""Top-level orchestration: build, discover, checkpoint, re-run.

For each selected package the tests are compiled, every suite is run once
to find failing tests, and the failing tests are then re-run concurrently
from their checkpoints with loom's diagnostics enabled.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from cargo_loom.cargo import build_tests, load_metadata, loom_target_dir, select_packages
from cargo_loom.checkpoint import CheckpointStore, ensure_dir, run_root
from cargo_loom.config import CargoOptions, LoomOptions
from cargo_loom.constants import LAYOUT_BINARY
from cargo_loom.discovery import SuiteReport, discover_failures
from cargo_loom.errors import BuildError, SpawnError
from cargo_loom.ledger import FailureLedger, TestSuite
from cargo_loom.process import ProcessFactory
from cargo_loom.render import Renderer, RenderSettings
from cargo_loom.scheduler import RerunResult, run_failed

logger = logging.getLogger(__name__)


@dataclass
class PackageReport:
    """Everything that happened while testing one package."""
    package: str
    suites: List[SuiteReport] = field(default_factory=list)
    ledger: FailureLedger = field(default_factory=FailureLedger)
    results: List[RerunResult] = field(default_factory=list)
    suite_errors: List[SpawnError] = field(default_factory=list)

    @property
    def failed(self) -> Dict[str, List[str]]:
        return {suite: [case.name for case in cases] for suite, cases in self.ledger.failed.items()}

    @property
    def errors(self) -> List[Exception]:
        return list(self.suite_errors) + [r.error for r in self.results if r.error is not None]


class App:
    """
    A configured cargo-loom run.

    `run_all()` calls `setup()` when needed; `run_package()` needs it to
    have run. `run_suites()` and `rerun()` only need a CheckpointStore.
    """

    def __init__(
        self,
        cargo_options: Optional[CargoOptions] = None,
        loom_options: Optional[LoomOptions] = None,
        render_settings: Optional[RenderSettings] = None,
        name_filter: Optional[str] = None,
        run_id: Optional[str] = None,
        layout: str = LAYOUT_BINARY,
        factory: Optional[ProcessFactory] = None,
        store: Optional[CheckpointStore] = None,
        renderer: Optional[Renderer] = None,
    ):
        self.cargo_options = cargo_options or CargoOptions()
        self.loom_options = (loom_options or LoomOptions()).validate()
        self.render_settings = render_settings or RenderSettings()
        self.name_filter = name_filter
        self.run_id = run_id
        self.layout = layout
        self.factory = factory or ProcessFactory()
        self.store = store
        self.renderer = renderer or Renderer(self.render_settings)
        self.metadata: Optional[Dict[str, Any]] = None
        self.target_dir: Optional[Path] = None

    def setup(self) -> "App":
        """
        Load workspace metadata and create the checkpoint root.

        Raises:
            ConfigError: If cargo metadata cannot be read.
            SetupError: If the checkpoint directory cannot be created.
        """
        self.metadata = load_metadata(self.cargo_options)
        self.target_dir = loom_target_dir(self.metadata)
        if self.store is None:
            root = ensure_dir(run_root(self.target_dir / "checkpoint", self.run_id))
            self.store = CheckpointStore(root, self.layout)
        logger.debug("checkpoint store: %r", self.store)
        return self

    def wanted_packages(self) -> List[str]:
        return select_packages(self.metadata, self.cargo_options)

    def run_suites(self, suites: Iterable[TestSuite]) -> Tuple[List[SuiteReport], FailureLedger, List[SpawnError]]:
        """Discovery pass over `suites`, one at a time."""
        ledger = FailureLedger()
        reports = []
        errors = []
        for suite in suites:
            try:
                report = discover_failures(
                    suite,
                    self.loom_options,
                    self.store,
                    ledger,
                    factory=self.factory,
                    name_filter=self.name_filter,
                    on_event=self.renderer.event,
                    on_checkpointed=self.renderer.previously_checkpointed,
                )
            except SpawnError as e:
                logger.error("%s", e)
                errors.append(e)
                continue
            reports.append(report)
        return reports, ledger, errors

    def rerun(self, ledger: FailureLedger) -> List[RerunResult]:
        """Re-run every failing test and render results as they complete."""
        results = []
        with run_failed(ledger, self.loom_options, self.factory) as batch:
            for result in batch.results():
                result = result.checked()
                if result.error is not None:
                    logger.error("%s", result.error)
                self.renderer.rerun(result)
                results.append(result)
        return results

    def run_package(self, package: str) -> PackageReport:
        """
        Build, discover and re-run the tests of one package.

        Raises:
            BuildError: If the package's tests do not compile.
        """
        suites = build_tests(package, self.cargo_options, self.target_dir)
        reports, ledger, errors = self.run_suites(suites)
        report = PackageReport(package=package, suites=reports, ledger=ledger, suite_errors=errors)

        self.renderer.package_summary(package, report.failed)
        report.results = self.rerun(ledger)

        for checkpoint_dir in sorted(ledger.checkpoint_dirs):
            logger.info("Completed loom run (checkpoint dir: %s)", checkpoint_dir)

        return report

    def run_all(self) -> int:
        """
        Run every selected package.

        A package whose tests fail to build is reported and skipped; the
        remaining packages still run.

        Returns:
            Process exit code: 0 if every package built and every child
            process could be started, 1 otherwise.
        """
        if self.metadata is None:
            self.setup()

        exit_code = 0
        for package in self.wanted_packages():
            try:
                report = self.run_package(package)
            except BuildError as e:
                logger.error("%s", e)
                exit_code = 1
                continue
            if report.errors:
                exit_code = 1
        return exit_code
