"""Failure ledger: which tests failed in which suite."""

from collections import Counter
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Set, Tuple

from cargo_loom.constants import BARE_NAME_KINDS, LIB_KINDS


@dataclass(frozen=True)
class TestSuite:
    """A compiled test binary."""
    path: Path
    name: str
    kind: str = "lib"  # "lib" for unit tests, otherwise the cargo target kind
    label: Optional[str] = None

    @property
    def binary_name(self) -> str:
        """File name of the binary; cargo suffixes it with a content hash."""
        return Path(self.path).name

    @property
    def is_lib(self) -> bool:
        return self.kind in LIB_KINDS

    @property
    def key(self) -> str:
        """
        Identity of the suite within one package.

        Library and integration test suites use their target name; other
        kinds (e.g. the unit tests of a binary named like the library) are
        qualified as `<name>.<kind>`. Cargo target names never contain a `.`.
        """
        if self.label is not None:
            return self.label
        if self.kind in BARE_NAME_KINDS:
            return self.name
        return f"{self.name}.{self.kind}"


def label_suites(suites: List[TestSuite]) -> List[TestSuite]:
    """
    Give every suite of one package a distinct key.

    A library and an integration test may share a target name; the library
    keeps the bare name and the test becomes `<name>.test`.
    """
    counts = Counter(suite.key for suite in suites)
    labelled = []
    for suite in suites:
        if counts[suite.key] > 1 and not suite.is_lib:
            suite = replace(suite, label=f"{suite.name}.{suite.kind}")
        labelled.append(suite)
    return labelled


@dataclass(frozen=True)
class FailingCase:
    suite: str
    name: str
    checkpoint: Path

    @property
    def pretty_name(self) -> str:
        return f"{self.suite}::{self.name}"


@dataclass
class FailureLedger:
    """
    Failing tests for one package, grouped by suite key.

    A suite is retained (so it can be invoked again) as soon as its first
    failing test is recorded, so every key of `failed` is always also a key
    of `suites`.
    """
    failed: Dict[str, List[FailingCase]] = field(default_factory=dict)
    suites: Dict[str, TestSuite] = field(default_factory=dict)
    checkpoint_dirs: Set[Path] = field(default_factory=set)

    def fail_test(self, suite: TestSuite, test_name: str, checkpoint: Path) -> FailingCase:
        """
        Record a failing test.

        Args:
            suite: The suite the test belongs to.
            test_name: Full test name as reported by the binary.
            checkpoint: Where this test's checkpoint lives.

        Returns:
            The recorded FailingCase (the existing one if already recorded).

        Raises:
            ValueError: If a different binary was already recorded under
                        the same suite key.
        """
        retained = self.suites.get(suite.key)
        if retained is not None and retained.path != suite.path:
            raise ValueError(
                f"suite key `{suite.key}` is used by both {retained.path} and {suite.path}"
            )

        for case in self.failed.get(suite.key, []):
            if case.name == test_name:
                return case

        case = FailingCase(suite=suite.key, name=test_name, checkpoint=Path(checkpoint))
        self.suites.setdefault(suite.key, suite)
        self.failed.setdefault(suite.key, []).append(case)
        self.checkpoint_dirs.add(case.checkpoint.parent)
        return case

    def contains(self, suite: TestSuite, test_name: str) -> bool:
        return any(case.name == test_name for case in self.failed.get(suite.key, []))

    def cases(self, suite_key: str) -> List[FailingCase]:
        return list(self.failed.get(suite_key, []))

    def suite(self, suite_key: str) -> Optional[TestSuite]:
        return self.suites.get(suite_key)

    def items(self) -> Iterator[Tuple[TestSuite, FailingCase]]:
        """Every (suite, case) pair, suites in discovery order."""
        for suite_key, cases in self.failed.items():
            suite = self.suites[suite_key]
            for case in cases:
                yield suite, case

    def __len__(self) -> int:
        return sum(len(cases) for cases in self.failed.values())

    def is_empty(self) -> bool:
        return not self.failed
