"""Human and JSON rendering of test progress and re-run output."""

import json
import sys
from dataclasses import dataclass
from typing import IO, Dict, List, Optional

import click

from cargo_loom import events
from cargo_loom.events import Decoded, DecodeError, event_to_wire
from cargo_loom.scheduler import RerunResult

COLOR_MODES = ["auto", "always", "never"]
MESSAGE_FORMATS = ["human", "json"]


@dataclass(frozen=True)
class RenderSettings:
    """Output mode, decided once at startup and passed to whoever renders."""
    color: str = "auto"
    message_format: str = "human"

    @property
    def is_json(self) -> bool:
        return self.message_format == "json"

    def should_color(self, stream: Optional[IO] = None) -> bool:
        if self.color == "always":
            return True
        if self.color == "never":
            return False
        stream = stream if stream is not None else sys.stderr
        return bool(getattr(stream, "isatty", lambda: False)())


class Renderer:
    """
    Writes discovery progress to stderr and re-run output to stdout.

    In JSON mode every discovery event is written as one JSON object per
    line instead of the human `test ... ok` lines.
    """

    def __init__(self, settings: RenderSettings, out: Optional[IO] = None, err: Optional[IO] = None):
        self.settings = settings
        self._out = out
        self._err = err
        self._color = settings.should_color(err)

    def _echo_err(self, message: str = "") -> None:
        click.echo(message, file=self._err, err=self._err is None, color=self._color)

    def _echo_out(self, message: str = "") -> None:
        click.echo(message, file=self._out, color=self._color)

    def _style(self, text: str, **styles) -> str:
        return click.style(text, **styles) if self._color else text

    def test_status(self, name: str, status: str, fg: str) -> None:
        self._echo_err(f"test {name} ... {self._style(status, fg=fg)}")

    def previously_checkpointed(self, names: List[str]) -> None:
        if self.settings.is_json:
            for name in names:
                self._echo_err(json.dumps(event_to_wire(events.TestFailed(name=name))))
            return
        self._echo_err("\npreviously checkpointed")
        for name in names:
            self.test_status(name, "failed", "red")

    def event(self, decoded: Decoded, elapsed: float) -> None:
        """Render one decoded discovery line."""
        if isinstance(decoded, DecodeError):
            # already logged as a warning by the discovery runner
            return

        if self.settings.is_json:
            self._echo_err(json.dumps(event_to_wire(decoded)))
            return

        if isinstance(decoded, events.TestFailed):
            self.test_status(decoded.name, "failed", "red")
        elif isinstance(decoded, events.TestOk):
            self.test_status(decoded.name, "ok", "green")
        elif isinstance(decoded, events.TestIgnored):
            self.test_status(decoded.name, "ignored", "yellow")
        elif isinstance(decoded, events.SuiteStarted):
            self._echo_err(f"\nrunning {decoded.test_count} tests")
        elif isinstance(decoded, (events.SuiteOk, events.SuiteFailed)):
            self._echo_err("\n" + suite_summary(decoded, elapsed))

    def rerun(self, result: RerunResult) -> None:
        """Print the captured output (or the error) of one re-run."""
        self._echo_out(f"\n --- test {result.name} ---\n")
        if result.error is not None:
            self._echo_out(f"{self._style('error', fg='red', bold=True)}: {result.error}")
            return

        output = result.output
        for text, label in ((output.stdout_text, None), (output.stderr_text, "stderr")):
            body = text()
            if not body:
                continue
            if label:
                self._echo_out(self._style(f"--- {label} ---", bold=True))
            self._echo_out(body.rstrip("\n"))

    def package_summary(self, package: str, failed: Dict[str, List[str]]) -> None:
        """Failing tests of one package, grouped by suite."""
        if self.settings.is_json:
            self._echo_out(json.dumps({"package": package, "failed": failed}))
            return
        self._echo_out(f"\npackage: {package}")
        if not failed:
            self._echo_out("\tno tests failed")
            return
        for suite, names in failed.items():
            self._echo_out(f"\t{suite}: {', '.join(names)}")


def suite_summary(result, elapsed: float) -> str:
    """libtest-style one line summary of a finished suite."""
    status = "ok" if isinstance(result, events.SuiteOk) else "FAILED"
    return (
        f"test result: {status}. {result.passed} passed; {result.failed} failed; "
        f"{result.ignored} ignored; {result.measured} measured; "
        f"{result.filtered_out} filtered out; finished in {elapsed:.2f}s"
    )
