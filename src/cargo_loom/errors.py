"""Error types shared across the runner."""

from typing import Optional


class LoomError(Exception):
    """Base class for every error raised by cargo-loom."""
    pass


class SetupError(LoomError):
    """Raised when the run cannot be prepared (fatal for the whole invocation)."""
    pass


class BuildError(LoomError):
    """Raised when the test binaries of one package fail to build."""

    def __init__(self, package: str, detail: str):
        self.package = package
        self.detail = detail
        super().__init__(f"failed to build tests for package `{package}`: {detail}")


class SpawnError(LoomError):
    """Raised when a child process could not be started."""

    def __init__(self, action: str, target: str, cause: Optional[BaseException] = None):
        self.action = action
        self.target = target
        self.cause = cause
        message = f"failed to spawn process to {action} `{target}`"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class OutputDecodeError(LoomError):
    """Raised when captured process output is not valid UTF-8."""

    def __init__(self, name: str, stream: str, cause: UnicodeDecodeError):
        self.name = name
        self.stream = stream
        self.cause = cause
        super().__init__(f"{stream} from test `{name}` was not utf8: {cause}")
