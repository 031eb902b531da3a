"""Exception hierarchy for swap-deps.

Every error the tool expects to report to the user inherits from
``SwapDepsError`` so the CLI can print a single ``Error: <message>`` line for
it and reserve tracebacks for genuinely unexpected failures.
"""

from __future__ import annotations

from pathlib import Path


class SwapDepsError(Exception):
    """Base exception for all swap-deps errors."""


class InvalidSpecError(SwapDepsError):
    """A GitHub spec (``org/repo``, ``org/repo#branch``, ``org/repo@tag``) is malformed."""


class ValidationError(SwapDepsError):
    """User input failed validation before any mutation was attempted."""


class ConfigError(SwapDepsError):
    """The ``.swap-deps.yml`` configuration file is missing or invalid."""


class InconsistentStateError(SwapDepsError):
    """A backup exists but the live manifest does not look swapped."""

    def __init__(self, message: str, path: Path | None = None) -> None:
        self.path = path
        super().__init__(message)


class FetchError(SwapDepsError):
    """A git operation needed to materialize a GitHub source failed."""

    def __init__(
        self,
        message: str,
        repository: str = "",
        ref: str | None = None,
        stderr: str = "",
    ) -> None:
        self.repository = repository
        self.ref = ref
        self.stderr = stderr
        super().__init__(message)


class ParseError(SwapDepsError):
    """A structured manifest could not be parsed; the file was left untouched."""

    def __init__(self, message: str, path: Path | None = None) -> None:
        self.path = path
        super().__init__(message)


class BuildError(SwapDepsError):
    """Building a local package failed. Reported as a warning by the orchestrator."""

    def __init__(self, message: str, dependency: str = "") -> None:
        self.dependency = dependency
        super().__init__(message)


class WatchProcessError(SwapDepsError):
    """A watch process could not be started or exited during verification."""

    def __init__(
        self, message: str, dependency: str = "", log_path: Path | None = None
    ) -> None:
        self.dependency = dependency
        self.log_path = log_path
        super().__init__(message)
