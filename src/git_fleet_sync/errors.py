"""Exception hierarchy shared by planners, executors and diagnostics."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import ExecutionResult


class FleetSyncError(Exception):
    """Base class for all git-fleet-sync errors."""


class ConfigurationError(FleetSyncError):
    """Invalid input detected before any work starts. Never retried."""


class NoRepositoriesError(ConfigurationError):
    """The desired repository set is empty."""

    def __init__(self, message: str = "no repositories provided"):
        super().__init__(message)


class InvalidStrategyError(ConfigurationError):
    """Unknown update strategy string."""

    def __init__(self, value: str):
        super().__init__(f"unknown strategy {value!r} (valid: reset, pull, fetch)")
        self.value = value


class InvalidSeparatorError(ConfigurationError):
    """Flat subgroup separator contains characters unsafe for directory names."""

    def __init__(self, separator: str):
        super().__init__(f"flat separator {separator!r} contains invalid path characters")
        self.separator = separator


class MissingDependencyError(FleetSyncError):
    """A required collaborator (planner, executor) was not configured."""

    def __init__(self, message: str = "missing dependency"):
        super().__init__(message)


class OperationCancelled(FleetSyncError):
    """The cancel event was set while work was pending."""

    def __init__(self, message: str = "operation cancelled"):
        super().__init__(message)


class AuthError(FleetSyncError):
    """Authentication material could not be prepared."""


class GitCommandError(FleetSyncError):
    """A git subprocess exited with a non-zero status."""

    def __init__(self, args: list[str], returncode: int, stderr: str = "", stdout: str = ""):
        self.command = list(args)
        self.returncode = returncode
        self.stderr = stderr
        self.stdout = stdout
        detail = (stderr or stdout).strip()
        message = f"git {' '.join(self.command)} failed with exit code {returncode}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class ForgeError(FleetSyncError):
    """Listing repositories from a hosting platform failed."""


class StateStoreError(FleetSyncError):
    """Run state could not be loaded or saved."""


class StateSaveError(StateStoreError):
    """Saving run state failed after execution completed.

    The execution itself still produced results; they are available on
    ``result`` so callers can report per-repo outcomes.
    """

    def __init__(self, message: str, result: ExecutionResult):
        super().__init__(message)
        self.result = result
