from __future__ import annotations

from typing import Optional

EXIT_OK = 0
EXIT_PREFLIGHT = 1
EXIT_BUILD_FAILED = 2
EXIT_PACKAGING_FAILED = 3
EXIT_HOST_PROBE = 4
EXIT_CANCELLED = 130


class GovernorError(RuntimeError):
    """Base class for every fatal condition surfaced by the governor."""

    exit_code: int = EXIT_BUILD_FAILED


class PreflightError(GovernorError):
    """Build directory, executor or configure step is not usable."""

    exit_code = EXIT_PREFLIGHT


class ExecutorLaunchError(PreflightError):
    """The executor process could not be spawned at all."""


class HostProbeError(GovernorError):
    """Host memory or CPU counters could not be read."""

    exit_code = EXIT_HOST_PROBE


class BuildFailedError(GovernorError):
    """
    The executor exited non-zero on its own (no governor-initiated
    termination). Never retried.
    """

    exit_code = EXIT_BUILD_FAILED

    def __init__(self, message: str, *, phase: str, executor_exit_code: int) -> None:
        super().__init__(message)
        self.phase = phase
        self.executor_exit_code = executor_exit_code


class PackagingError(GovernorError):
    exit_code = EXIT_PACKAGING_FAILED

    def __init__(self, message: str, *, packager_exit_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.packager_exit_code = packager_exit_code


class BuildCancelled(GovernorError):
    """SIGINT/SIGTERM received by the governor itself."""

    exit_code = EXIT_CANCELLED

    def __init__(self, message: str = "build cancelled", *, signal_name: Optional[str] = None) -> None:
        super().__init__(message)
        self.signal_name = signal_name


__all__ = [
    "EXIT_OK",
    "EXIT_PREFLIGHT",
    "EXIT_BUILD_FAILED",
    "EXIT_PACKAGING_FAILED",
    "EXIT_HOST_PROBE",
    "EXIT_CANCELLED",
    "GovernorError",
    "PreflightError",
    "ExecutorLaunchError",
    "HostProbeError",
    "BuildFailedError",
    "PackagingError",
    "BuildCancelled",
]
