from __future__ import annotations


class BundleRunnerError(Exception):
    """Base class for failures raised by the bundle runner itself."""


class RunnerConfigError(BundleRunnerError):
    pass


class LaunchError(BundleRunnerError):
    """The browser process did not start or never exposed a debug port."""

    def __init__(self, message: str, *, command: list[str] | None = None) -> None:
        super().__init__(message)
        self.command = list(command or [])


class BundleLoadError(BundleRunnerError):
    pass


class NoResultError(BundleRunnerError):
    """The entry point ran to completion but produced no result."""


__all__ = [
    "BundleLoadError",
    "BundleRunnerError",
    "LaunchError",
    "NoResultError",
    "RunnerConfigError",
]
