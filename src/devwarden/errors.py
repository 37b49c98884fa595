"""Error taxonomy for process supervision.

- ``ValidationError``: a command, plan, shell or path failed the allowlist.
  Always fatal to the requested action and never retried.
- ``SpawnError``: the OS refused to give us a process or a PTY.
- ``CrashError``: a supervised process exited unexpectedly. Feeds the
  repair loop instead of surfacing as a hard failure.
- ``WatchTimeoutError``: a grace window, agent wait or verification window
  elapsed. Callers escalate (SIGKILL, cooldown) rather than give up.
"""

from __future__ import annotations


class DevwardenError(Exception):
    """Base class for all devwarden errors."""


class ValidationError(DevwardenError):
    """A command or plan was rejected by the validator."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class SpawnError(DevwardenError):
    """The OS could not allocate the process or pseudo-terminal."""


class CrashError(DevwardenError):
    """A supervised process exited with a non-zero code."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        log_path: str | None = None,
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.log_path = log_path


class WatchTimeoutError(DevwardenError, TimeoutError):
    """A bounded wait elapsed before the awaited condition occurred."""
