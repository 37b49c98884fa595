"""Command and plan types.

Commands are never stored as single strings: always as ``bin`` plus an
ordered tuple of ``args``.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field

from devwarden.errors import ValidationError


class Confidence(enum.Enum):
    """How confident the plan resolver is in the computed plan."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True)
class SafeCommand:
    """A process invocation: an allowlisted binary and its arguments."""

    bin: str
    args: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        # Accept lists from callers but never keep a mutable reference.
        object.__setattr__(self, "args", tuple(self.args))

    @property
    def argv(self) -> list[str]:
        return [self.bin, *self.args]


@dataclass
class DetectionMeta:
    """How a plan was determined."""

    framework: str | None = None
    script: str | None = None
    used_last_known_good: bool = False
    used_monorepo_workspace: bool = False
    used_user_override: bool = False


@dataclass
class DevServerPlan:
    """The complete plan for starting a dev server.

    ``cwd`` is the project root and the supervision key. ``spawn_cwd`` is
    set when the runnable app lives in a workspace subdirectory.
    """

    cwd: str
    manager: str
    command: SafeCommand
    port: int | None = None
    confidence: Confidence = Confidence.LOW
    reasons: list[str] = field(default_factory=list)
    detection: DetectionMeta = field(default_factory=DetectionMeta)
    spawn_cwd: str | None = None

    @property
    def launch_cwd(self) -> str:
        return self.spawn_cwd or self.cwd


@dataclass(frozen=True)
class ValidationResult:
    ok: bool
    error: str | None = None

    @classmethod
    def success(cls) -> ValidationResult:
        return cls(ok=True)

    @classmethod
    def failure(cls, error: str) -> ValidationResult:
        return cls(ok=False, error=error)

    def raise_for_error(self) -> None:
        if not self.ok:
            raise ValidationError(self.error or "validation failed")

    def __bool__(self) -> bool:
        return self.ok
