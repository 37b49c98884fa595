"""Repair phases and the transitions allowed between them."""

from __future__ import annotations

import enum


class RepairPhase(enum.Enum):
    CRASH_DETECTED = "crash_detected"
    REPAIR_STARTED = "repair_started"
    AWAITING_AGENT = "awaiting_agent"
    AGENT_STARTED = "agent_started"
    AGENT_READING_LOG = "agent_reading_log"
    AGENT_APPLYING_FIX = "agent_applying_fix"
    AGENT_WROTE_FILES = "agent_wrote_files"
    READY_TO_RESTART = "ready_to_restart"
    RESTARTING = "restarting"
    VERIFYING_FIX = "verifying_fix"
    RECOVERED = "recovered"
    COOLDOWN = "cooldown"
    FAILED_REQUIRES_HUMAN = "failed_requires_human"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_PHASES

    @property
    def is_agent_phase(self) -> bool:
        return self in AGENT_PHASES


# Phases an external agent may report.
AGENT_PHASES: frozenset[RepairPhase] = frozenset(
    {
        RepairPhase.AGENT_STARTED,
        RepairPhase.AGENT_READING_LOG,
        RepairPhase.AGENT_APPLYING_FIX,
        RepairPhase.AGENT_WROTE_FILES,
    }
)

TERMINAL_PHASES: frozenset[RepairPhase] = frozenset(
    {
        RepairPhase.RECOVERED,
        RepairPhase.FAILED_REQUIRES_HUMAN,
        RepairPhase.ABORTED,
    }
)

_AFTER_AGENT = AGENT_PHASES | {RepairPhase.READY_TO_RESTART, RepairPhase.FAILED_REQUIRES_HUMAN}

ALLOWED_TRANSITIONS: dict[RepairPhase, frozenset[RepairPhase]] = {
    RepairPhase.CRASH_DETECTED: frozenset({RepairPhase.REPAIR_STARTED}),
    RepairPhase.REPAIR_STARTED: frozenset(
        {RepairPhase.AWAITING_AGENT, RepairPhase.FAILED_REQUIRES_HUMAN}
    ),
    RepairPhase.AWAITING_AGENT: _AFTER_AGENT,
    RepairPhase.AGENT_STARTED: _AFTER_AGENT,
    RepairPhase.AGENT_READING_LOG: _AFTER_AGENT,
    RepairPhase.AGENT_APPLYING_FIX: _AFTER_AGENT,
    RepairPhase.AGENT_WROTE_FILES: _AFTER_AGENT,
    RepairPhase.READY_TO_RESTART: frozenset({RepairPhase.RESTARTING}),
    RepairPhase.RESTARTING: frozenset({RepairPhase.VERIFYING_FIX, RepairPhase.COOLDOWN}),
    RepairPhase.VERIFYING_FIX: frozenset({RepairPhase.RECOVERED, RepairPhase.COOLDOWN}),
    RepairPhase.COOLDOWN: frozenset(
        {RepairPhase.AWAITING_AGENT, RepairPhase.FAILED_REQUIRES_HUMAN}
    ),
    RepairPhase.RECOVERED: frozenset(),
    RepairPhase.FAILED_REQUIRES_HUMAN: frozenset(),
    RepairPhase.ABORTED: frozenset(),
}


def can_transition(current: RepairPhase, target: RepairPhase) -> bool:
    """Whether ``current -> target`` is a legal move.

    Any non-terminal phase may move to itself or to ``aborted``.
    """
    if current.is_terminal:
        return False
    if target is RepairPhase.ABORTED or target is current:
        return True
    return target in ALLOWED_TRANSITIONS[current]


def check_transition(current: RepairPhase, target: RepairPhase) -> None:
    """Raises ValueError on an illegal transition."""
    if not can_transition(current, target):
        raise ValueError(f"Illegal repair transition: {current.value} -> {target.value}")
