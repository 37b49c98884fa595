"""Self-healing repair loop: bounded recovery from dev server crashes."""

from devwarden.repair.loop import RepairAgent, RepairEvent, RepairTask, SelfHealingLoop
from devwarden.repair.phases import (
    AGENT_PHASES,
    TERMINAL_PHASES,
    RepairPhase,
    can_transition,
)
from devwarden.repair.session import RepairSession, RepairSessionRegistry, rehydrate_lock

__all__ = [
    "AGENT_PHASES",
    "TERMINAL_PHASES",
    "RepairAgent",
    "RepairEvent",
    "RepairPhase",
    "RepairSession",
    "RepairSessionRegistry",
    "RepairTask",
    "SelfHealingLoop",
    "can_transition",
    "rehydrate_lock",
]
