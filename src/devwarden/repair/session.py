"""Repair session registry: one active repair session per project.

The registry bridges the self-healing loop, which awaits phase changes,
and whoever reports agent progress (an MCP tool handler, the CLI, tests):
``update_phase`` wakes every ``wait_for_phase`` caller.

For each session it also maintains two files in the project directory:
the crash log (``.dev-crash.<id>.log``) that the agent and the human read,
and a ``.dev-repair.lock`` describing the session in progress.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable

import aiofiles

from devwarden.errors import WatchTimeoutError
from devwarden.repair.phases import RepairPhase, check_transition

logger = logging.getLogger(__name__)

LOCK_FILENAME = ".dev-repair.lock"
GENERIC_CRASH_LOG = ".dev-crash.log"
STALE_LOG_AGE = 3600.0

_CRASH_LOG_RE = re.compile(r"^\.dev-crash\.[a-f0-9]{8}\.log$")
_TIME_RE = re.compile(r"^Time:\s*(.+)$", re.MULTILINE)


def crash_log_name(repair_id: str) -> str:
    return f".dev-crash.{repair_id[:8]}.log"


@dataclass
class StepRecord:
    phase: RepairPhase
    message: str
    timestamp: float = field(default_factory=time.time)
    detail: dict[str, Any] | None = None


@dataclass
class RepairSession:
    repair_id: str
    project_path: str
    phase: RepairPhase = RepairPhase.CRASH_DETECTED
    iteration: int = 0
    max_iterations: int = 3
    started_at: float = field(default_factory=time.time)
    log_path: str = ""
    exit_code: int | None = None
    agent_engaged: bool = False
    files_changed: int = 0
    lines_changed: int = 0
    health_url: str | None = None
    history: list[StepRecord] = field(default_factory=list)
    coalesced_crashes: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "repair_id": self.repair_id,
            "project_path": self.project_path,
            "phase": self.phase.value,
            "iteration": self.iteration,
            "max_iterations": self.max_iterations,
            "started_at": self.started_at,
            "log_path": self.log_path,
            "exit_code": self.exit_code,
            "agent_engaged": self.agent_engaged,
            "files_changed": self.files_changed,
            "lines_changed": self.lines_changed,
            "health_url": self.health_url,
            "coalesced_crashes": self.coalesced_crashes,
        }


class RepairSessionRegistry:
    """Owns every RepairSession, keyed by project path."""

    def __init__(self) -> None:
        self._sessions: dict[str, RepairSession] = {}
        self._changed = asyncio.Event()

    async def create(
        self,
        project_path: str,
        exit_code: int | None,
        crash_output: str,
        max_iterations: int,
    ) -> RepairSession:
        """Start a session and write its crash log.

        Raises:
            ValueError: a non-terminal session already exists for the project.
        """
        existing = self._sessions.get(project_path)
        if existing is not None and not existing.phase.is_terminal:
            raise ValueError(f"Repair already in progress for {project_path}")
        rehydrate_lock(project_path)

        repair_id = uuid.uuid4().hex
        session = RepairSession(
            repair_id=repair_id,
            project_path=project_path,
            max_iterations=max_iterations,
            log_path=os.path.join(project_path, crash_log_name(repair_id)),
            exit_code=exit_code,
        )
        await self._write_crash_logs(session, crash_output)
        await self.cleanup_stale_crash_logs(project_path)

        self._sessions[project_path] = session
        self._write_lock(session)
        self._notify()
        logger.info("Repair session %s created for %s", repair_id[:8], project_path)
        return session

    def get(self, project_path: str) -> RepairSession | None:
        return self._sessions.get(project_path)

    def get_by_repair_id(self, repair_id: str) -> RepairSession | None:
        for session in self._sessions.values():
            if session.repair_id == repair_id:
                return session
        return None

    def list_sessions(self) -> list[RepairSession]:
        return list(self._sessions.values())

    def update_phase(
        self,
        repair_id: str,
        phase: RepairPhase,
        message: str = "",
        detail: dict[str, Any] | None = None,
    ) -> RepairSession | None:
        """Move a session to ``phase``.

        Returns None for an unknown repair id.

        Raises:
            ValueError: the transition is not allowed from the current phase.
        """
        session = self.get_by_repair_id(repair_id)
        if session is None:
            return None
        check_transition(session.phase, phase)

        session.phase = phase
        session.history.append(StepRecord(phase=phase, message=message, detail=detail))
        if phase.is_agent_phase:
            session.agent_engaged = True
        if phase is RepairPhase.AGENT_WROTE_FILES and detail:
            session.files_changed = int(detail.get("files_changed") or 0)
            session.lines_changed = int(detail.get("lines_changed") or 0)

        self._write_lock(session)
        self._notify()
        return session

    def increment_iteration(self, project_path: str) -> int:
        """Count one more repair attempt.

        Raises:
            ValueError: the session is already at ``max_iterations``.
        """
        session = self._sessions[project_path]
        if session.iteration >= session.max_iterations:
            raise ValueError(
                f"Repair {session.repair_id[:8]} already used "
                f"{session.max_iterations} iterations"
            )
        session.iteration += 1
        session.files_changed = 0
        session.lines_changed = 0
        self._write_lock(session)
        return session.iteration

    def remove(self, project_path: str) -> None:
        session = self._sessions.pop(project_path, None)
        _unlink_quietly(os.path.join(project_path, LOCK_FILENAME))
        if session is not None:
            self._notify()

    async def wait_for_phase(
        self,
        repair_id: str,
        phases: Iterable[RepairPhase],
        timeout: float,
    ) -> RepairPhase | None:
        """Wait until the session reaches one of ``phases`` or a terminal phase.

        Returns the phase reached, or None if the session was removed.

        Raises:
            WatchTimeoutError: nothing happened within ``timeout``.
        """
        targets = frozenset(phases)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            session = self.get_by_repair_id(repair_id)
            if session is None:
                return None
            if session.phase in targets or session.phase.is_terminal:
                return session.phase
            changed = self._changed
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise WatchTimeoutError(
                    f"repair {repair_id[:8]} still {session.phase.value} after {timeout}s"
                )
            try:
                await asyncio.wait_for(changed.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                pass

    def _notify(self) -> None:
        # Wake current waiters; later waiters wait on a fresh event.
        changed, self._changed = self._changed, asyncio.Event()
        changed.set()

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    async def _write_crash_logs(self, session: RepairSession, crash_output: str) -> None:
        lines = crash_output.splitlines()
        header = [
            "=== Dev Server Crash Report ===",
            f"Repair ID: {session.repair_id}",
            f"Time: {datetime.now(timezone.utc).isoformat()}",
            f"Exit Code: {session.exit_code}",
            f"Project: {session.project_path}",
        ]
        body = ["", f"--- Output (last {len(lines)} lines) ---", "", *lines, ""]
        try:
            async with aiofiles.open(session.log_path, "w", encoding="utf-8") as f:
                await f.write("\n".join(header + body))
        except OSError as e:
            logger.error("Failed to write crash log %s: %s", session.log_path, e)

        generic = os.path.join(session.project_path, GENERIC_CRASH_LOG)
        unique = f"Unique log: {os.path.basename(session.log_path)}"
        try:
            async with aiofiles.open(generic, "w", encoding="utf-8") as f:
                await f.write("\n".join([*header, unique, *body]))
        except OSError as e:
            logger.warning("Failed to write %s: %s", generic, e)

    async def cleanup_stale_crash_logs(self, project_path: str, now: float | None = None) -> list[str]:
        """Delete per-repair crash logs older than an hour."""
        now = time.time() if now is None else now
        removed = []
        try:
            names = os.listdir(project_path)
        except OSError:
            return removed
        for name in names:
            if not _CRASH_LOG_RE.match(name):
                continue
            path = os.path.join(project_path, name)
            try:
                async with aiofiles.open(path, "r", encoding="utf-8") as f:
                    content = await f.read()
            except OSError:
                continue
            match = _TIME_RE.search(content)
            if not match:
                continue
            try:
                written = datetime.fromisoformat(match.group(1).strip()).timestamp()
            except ValueError:
                continue
            if now - written > STALE_LOG_AGE:
                _unlink_quietly(path)
                removed.append(name)
        if removed:
            logger.debug("Removed %d stale crash logs in %s", len(removed), project_path)
        return removed

    def _write_lock(self, session: RepairSession) -> None:
        data = {
            "repair_id": session.repair_id,
            "pid": os.getpid(),
            "iteration": session.iteration,
            "status": session.phase.value,
            "created_at": session.started_at,
            "crash_log_path": session.log_path,
        }
        path = os.path.join(session.project_path, LOCK_FILENAME)
        try:
            with open(path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
        except OSError as e:
            logger.warning("Could not write repair lock %s: %s", path, e)


def rehydrate_lock(project_path: str) -> dict[str, Any] | None:
    """Read a lock left in ``project_path``.

    A lock written by another process is stale (that process died
    mid-repair) and is deleted.
    """
    path = os.path.join(project_path, LOCK_FILENAME)
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError):
        return None
    if not isinstance(data, dict) or data.get("pid") != os.getpid():
        logger.info("Removing stale repair lock in %s", project_path)
        _unlink_quietly(path)
        return None
    return data


def _unlink_quietly(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Could not remove %s: %s", path, e)
