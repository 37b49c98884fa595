"""Self-healing loop: bounded, agent-assisted recovery from dev server crashes.

    crash -> session -> await agent -> quiet period -> restart -> verify
      \\-> (attempt failed) -> backoff -> next attempt
      \\-> (attempts exhausted) -> cooldown -> failed_requires_human

With ``repair.agent_mode`` off there is no agent hand-off: each attempt
waits out the exponential backoff and restarts.

Safety:
    - At most one repair session per project; later crashes are coalesced
    - Bounded attempts (``repair.max_iterations``)
    - Safety gate on the size of the agent's changes
    - Cooldown after exhaustion, and no automatic restarts at all once a
      human is required, until ``acknowledge`` is called

The phase event stream (``on_event`` / the wire) is the only way anything
outside learns about repair progress.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol, TYPE_CHECKING, runtime_checkable

from devwarden.command import Confidence, DevServerPlan
from devwarden.config import WardenConfig
from devwarden.devserver.cleanup import CleanupReport, cleanup_stale_dev_server
from devwarden.devserver.health import HealthCheckResult, check_health
from devwarden.devserver.supervisor import (
    CrashEvent,
    DevServerStatus,
    DevServerSupervisor,
    StartResult,
)
from devwarden.errors import CrashError, WatchTimeoutError
from devwarden.repair.phases import AGENT_PHASES, RepairPhase, can_transition
from devwarden.repair.session import RepairSession, RepairSessionRegistry

if TYPE_CHECKING:
    from devwarden.session.wire import Wire

logger = logging.getLogger(__name__)

EventCallback = Callable[["RepairEvent"], None]
HealthChecker = Callable[[str], Awaitable[HealthCheckResult]]
Cleanup = Callable[[str, int | None], CleanupReport]


@dataclass
class RepairTask:
    """What a repair agent needs to go and fix a crash."""

    repair_id: str
    project_path: str
    log_path: str
    exit_code: int | None
    crash_summary: str
    iteration: int
    max_iterations: int
    phase: RepairPhase
    health_url: str | None = None
    max_files: int = 8
    max_lines: int = 300
    instructions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "pending": True,
            "repair_id": self.repair_id,
            "crash_log_path": self.log_path,
            "exit_code": self.exit_code,
            "crash_summary": self.crash_summary,
            "attempt": self.iteration,
            "max_attempts": self.max_iterations,
            "phase": self.phase.value,
            "health_url": self.health_url,
            "instructions": list(self.instructions),
            "safety_limits": {
                "max_files": self.max_files,
                "max_lines_changed": self.max_lines,
            },
        }


@dataclass
class RepairEvent:
    run_id: str
    project_path: str
    phase: RepairPhase
    iteration: int
    max_iterations: int
    message: str
    repair_id: str | None = None
    level: str = "info"
    error: str | None = None
    detail: dict[str, Any] | None = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "repair_id": self.repair_id,
            "project_path": self.project_path,
            "phase": self.phase.value,
            "iteration": self.iteration,
            "max_iterations": self.max_iterations,
            "message": self.message,
            "level": self.level,
            "error": self.error,
            "detail": self.detail,
            "timestamp": self.timestamp,
        }


@runtime_checkable
class RepairAgent(Protocol):
    """An external fixer, e.g. an LLM agent behind an MCP tool.

    ``request_repair`` should return promptly; progress comes back through
    ``SelfHealingLoop.report_progress``.
    """

    async def request_repair(self, task: RepairTask) -> None: ...


class _RepairAborted(Exception):
    pass


class SelfHealingLoop:
    """Drives one repair session per crashed project."""

    def __init__(
        self,
        supervisor: DevServerSupervisor,
        config: WardenConfig | None = None,
        wire: Wire | None = None,
        agent: RepairAgent | None = None,
        sessions: RepairSessionRegistry | None = None,
        health_check: HealthChecker | None = None,
        cleanup: Cleanup | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._supervisor = supervisor
        self._config = config or WardenConfig()
        self._wire = wire
        self._agent = agent
        self._sessions = sessions or RepairSessionRegistry()
        self._health_check = health_check or self._default_health_check
        self._cleanup = cleanup or cleanup_stale_dev_server
        self._clock = clock

        self._active: set[str] = set()
        self._coalesced: dict[str, int] = {}
        self._cooldowns: dict[str, float] = {}
        self._needs_human: set[str] = set()
        self._callbacks: list[EventCallback] = []
        self._tasks: set[asyncio.Task] = set()
        self._unsubscribe: Callable[[], None] | None = None

    @property
    def sessions(self) -> RepairSessionRegistry:
        return self._sessions

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def attach(self) -> None:
        """Start reacting to supervisor crash events."""
        if self._unsubscribe is None:
            self._unsubscribe = self._supervisor.on_crash(self._on_crash)

    def _on_crash(self, event: CrashEvent) -> None:
        if not self._config.repair.enabled:
            logger.info("Auto-repair disabled; not repairing %s", event.project_path)
            return
        task = asyncio.create_task(self.handle_crash(event))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Repair task failed", exc_info=task.exception())

    async def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)

    def on_event(self, callback: EventCallback) -> Callable[[], None]:
        """Register a repair event listener. Returns an unsubscribe function."""
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def handle_crash(self, event: CrashEvent) -> bool:
        """Run (or join) the repair incident for a crash. True if recovered.

        A crash arriving while a repair is active does not start a second
        loop and does not advance the iteration counter; it only bumps
        ``coalesced_crashes``. The next attempt is still consumed, because the
        active loop sees that crash through its own verification watch.
        """
        cwd = event.project_path
        max_iterations = self._config.repair.max_iterations

        if cwd in self._active:
            count = self._coalesced.get(cwd, 0) + 1
            self._coalesced[cwd] = count
            session = self._sessions.get(cwd)
            if session is not None:
                session.coalesced_crashes = count
            logger.info("Crash for %s coalesced into the active repair (%d)", cwd, count)
            return False

        if cwd in self._needs_human:
            self._emit_detached(
                cwd, "Repair needs human attention; acknowledge to re-enable auto-repair"
            )
            return False
        if self.in_cooldown(cwd):
            self._emit_detached(cwd, "In cooldown period; skipping auto-repair")
            return False

        self._active.add(cwd)
        self._coalesced[cwd] = 0
        try:
            session = await self._sessions.create(
                cwd, event.exit_code, event.output_tail, max_iterations
            )
            session.coalesced_crashes = self._coalesced[cwd]
            try:
                return await self._run(session, event)
            except _RepairAborted:
                logger.info("Repair %s for %s aborted", session.repair_id[:8], cwd)
                return False
            finally:
                self._sessions.remove(cwd)
        finally:
            self._active.discard(cwd)
            self._coalesced.pop(cwd, None)

    async def _run(self, session: RepairSession, event: CrashEvent) -> bool:
        cwd = session.project_path
        cfg = self._config.repair
        log_name = os.path.basename(session.log_path)

        self._emit(
            session,
            RepairPhase.CRASH_DETECTED,
            f"Dev server crashed (exit code {event.exit_code})",
            level="error",
            detail={
                "exit_code": event.exit_code,
                "output_lines": len(event.output_tail.splitlines()),
                "crash_log_path": session.log_path,
            },
        )
        self._emit(
            session,
            RepairPhase.REPAIR_STARTED,
            f"Repair session {session.repair_id[:8]} started",
            detail={"crash_log_path": session.log_path},
        )

        plan = event.plan or await self._resolve_plan(cwd)
        self._check_aborted(session)
        if plan is None:
            self._require_human(
                session,
                f"No dev server command to restart with. Crash log: {session.log_path}",
            )
            return False

        last_error: str | None = None
        for _ in range(session.max_iterations):
            iteration = self._sessions.increment_iteration(cwd)
            attempt = f"{iteration}/{session.max_iterations}"

            if cfg.agent_mode:
                self._emit(
                    session,
                    RepairPhase.AWAITING_AGENT,
                    f"Waiting for the repair agent (attempt {attempt}); crash log {log_name}",
                    detail={"crash_log_path": session.log_path},
                )
                if not await self._await_agent(session):
                    return False
            else:
                await self._backoff(session, iteration)

            await self._prepare_restart(session, plan)
            self._supervisor.clear_crash_history(cwd)
            self._emit(session, RepairPhase.RESTARTING, f"Restart attempt {attempt}...")
            await self._supervisor.stop(cwd)
            result = await self._supervisor.start_plan(plan)

            try:
                await self._verify(session, result)
            except CrashError as e:
                last_error = str(e)
                if iteration >= session.max_iterations:
                    break
                # Without an agent the backoff is taken in _backoff instead.
                delay = cfg.base_delay * 2 ** (iteration - 1) if cfg.agent_mode else 0.0
                self._emit(
                    session,
                    RepairPhase.COOLDOWN,
                    f"{e}; next attempt in {delay:.0f}s" if cfg.agent_mode else f"{e}; backing off",
                    level="warning",
                    error=str(e),
                    detail={"delay": delay, "exit_code": e.exit_code},
                )
                await self._pause(session, delay)
                continue

            message = (
                "Dev server recovered after agent repair"
                if session.agent_engaged
                else "Dev server recovered"
            )
            self._emit(
                session,
                RepairPhase.RECOVERED,
                message,
                level="success",
                detail={"url": session.health_url, "agent_engaged": session.agent_engaged},
            )
            return True

        expires = self._clock() + cfg.cooldown
        self._cooldowns[cwd] = expires
        self._emit(
            session,
            RepairPhase.COOLDOWN,
            f"All {session.max_iterations} repair attempts failed; "
            f"entering {cfg.cooldown / 60:.0f}-minute cooldown",
            level="warning",
            error=last_error,
            detail={"cooldown": cfg.cooldown},
        )
        self._require_human(
            session,
            f"All repair attempts exhausted. Manual intervention required. "
            f"Crash log: {session.log_path}",
            error=last_error,
        )
        return False

    async def _await_agent(self, session: RepairSession) -> bool:
        """Hand the crash to the agent and wait for its fix.

        Returns False if the session must stop (safety gate tripped).
        """
        cfg = self._config.repair
        repair_id = session.repair_id

        if self._agent is not None:
            task = self.pending_task(session.project_path)
            try:
                await self._agent.request_repair(task)
            except Exception:
                logger.exception("Repair agent failed to accept task %s", repair_id[:8])

        try:
            phase = await self._sessions.wait_for_phase(
                repair_id, AGENT_PHASES, cfg.agent_engage_timeout
            )
        except WatchTimeoutError:
            phase = None
        self._check_aborted(session)

        if phase is None:
            self._emit(
                session,
                RepairPhase.READY_TO_RESTART,
                "No agent activity; attempting restart (transient crash?)",
            )
            return True

        timed_out = False
        if session.phase is not RepairPhase.AGENT_WROTE_FILES:
            try:
                await self._sessions.wait_for_phase(
                    repair_id, {RepairPhase.AGENT_WROTE_FILES}, cfg.agent_write_timeout
                )
            except WatchTimeoutError:
                timed_out = True
        self._check_aborted(session)

        if session.files_changed > cfg.max_files or session.lines_changed > cfg.max_lines:
            self._require_human(
                session,
                f"Agent changes exceed safety threshold ({session.files_changed} files, "
                f"~{session.lines_changed} lines). Please review manually.",
                detail={
                    "files_changed": session.files_changed,
                    "lines_changed": session.lines_changed,
                    "max_files": cfg.max_files,
                    "max_lines": cfg.max_lines,
                },
            )
            return False

        if timed_out:
            self._emit(
                session,
                RepairPhase.READY_TO_RESTART,
                "Agent timed out writing files; attempting restart anyway",
                level="warning",
            )
        else:
            self._emit(
                session,
                RepairPhase.READY_TO_RESTART,
                f"File writes complete; waiting {cfg.quiet_period:.0f}s for watchers to settle",
            )
        await self._pause(session, cfg.quiet_period)
        return True

    async def _backoff(self, session: RepairSession, iteration: int) -> None:
        """Restart-only mode: no agent hand-off, just an exponential backoff."""
        delay = self._config.repair.base_delay * 2 ** (iteration - 1)
        self._emit(
            session,
            RepairPhase.AWAITING_AGENT,
            f"Waiting {delay:.0f}s before restart attempt "
            f"{iteration}/{session.max_iterations}",
            detail={"delay": delay, "crash_log_path": session.log_path},
        )
        await self._pause(session, delay)
        self._emit(session, RepairPhase.READY_TO_RESTART, "Backoff elapsed; restarting")

    async def _prepare_restart(self, session: RepairSession, plan: DevServerPlan) -> None:
        report = await asyncio.to_thread(self._cleanup, session.project_path, plan.port)
        self._check_aborted(session)
        if report.locks_removed or report.processes_killed:
            self._emit(
                session,
                RepairPhase.READY_TO_RESTART,
                f"Cleaned up stale artifacts: {len(report.locks_removed)} lock(s), "
                f"{len(report.processes_killed)} process(es)",
                detail={
                    "locks_removed": report.locks_removed,
                    "processes_killed": report.processes_killed,
                },
            )

    async def _verify(self, session: RepairSession, result: StartResult) -> None:
        """Raises CrashError unless the restarted server holds up."""
        cwd = session.project_path
        if not result.ok:
            raise CrashError(f"Restart failed: {result.error}", log_path=session.log_path)

        self._emit(
            session,
            RepairPhase.VERIFYING_FIX,
            f"Verifying server health at {result.url}" if result.url else "Watching for crashes",
            detail={"url": result.url},
        )
        if result.url:
            session.health_url = result.url
            health = await self._health_check(result.url)
            if not health.healthy:
                reason = health.error or f"HTTP {health.status_code}"
                raise CrashError(f"Health check failed: {reason}", log_path=session.log_path)

        crash = await self._supervisor.wait_for_crash(
            cwd, self._config.timeouts.verification_window
        )
        if crash is not None:
            raise CrashError(
                f"Crashed again during verification (exit code {crash.exit_code})",
                exit_code=crash.exit_code,
                log_path=session.log_path,
            )
        status = self._supervisor.status(cwd)
        if status.status not in (DevServerStatus.RUNNING, DevServerStatus.STARTING):
            raise CrashError(
                "Dev server is not running after restart",
                exit_code=status.last_exit_code,
                log_path=session.log_path,
            )

    async def _resolve_plan(self, cwd: str) -> DevServerPlan | None:
        try:
            plan = await self._supervisor.resolve_plan(cwd)
        except Exception:
            logger.exception("Could not resolve a plan for %s", cwd)
            return None
        if plan is None or plan.confidence is Confidence.LOW:
            return None
        return plan

    async def _pause(self, session: RepairSession, seconds: float) -> None:
        """Sleep, waking early if the session is aborted."""
        if seconds > 0:
            try:
                await self._sessions.wait_for_phase(
                    session.repair_id, {RepairPhase.ABORTED}, seconds
                )
            except WatchTimeoutError:
                pass
        self._check_aborted(session)

    async def _default_health_check(self, url: str) -> HealthCheckResult:
        cfg = self._config.repair
        return await check_health(
            url,
            timeout=cfg.health_timeout,
            retries=cfg.health_retries,
            retry_delay=cfg.health_retry_delay,
        )

    # ------------------------------------------------------------------
    # External control
    # ------------------------------------------------------------------

    def report_progress(
        self,
        repair_id: str,
        phase: RepairPhase,
        files_changed: int = 0,
        lines_changed: int = 0,
        message: str = "",
    ) -> bool:
        """Agent progress signal. Only agent phases are accepted.

        Returns False for unknown sessions and out-of-order phases.
        """
        if phase not in AGENT_PHASES:
            return False
        session = self._sessions.get_by_repair_id(repair_id)
        if session is None or not can_transition(session.phase, phase):
            return False
        detail = None
        if phase is RepairPhase.AGENT_WROTE_FILES:
            detail = {"files_changed": files_changed, "lines_changed": lines_changed}
        self._emit(session, phase, message or f"Agent: {phase.value}", detail=detail)
        return True

    def abort(self, project_path: str, reason: str = "Repair aborted") -> bool:
        session = self._sessions.get(project_path)
        if session is None or session.phase.is_terminal:
            return False
        self._emit(session, RepairPhase.ABORTED, reason, level="warning")
        return True

    def acknowledge(self, project_path: str) -> None:
        """Explicit user action: re-enable auto-repair for a project."""
        self._needs_human.discard(project_path)
        self._cooldowns.pop(project_path, None)
        self._supervisor.clear_crash_history(project_path)
        logger.info("Auto-repair re-enabled for %s", project_path)

    def requires_human(self, project_path: str) -> bool:
        return project_path in self._needs_human

    def in_cooldown(self, project_path: str) -> bool:
        expires = self._cooldowns.get(project_path)
        if expires is None:
            return False
        if self._clock() >= expires:
            del self._cooldowns[project_path]
            return False
        return True

    def pending_task(self, project_path: str) -> RepairTask | None:
        """The task payload for agents that poll rather than get called."""
        session = self._sessions.get(project_path)
        if session is None or session.phase.is_terminal:
            return None
        cfg = self._config.repair
        log_name = os.path.basename(session.log_path)
        return RepairTask(
            repair_id=session.repair_id,
            project_path=project_path,
            log_path=session.log_path,
            exit_code=session.exit_code,
            crash_summary=f"Dev server exited with code {session.exit_code}; see {log_name}",
            iteration=session.iteration,
            max_iterations=session.max_iterations,
            phase=session.phase,
            health_url=session.health_url,
            max_files=cfg.max_files,
            max_lines=cfg.max_lines,
            instructions=[
                f"Read the crash log at {session.log_path}",
                "Report agent_started, then agent_reading_log and agent_applying_fix",
                "Fix the root cause with the smallest possible change",
                f"Stay within {cfg.max_files} files and {cfg.max_lines} changed lines",
                "Report agent_wrote_files with files_changed and lines_changed",
                "Do not restart the dev server yourself",
            ],
        )

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _check_aborted(self, session: RepairSession) -> None:
        if session.phase is RepairPhase.ABORTED:
            raise _RepairAborted()

    def _require_human(
        self,
        session: RepairSession,
        message: str,
        error: str | None = None,
        detail: dict[str, Any] | None = None,
    ) -> None:
        self._needs_human.add(session.project_path)
        detail = {**(detail or {}), "crash_log_path": session.log_path}
        self._emit(
            session,
            RepairPhase.FAILED_REQUIRES_HUMAN,
            message,
            level="error",
            error=error,
            detail=detail,
        )

    def _emit(
        self,
        session: RepairSession,
        phase: RepairPhase,
        message: str,
        level: str = "info",
        error: str | None = None,
        detail: dict[str, Any] | None = None,
    ) -> None:
        self._check_aborted(session)
        self._sessions.update_phase(session.repair_id, phase, message, detail)
        self._publish(
            RepairEvent(
                run_id=session.repair_id,
                repair_id=session.repair_id,
                project_path=session.project_path,
                phase=phase,
                iteration=session.iteration,
                max_iterations=session.max_iterations,
                message=message,
                level=level,
                error=error,
                detail=detail,
            )
        )

    def _emit_detached(self, project_path: str, message: str) -> None:
        """An ``aborted`` event for a crash that never got a session."""
        self._publish(
            RepairEvent(
                run_id=uuid.uuid4().hex,
                project_path=project_path,
                phase=RepairPhase.ABORTED,
                iteration=0,
                max_iterations=self._config.repair.max_iterations,
                message=message,
                level="warning",
            )
        )

    def _publish(self, event: RepairEvent) -> None:
        log = logger.warning if event.level in ("warning", "error") else logger.info
        log(
            "Repair [%s] %s (%d/%d): %s",
            os.path.basename(event.project_path),
            event.phase.value,
            event.iteration,
            event.max_iterations,
            event.message,
        )
        if self._wire:
            self._wire.send_repair(event.project_path, event.to_dict())
        for callback in list(self._callbacks):
            try:
                callback(event)
            except Exception:
                logger.exception("Repair event callback failed")
