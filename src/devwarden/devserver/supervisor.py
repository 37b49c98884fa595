"""Dev Server Supervisor: one dev server process per project path.

Lifecycle per project:
    stopped -> starting -> running -> stopped        (clean stop / exit 0)
    starting|running -> error -> stopped             (crash)

The supervisor is the single source of truth for dev server state. Every
tab pointing at a project sees the same record; readers only ever get
frozen ``DevServerProcess`` snapshots.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import os
import re
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TYPE_CHECKING

from devwarden.command import (
    ALLOWED_BINS,
    Confidence,
    DevServerPlan,
    SafeCommand,
    command_to_string,
    parse_command_string,
    validate_command,
    validate_plan,
)
from devwarden.config import WardenConfig
from devwarden.devserver.cleanup import cleanup_stale_dev_server
from devwarden.devserver.process import DevServerChild
from devwarden.devserver.resolve import PackageJsonResolver, PlanResolver
from devwarden.devserver.store import DevConfigStore
from devwarden.errors import SpawnError, WatchTimeoutError
from devwarden.pty.buffer import RollingBuffer

if TYPE_CHECKING:
    from devwarden.session.wire import Wire

logger = logging.getLogger(__name__)

URL_PATTERN = re.compile(r"https?://(?:localhost|127\.0\.0\.1|0\.0\.0\.0|\[::1\]):\d+")
_PORT_HINT = re.compile(r"(?:port\s+|:)(\d{4,5})", re.IGNORECASE)

Launcher = Callable[[SafeCommand, str, dict[str, str]], Awaitable[Any]]
CrashCallback = Callable[["CrashEvent"], None]


class DevServerStatus(enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    ERROR = "error"


@dataclass(frozen=True)
class DevServerProcess:
    """Snapshot of a project's dev server."""

    project_path: str
    status: DevServerStatus = DevServerStatus.STOPPED
    pid: int | None = None
    url: str | None = None
    started_at: float | None = None
    last_exit_code: int | None = None
    last_error: str | None = None
    command: str | None = None
    url_unknown: bool = False


@dataclass
class StartResult:
    pid: int | None = None
    url: str | None = None
    error: str | None = None
    error_code: str | None = None
    needs_configuration: bool = False
    plan: DevServerPlan | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class CrashEvent:
    """A supervised dev server exited with a non-zero code."""

    project_path: str
    exit_code: int | None
    output_tail: str = ""
    command: SafeCommand | None = None
    plan: DevServerPlan | None = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class _Record:
    project_path: str
    output: RollingBuffer
    status: DevServerStatus = DevServerStatus.STOPPED
    pid: int | None = None
    url: str | None = None
    url_unknown: bool = False
    started_at: float | None = None
    last_exit_code: int | None = None
    last_error: str | None = None
    plan: DevServerPlan | None = None
    child: Any = None
    monitor: asyncio.Task | None = None
    stop_task: asyncio.Task | None = None
    ready: asyncio.Event = field(default_factory=asyncio.Event)
    stopping: bool = False
    in_startup: bool = False

    def snapshot(self) -> DevServerProcess:
        return DevServerProcess(
            project_path=self.project_path,
            status=self.status,
            pid=self.pid,
            url=self.url,
            started_at=self.started_at,
            last_exit_code=self.last_exit_code,
            last_error=self.last_error,
            command=command_to_string(self.plan.command) if self.plan else None,
            url_unknown=self.url_unknown,
        )


def classify_startup_error(output: str) -> str | None:
    """Recognise the startup failures that can be fixed without a human."""
    lower = output.lower()
    if "ebadf" in lower or "bad file descriptor" in lower:
        return "ebadf"
    if (
        "cannot find module" in lower
        or "module not found" in lower
        or "err_module_not_found" in lower
        or "could not resolve" in lower
        or ("enoent" in lower and "node_modules" in lower)
    ):
        return "missing-deps"
    if "eaddrinuse" in lower or ("port" in lower and "already in use" in lower):
        return "port-in-use"
    return None


def extract_port(output: str) -> int | None:
    match = _PORT_HINT.search(output)
    return int(match.group(1)) if match else None


class DevServerSupervisor:
    """Owns every dev server child process, keyed by project path."""

    def __init__(
        self,
        config: WardenConfig | None = None,
        wire: Wire | None = None,
        resolver: PlanResolver | None = None,
        store: DevConfigStore | None = None,
        launcher: Launcher | None = None,
    ) -> None:
        self._config = config or WardenConfig()
        self._wire = wire
        self._store = store
        self._resolver = resolver or PackageJsonResolver(store)
        self._launcher = launcher or DevServerChild.launch
        self._records: dict[str, _Record] = {}
        self._crash_history: dict[str, list[float]] = {}
        self._crash_callbacks: list[CrashCallback] = []
        self._crash_waiters: dict[str, list[asyncio.Future]] = {}

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start(self, cwd: str, command: str | None = None) -> StartResult:
        """Start the dev server for ``cwd``.

        With an explicit ``command`` string the command is parsed and
        validated; otherwise the plan resolver decides. A low-confidence
        plan is never launched: the result asks for configuration instead.
        """
        if not cwd or not os.path.isabs(cwd):
            return StartResult(
                error=f'Project path must be absolute, got: "{cwd}"',
                error_code="INVALID_CWD",
            )

        claimed = self._claim(cwd)
        if isinstance(claimed, StartResult):
            return claimed
        record = claimed

        if command is not None:
            cmd = parse_command_string(command)
            if cmd is None:
                self._release(record, f'Invalid command "{command}"')
                return StartResult(
                    error=(
                        f'Invalid command "{command}". Allowed binaries: '
                        f"{', '.join(sorted(ALLOWED_BINS))}. "
                        "Shell operators are not permitted."
                    ),
                    error_code="INVALID_COMMAND",
                )
            plan = DevServerPlan(
                cwd=cwd,
                manager=cmd.bin,
                command=cmd,
                confidence=Confidence.HIGH,
                reasons=["Explicit command"],
            )
        else:
            try:
                plan = await self.resolve_plan(cwd)
            except Exception as e:
                logger.exception("Plan resolver failed for %s", cwd)
                self._release(record, f"Plan resolution failed: {e}")
                return StartResult(
                    error=f"Plan resolution failed: {e}",
                    error_code="DEV_COMMAND_UNRESOLVED",
                    needs_configuration=True,
                )
            if plan is None or plan.confidence is Confidence.LOW:
                self._release(record, "Dev command needs configuration")
                logger.info("Refusing to auto-start %s: low confidence plan", cwd)
                return StartResult(
                    error="Could not determine the dev command with confidence. "
                    "Configure it explicitly.",
                    error_code="DEV_COMMAND_UNRESOLVED",
                    needs_configuration=True,
                    plan=plan,
                )

        return await self._run_startup(record, plan)

    async def start_plan(self, plan: DevServerPlan) -> StartResult:
        """Start from a ready-made plan (validated again before launch)."""
        if not plan.cwd or not os.path.isabs(plan.cwd):
            return StartResult(
                error=f'Project path must be absolute, got: "{plan.cwd}"',
                error_code="INVALID_CWD",
            )
        claimed = self._claim(plan.cwd)
        if isinstance(claimed, StartResult):
            return claimed
        return await self._run_startup(claimed, plan)

    async def restart(self, plan: DevServerPlan) -> StartResult:
        await self.stop(plan.cwd)
        return await self.start_plan(plan)

    async def resolve_plan(self, cwd: str) -> DevServerPlan | None:
        return await asyncio.to_thread(self._resolver.resolve, cwd)

    def _claim(self, cwd: str) -> _Record | StartResult:
        """Mark ``cwd`` as starting, or explain why it cannot start.

        Runs without suspending, so two rapid ``start`` calls can never
        both pass the check.
        """
        record = self._records.get(cwd)
        if record is not None and record.status in (
            DevServerStatus.STARTING,
            DevServerStatus.RUNNING,
        ):
            state = record.status.value
            logger.info("Dev server for %s is already %s", cwd, state)
            return StartResult(
                pid=record.pid,
                url=record.url,
                error=f"Dev server is already {state} for this project",
                error_code="ALREADY_RUNNING",
            )
        if self.is_in_crash_loop(cwd):
            cfg = self._config.devserver
            logger.warning("Crash loop detected for %s, refusing to start", cwd)
            self._send_status(cwd, DevServerStatus.ERROR, "Crash loop detected")
            return StartResult(
                error=(
                    f"Dev server crashed {cfg.crash_loop_max} times in the last "
                    f"{cfg.crash_loop_window:.0f}s. Fix errors first."
                ),
                error_code="CRASH_LOOP",
            )

        if record is None:
            record = _Record(
                project_path=cwd,
                output=RollingBuffer(max_lines=self._config.devserver.output_lines),
            )
            self._records[cwd] = record
        record.status = DevServerStatus.STARTING
        record.stopping = False
        record.stop_task = None
        record.url = None
        record.url_unknown = False
        record.last_error = None
        record.in_startup = True
        self._send_status(cwd, DevServerStatus.STARTING, "Starting dev server...")
        return record

    def _release(self, record: _Record, reason: str) -> None:
        record.in_startup = False
        record.last_error = reason
        if record.child is None:
            record.status = DevServerStatus.STOPPED
            self._send_status(record.project_path, DevServerStatus.STOPPED, reason)

    async def _run_startup(self, record: _Record, plan: DevServerPlan) -> StartResult:
        cwd = record.project_path
        cfg = self._config.devserver
        record.plan = plan
        record.output.clear()

        for attempt in range(cfg.startup_retries + 1):
            validation = validate_plan(plan)
            if not validation.ok:
                logger.warning("Plan validation failed for %s: %s", cwd, validation.error)
                self._release(record, f"Validation error: {validation.error}")
                return StartResult(
                    error=f"Validation error: {validation.error}",
                    error_code="INVALID_PLAN",
                    plan=plan,
                )

            logger.info(
                "Spawning for %s: %s (attempt %d)", cwd, command_to_string(plan.command), attempt + 1
            )
            try:
                child = await self._launcher(plan.command, plan.launch_cwd, self._build_env())
            except SpawnError as e:
                logger.error("Spawn failed for %s: %s", cwd, e)
                self._record_failure(cwd, str(e))
                self._release(record, str(e))
                return StartResult(error=str(e), error_code="SPAWN_FAILED", plan=plan)

            if record.stopping:
                # stop() raced the launch; the new child is ours to clean up.
                child.force_kill()
                self._release(record, "Stopped during startup")
                return StartResult(error="Dev server was stopped during startup", plan=plan)

            record.child = child
            record.pid = child.pid
            record.started_at = time.time()
            record.ready = asyncio.Event()
            record.monitor = asyncio.create_task(self._monitor(record, child))

            ready_wait = asyncio.ensure_future(record.ready.wait())
            await asyncio.wait(
                {ready_wait, record.monitor},
                timeout=cfg.startup_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            ready_wait.cancel()
            record.in_startup = False
            exited = record.monitor.done()

            if record.child is not child:
                return StartResult(error="Dev server was stopped during startup", plan=plan)

            if record.url is not None:
                if exited:
                    self._handle_exit(record, child, child.returncode)
                return StartResult(pid=child.pid, url=record.url, plan=plan)

            if not exited:
                logger.warning("No URL detected for %s within %.0fs", cwd, cfg.startup_timeout)
                record.url_unknown = True
                self._send_status(cwd, DevServerStatus.STARTING, "Server started (URL not detected)")
                return StartResult(pid=child.pid, url=None, plan=plan)

            # Exited before becoming ready.
            code = child.returncode
            record.child = None
            record.pid = None
            output = record.output.read_all()
            if attempt < cfg.startup_retries and await self._self_heal(record, plan, output):
                record.in_startup = True
                record.output.clear()
                continue

            message = f"Dev server crashed on startup (exit code {code})"
            logger.warning("%s: %s", cwd, message)
            self._crash(record, code, message, plan)
            return StartResult(error=f"{message}\n\n{output[-500:]}", error_code="STARTUP_CRASH", plan=plan)

        message = "Could not start the dev server after multiple attempts"
        self._crash(record, record.last_exit_code, message, plan)
        return StartResult(error=message, error_code="STARTUP_CRASH", plan=plan)

    async def _self_heal(self, record: _Record, plan: DevServerPlan, output: str) -> bool:
        """Try to fix a startup failure. Returns True if a retry makes sense."""
        cwd = record.project_path
        kind = classify_startup_error(output)
        if kind == "ebadf":
            logger.info("EBADF starting %s, retrying", cwd)
            self._send_status(cwd, DevServerStatus.STARTING, "File descriptor error, retrying...")
            await asyncio.sleep(0.5)
            return True
        if kind == "missing-deps":
            self._send_status(cwd, DevServerStatus.STARTING, "Dependencies missing, installing...")
            if await self._install_deps(record, plan):
                return True
            self._record_failure(cwd, "Dependency installation failed")
            return False
        if kind == "port-in-use":
            port = extract_port(output) or plan.port
            if port:
                logger.info("Port %d in use for %s, freeing it", port, cwd)
                self._send_status(cwd, DevServerStatus.STARTING, f"Port {port} in use, freeing it...")
                await asyncio.to_thread(cleanup_stale_dev_server, cwd, port)
                await asyncio.sleep(1.0)
                return True
        return False

    async def _install_deps(self, record: _Record, plan: DevServerPlan) -> bool:
        cmd = SafeCommand(bin=plan.manager, args=("install",))
        if not validate_command(cmd).ok:
            logger.warning("Refusing to install with %r", plan.manager)
            return False
        logger.info("Installing dependencies for %s with %s", record.project_path, plan.manager)
        try:
            child = await self._launcher(cmd, plan.launch_cwd, self._build_env())
        except SpawnError as e:
            logger.error("Dependency install failed to start: %s", e)
            return False
        reader = asyncio.create_task(
            child.read_output(lambda data: self._publish_output(record, data))
        )
        try:
            code = await child.wait(timeout=self._config.devserver.install_timeout)
        except WatchTimeoutError:
            logger.error("Dependency install timed out for %s", record.project_path)
            child.force_kill()
            reader.cancel()
            return False
        await asyncio.gather(reader, return_exceptions=True)
        logger.info("Dependency install exited with code %s", code)
        return code == 0

    # ------------------------------------------------------------------
    # Output and exit
    # ------------------------------------------------------------------

    async def _monitor(self, record: _Record, child: Any) -> int | None:
        reader = asyncio.create_task(
            child.read_output(lambda data: self._on_output(record, child, data))
        )
        code = await child.wait()
        try:
            await asyncio.wait_for(reader, timeout=1.0)
        except asyncio.TimeoutError:
            reader.cancel()
        except Exception:
            logger.exception("Output reader failed for %s", record.project_path)
        record.output.flush()
        if not record.in_startup:
            self._handle_exit(record, child, code)
        return code

    def _on_output(self, record: _Record, child: Any, data: str) -> None:
        if record.child is not child:
            return
        self._publish_output(record, data)
        if record.url is None:
            match = URL_PATTERN.search(data)
            if match:
                self._mark_ready(record, match.group(0))

    def _publish_output(self, record: _Record, data: str) -> None:
        record.output.append_text(data)
        if self._wire:
            self._wire.send_dev_output(record.project_path, data)

    def _mark_ready(self, record: _Record, url: str) -> None:
        cwd = record.project_path
        record.url = url
        record.url_unknown = False
        record.status = DevServerStatus.RUNNING
        record.ready.set()
        logger.info("Dev server for %s ready at %s", cwd, url)
        self._send_status(cwd, DevServerStatus.RUNNING, "Dev server ready", url)
        plan = record.plan
        if self._store is not None and plan is not None:
            try:
                self._store.record_success(
                    cwd,
                    plan.command,
                    port=plan.port,
                    framework=plan.detection.framework,
                    script_name=plan.detection.script,
                    spawn_cwd=plan.spawn_cwd,
                )
            except OSError as e:
                logger.warning("Could not persist last-known-good for %s: %s", cwd, e)

    def _handle_exit(self, record: _Record, child: Any, code: int | None) -> None:
        """Apply an exit to the record. Stale children are ignored."""
        if record.child is not child:
            return
        cwd = record.project_path
        record.child = None
        record.pid = None
        record.url = None
        record.url_unknown = False
        record.last_exit_code = code
        if self._wire:
            self._wire.send_dev_exit(cwd, code)

        if record.stopping or code is None or code == 0:
            logger.info("Dev server for %s exited (code=%s)", cwd, code)
            record.status = DevServerStatus.STOPPED
            self._send_status(cwd, DevServerStatus.STOPPED, "Dev server stopped")
            self._resolve_waiters(cwd, None)
            return

        logger.warning("Dev server for %s crashed (code=%s)", cwd, code)
        self._crash(record, code, f"Process exited with code {code}", record.plan)

    def _crash(
        self,
        record: _Record,
        code: int | None,
        message: str,
        plan: DevServerPlan | None,
    ) -> None:
        cwd = record.project_path
        record.child = None
        record.pid = None
        record.in_startup = False
        record.last_exit_code = code
        record.last_error = message
        record.status = DevServerStatus.ERROR
        self._send_status(cwd, DevServerStatus.ERROR, message)
        self._record_crash(cwd)
        self._record_failure(cwd, message)

        event = CrashEvent(
            project_path=cwd,
            exit_code=code,
            output_tail="\n".join(record.output.read_tail(200)),
            command=plan.command if plan else None,
            plan=plan,
        )
        if self._wire:
            self._wire.send_dev_crash(cwd, code, event.output_tail)
        for callback in list(self._crash_callbacks):
            try:
                callback(event)
            except Exception:
                logger.exception("Crash callback failed for %s", cwd)
        self._resolve_waiters(cwd, event)

        record.status = DevServerStatus.STOPPED
        self._send_status(cwd, DevServerStatus.STOPPED, message)

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    async def stop(self, cwd: str) -> None:
        """SIGTERM, then SIGKILL after the grace window. Idempotent."""
        record = self._records.get(cwd)
        if record is None:
            return
        if record.stop_task is not None:
            await asyncio.shield(record.stop_task)
            return
        child = record.child
        record.stopping = True
        if child is None:
            if record.status is DevServerStatus.STARTING:
                return
            record.status = DevServerStatus.STOPPED
            return
        logger.info("Stopping dev server for %s (pid %d)", cwd, child.pid)
        record.stop_task = asyncio.create_task(self._terminate(record, child))
        await asyncio.shield(record.stop_task)

    async def _terminate(self, record: _Record, child: Any) -> None:
        timeouts = self._config.timeouts
        child.terminate()
        try:
            code = await child.wait(timeout=timeouts.kill_grace)
        except WatchTimeoutError:
            logger.warning(
                "Dev server for %s ignored SIGTERM, sending SIGKILL", record.project_path
            )
            child.force_kill()
            try:
                code = await child.wait(timeout=timeouts.force_reap)
            except WatchTimeoutError:
                logger.error("pid %d survived SIGKILL; dropping it", child.pid)
                code = None
        self._handle_exit(record, child, code)

    async def stop_all(self) -> None:
        cwds = [cwd for cwd, r in self._records.items() if r.child is not None]
        if cwds:
            logger.info("Stopping all dev servers (%d)", len(cwds))
        await asyncio.gather(*(self.stop(cwd) for cwd in cwds), return_exceptions=True)

    # ------------------------------------------------------------------
    # Crash bookkeeping
    # ------------------------------------------------------------------

    def _record_crash(self, cwd: str) -> None:
        now = time.monotonic()
        window = self._config.devserver.crash_loop_window
        history = [t for t in self._crash_history.get(cwd, []) if now - t < window]
        history.append(now)
        self._crash_history[cwd] = history

    def is_in_crash_loop(self, cwd: str) -> bool:
        now = time.monotonic()
        window = self._config.devserver.crash_loop_window
        recent = [t for t in self._crash_history.get(cwd, []) if now - t < window]
        return len(recent) >= self._config.devserver.crash_loop_max

    def clear_crash_history(self, cwd: str) -> None:
        self._crash_history.pop(cwd, None)

    def _record_failure(self, cwd: str, error: str) -> None:
        if self._store is None:
            return
        try:
            self._store.record_failure(cwd, error)
        except OSError as e:
            logger.warning("Could not persist failure for %s: %s", cwd, e)

    def on_crash(self, callback: CrashCallback) -> Callable[[], None]:
        """Register a crash listener. Returns an unsubscribe function."""
        self._crash_callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._crash_callbacks:
                self._crash_callbacks.remove(callback)

        return unsubscribe

    async def wait_for_crash(self, cwd: str, timeout: float) -> CrashEvent | None:
        """Watch ``cwd`` for ``timeout`` seconds.

        Returns the CrashEvent if the server crashes, None if it survives
        the window or exits cleanly.
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        self._crash_waiters.setdefault(cwd, []).append(future)
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            return None
        finally:
            waiters = self._crash_waiters.get(cwd, [])
            if future in waiters:
                waiters.remove(future)

    def _resolve_waiters(self, cwd: str, event: CrashEvent | None) -> None:
        for future in self._crash_waiters.pop(cwd, []):
            if not future.done():
                future.set_result(event)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def status(self, cwd: str) -> DevServerProcess:
        record = self._records.get(cwd)
        if record is None:
            return DevServerProcess(project_path=cwd)
        return record.snapshot()

    def list_processes(self) -> list[DevServerProcess]:
        return [r.snapshot() for r in self._records.values() if r.child is not None]

    def output_tail(self, cwd: str, lines: int = 100) -> list[str]:
        record = self._records.get(cwd)
        return record.output.read_tail(lines) if record else []

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _send_status(
        self,
        cwd: str,
        status: DevServerStatus,
        message: str = "",
        url: str | None = None,
    ) -> None:
        if self._wire:
            self._wire.send_dev_status(cwd, status.value, message, url)

    def _build_env(self) -> dict[str, str]:
        env = dict(os.environ)
        env["BROWSER"] = "none"
        current = env.get("PATH") or "/usr/bin:/bin"
        parts = current.split(os.pathsep)
        missing = [
            p for p in (os.path.expanduser(x) for x in self._config.devserver.extra_paths)
            if p not in parts
        ]
        if missing:
            env["PATH"] = os.pathsep.join([*missing, current])
        return env
