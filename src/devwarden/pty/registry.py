"""PTY Registry: owns the set of live interactive shell sessions."""

from __future__ import annotations

import asyncio
import errno
import logging
import os
import secrets
import shlex
import time
from dataclasses import dataclass, field
from typing import Any, Callable, TYPE_CHECKING

from devwarden.command import validate_shell
from devwarden.config import WardenConfig
from devwarden.errors import ValidationError, WatchTimeoutError
from devwarden.pty.buffer import RollingBuffer
from devwarden.pty.process import PTYProcess

if TYPE_CHECKING:
    from devwarden.session.wire import Wire

logger = logging.getLogger(__name__)

DataListener = Callable[[str], None]
ExitListener = Callable[[int | None], None]
Spawner = Callable[..., Any]

# errno values meaning the child went away between lookup and the call.
_GONE_ERRNOS = frozenset({errno.EBADF, errno.EIO})


def new_session_id() -> str:
    """A fresh, unguessable session id (128 bits from the OS CSPRNG)."""
    return f"pty-{secrets.token_hex(16)}"


@dataclass(frozen=True)
class PtySession:
    """Read-only snapshot of a live PTY session."""

    id: str
    pid: int
    cwd: str
    shell: str
    tab_id: str | None = None
    started_at: float = 0.0


@dataclass
class _Entry:
    snapshot: PtySession
    process: Any
    buffer: RollingBuffer
    data_listeners: list[DataListener] = field(default_factory=list)
    exit_listeners: list[ExitListener] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)
    flush_handle: asyncio.TimerHandle | None = None
    watch_task: asyncio.Task | None = None
    kill_task: asyncio.Task | None = None
    closing: bool = False
    finished: bool = False


class PTYRegistry:
    """Manages the lifecycle of interactive PTY sessions.

    The registry is the single owner of every session:
    - Ids are random tokens, never sequential
    - Callers only ever see frozen ``PtySession`` snapshots
    - Kills escalate SIGTERM -> SIGKILL after a grace window
    - Operations on unknown or dying sessions are no-ops
    - Exit notifications are fired via Wire (if attached)
    """

    def __init__(
        self,
        wire: Wire | None = None,
        config: WardenConfig | None = None,
        spawner: Spawner | None = None,
    ) -> None:
        self._config = config or WardenConfig()
        self._wire = wire
        self._spawner = spawner or PTYProcess.spawn
        self._sessions: dict[str, _Entry] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def spawn(
        self,
        shell: str | None = None,
        cwd: str | None = None,
        tab_id: str | None = None,
    ) -> str:
        """Spawn a new interactive shell and return its session id.

        Raises:
            ValidationError: the shell is not allowlisted or cwd is invalid.
            SpawnError: the OS could not allocate the PTY or process.
        """
        shell = shell or self._default_shell()
        validate_shell(shell).raise_for_error()

        cwd = cwd or os.path.expanduser("~")
        if not os.path.isabs(cwd):
            raise ValidationError(f'cwd must be an absolute path, got: "{cwd}"')
        if not os.path.isdir(cwd):
            raise ValidationError(f"cwd does not exist: {cwd}")

        if len(self._sessions) >= self._config.pty.max_sessions:
            oldest = next(iter(self._sessions))
            logger.warning("Max sessions reached, killing oldest: %s", oldest)
            await self.kill(oldest)

        process = self._spawner([shell], cwd, self._build_env(), 80, 24)

        session_id = new_session_id()
        entry = _Entry(
            snapshot=PtySession(
                id=session_id,
                pid=process.pid,
                cwd=cwd,
                shell=shell,
                tab_id=tab_id,
                started_at=time.time(),
            ),
            process=process,
            buffer=RollingBuffer(max_lines=self._config.pty.scrollback_lines),
        )
        self._sessions[session_id] = entry

        process.start(lambda data: self._on_output(entry, data))
        entry.watch_task = asyncio.create_task(self._watch(entry))

        logger.info("PTY %s started: %s (pid %d) in %s", session_id, shell, process.pid, cwd)
        return session_id

    async def kill(self, session_id: str) -> None:
        """Terminate a session: SIGTERM, then SIGKILL after the grace window.

        A second call while a kill is in flight waits for the first one.
        Unknown ids are a no-op.
        """
        entry = self._sessions.get(session_id)
        if entry is None:
            return
        if entry.kill_task is None:
            entry.closing = True
            entry.kill_task = asyncio.create_task(
                self._terminate(entry, self._config.timeouts.kill_grace)
            )
        await asyncio.shield(entry.kill_task)

    async def kill_all(self) -> None:
        """Kill every session within ``shutdown_grace`` plus ``force_reap``.

        Kills already in flight with the longer ``kill_grace`` are not
        waited out: whatever is still alive when the window closes is
        SIGKILLed and dropped.
        """
        entries = list(self._sessions.values())
        if not entries:
            return
        timeouts = self._config.timeouts
        grace = timeouts.shutdown_grace
        for entry in entries:
            if entry.kill_task is None:
                entry.closing = True
                entry.kill_task = asyncio.create_task(self._terminate(entry, grace))
        await asyncio.wait(
            [e.kill_task for e in entries], timeout=grace + timeouts.force_reap
        )

        for entry in entries:
            if entry.finished:
                continue
            logger.warning("PTY %s still alive at shutdown, sending SIGKILL", entry.snapshot.id)
            entry.process.force_kill()
            self._finish(entry, entry.process.exit_code)
        self._sessions.clear()
        logger.info("All PTY sessions cleaned up")

    async def _terminate(self, entry: _Entry, grace: float) -> None:
        process = entry.process
        process.terminate()
        try:
            await process.wait_exit(timeout=grace)
        except WatchTimeoutError:
            logger.warning(
                "PTY %s ignored SIGTERM for %.1fs, sending SIGKILL",
                entry.snapshot.id,
                grace,
            )
            process.force_kill()
            try:
                await process.wait_exit(timeout=self._config.timeouts.force_reap)
            except WatchTimeoutError:
                logger.error(
                    "PTY %s (pid %d) did not die after SIGKILL; dropping it",
                    entry.snapshot.id,
                    entry.snapshot.pid,
                )
        self._finish(entry, process.exit_code)

    async def _watch(self, entry: _Entry) -> None:
        code = await entry.process.wait_exit()
        self._finish(entry, code)

    def _finish(self, entry: _Entry, exit_code: int | None) -> None:
        """Flush, notify and forget a session. Runs once per session."""
        if entry.finished:
            return
        entry.finished = True
        session_id = entry.snapshot.id

        self._flush(entry)
        entry.buffer.flush()
        entry.process.close()

        if self._sessions.get(session_id) is entry:
            del self._sessions[session_id]

        if self._wire:
            tail = entry.buffer.read_tail(3)
            self._wire.send_pty_exit(session_id, exit_code, "\n".join(tail))

        for listener in entry.exit_listeners:
            try:
                listener(exit_code)
            except Exception:
                logger.exception("PTY exit listener failed for %s", session_id)

        logger.info("PTY %s exited with code %s", session_id, exit_code)

    # ------------------------------------------------------------------
    # I/O
    # ------------------------------------------------------------------

    def write(self, session_id: str, data: str) -> None:
        entry = self._live(session_id)
        if entry is None:
            return
        self._guard_io(entry, lambda: entry.process.write(data))

    def resize(self, session_id: str, cols: int, rows: int) -> None:
        entry = self._live(session_id)
        if entry is None or cols <= 0 or rows <= 0:
            return
        self._guard_io(entry, lambda: entry.process.resize(cols, rows))

    def set_cwd(self, session_id: str, cwd: str) -> None:
        """Change the shell's working directory by typing a ``cd``.

        Raises:
            ValidationError: if ``cwd`` is not an absolute single-line path.
        """
        if not os.path.isabs(cwd) or "\n" in cwd or "\r" in cwd:
            raise ValidationError(f"Invalid working directory: {cwd!r}")
        entry = self._live(session_id)
        if entry is None:
            return
        self._guard_io(entry, lambda: entry.process.write(f"cd {shlex.quote(cwd)}\r"))

    def _guard_io(self, entry: _Entry, op: Callable[[], None]) -> None:
        try:
            op()
        except OSError as e:
            if e.errno not in _GONE_ERRNOS:
                raise
            logger.debug("PTY %s went away during I/O: %s", entry.snapshot.id, e)

    def _on_output(self, entry: _Entry, data: str) -> None:
        entry.buffer.append_text(data)
        entry.pending.append(data)
        if entry.flush_handle is None:
            loop = asyncio.get_running_loop()
            entry.flush_handle = loop.call_later(
                self._config.pty.batch_ms / 1000, self._flush, entry
            )

    def _flush(self, entry: _Entry) -> None:
        if entry.flush_handle is not None:
            entry.flush_handle.cancel()
            entry.flush_handle = None
        if not entry.pending:
            return
        data = "".join(entry.pending)
        entry.pending.clear()
        for listener in list(entry.data_listeners):
            try:
                listener(data)
            except Exception:
                logger.exception("PTY data listener failed for %s", entry.snapshot.id)
        if self._wire:
            self._wire.send_pty_data(entry.snapshot.id, data)

    # ------------------------------------------------------------------
    # Listeners and lookup
    # ------------------------------------------------------------------

    def on_data(self, session_id: str, callback: DataListener) -> Callable[[], None]:
        """Register an output listener. Returns an unsubscribe function."""
        entry = self._sessions.get(session_id)
        if entry is None:
            return lambda: None
        entry.data_listeners.append(callback)
        return lambda: _discard(entry.data_listeners, callback)

    def on_exit(self, session_id: str, callback: ExitListener) -> Callable[[], None]:
        """Register an exit listener. Returns an unsubscribe function."""
        entry = self._sessions.get(session_id)
        if entry is None:
            return lambda: None
        entry.exit_listeners.append(callback)
        return lambda: _discard(entry.exit_listeners, callback)

    def get(self, session_id: str) -> PtySession | None:
        entry = self._sessions.get(session_id)
        return entry.snapshot if entry else None

    def scrollback(self, session_id: str, lines: int = 100) -> list[str]:
        entry = self._sessions.get(session_id)
        return entry.buffer.read_tail(lines) if entry else []

    def list_sessions(self, tab_id: str | None = None) -> list[PtySession]:
        return [
            e.snapshot
            for e in self._sessions.values()
            if tab_id is None or e.snapshot.tab_id == tab_id
        ]

    def __len__(self) -> int:
        return len(self._sessions)

    def _live(self, session_id: str) -> _Entry | None:
        entry = self._sessions.get(session_id)
        if entry is None or entry.closing:
            return None
        return entry

    # ------------------------------------------------------------------
    # Environment
    # ------------------------------------------------------------------

    def _default_shell(self) -> str:
        configured = self._config.pty.default_shell
        if configured:
            return configured
        env_shell = os.environ.get("SHELL", "")
        if validate_shell(env_shell).ok:
            return env_shell
        return "/bin/bash" if os.path.exists("/bin/bash") else "/bin/sh"

    def _build_env(self) -> dict[str, str]:
        env = {k: v for k, v in os.environ.items() if k not in self._config.pty.strip_env}
        env["TERM"] = "xterm-256color"
        env["DEVWARDEN"] = "1"
        if self._config.pty.mcp_port is not None:
            env["DEVWARDEN_MCP_PORT"] = str(self._config.pty.mcp_port)
        return env


def _discard(listeners: list, callback: Callable) -> None:
    try:
        listeners.remove(callback)
    except ValueError:
        pass
