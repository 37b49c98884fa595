"""PTY process: the OS-level pseudo-terminal primitive."""

from __future__ import annotations

import asyncio
import errno
import fcntl
import logging
import os
import pty
import signal
import struct
import subprocess
import termios
from typing import Callable

from devwarden.errors import SpawnError, WatchTimeoutError

logger = logging.getLogger(__name__)


def _acquire_controlling_tty() -> None:
    # Runs in the child after setsid(): make the PTY slave its terminal so
    # interactive shells get job control.
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


class PTYProcess:
    """A child process attached to a fresh pseudo-terminal.

    The child runs in its own session/process group (start_new_session),
    so signals are delivered to the whole tree the shell starts.

    Uses subprocess.Popen (not os.fork) to avoid deadlocks when spawned
    from within an asyncio event loop.
    """

    def __init__(self, proc: subprocess.Popen, master_fd: int) -> None:
        self._proc = proc
        self._master_fd = master_fd
        self._pgid = os.getpgid(proc.pid)
        self._exited = asyncio.Event()
        self._exit_code: int | None = None
        self._reader_task: asyncio.Task | None = None
        self._watch_task: asyncio.Task | None = None

    @classmethod
    def spawn(
        cls,
        argv: list[str],
        cwd: str,
        env: dict[str, str],
        cols: int = 80,
        rows: int = 24,
    ) -> PTYProcess:
        """Open a PTY pair and launch ``argv`` on the slave side.

        Raises:
            SpawnError: if the PTY or the process cannot be allocated.
        """
        try:
            master_fd, slave_fd = pty.openpty()
        except OSError as e:
            raise SpawnError(f"Could not allocate a pseudo-terminal: {e}") from e

        try:
            _set_winsize(slave_fd, cols, rows)
            proc = subprocess.Popen(
                argv,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                start_new_session=True,
                preexec_fn=_acquire_controlling_tty,
                env=env,
                cwd=cwd,
                close_fds=True,
            )
        except OSError as e:
            os.close(master_fd)
            raise SpawnError(f"Could not launch {argv[0]}: {e}") from e
        finally:
            os.close(slave_fd)

        return cls(proc, master_fd)

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def exited(self) -> bool:
        return self._exited.is_set()

    @property
    def exit_code(self) -> int | None:
        return self._exit_code

    def start(self, on_output: Callable[[str], None]) -> None:
        """Start the reader and exit watcher. Must run inside the event loop."""
        self._reader_task = asyncio.create_task(self._read_loop(on_output))
        self._watch_task = asyncio.create_task(self._watch_exit())

    async def _read_loop(self, on_output: Callable[[str], None]) -> None:
        """Continuously read output from the PTY master fd."""
        loop = asyncio.get_running_loop()
        while True:
            try:
                data = await loop.run_in_executor(None, os.read, self._master_fd, 4096)
            except OSError:
                # EIO once the slave side is closed: the child is gone.
                break
            if not data:
                break
            on_output(data.decode("utf-8", errors="replace"))

    async def _watch_exit(self) -> None:
        loop = asyncio.get_running_loop()
        code = await loop.run_in_executor(None, self._proc.wait)
        if self._reader_task is not None:
            # Drain what the child wrote before it died.
            try:
                await asyncio.wait_for(asyncio.shield(self._reader_task), timeout=0.5)
            except asyncio.TimeoutError:
                logger.debug("PTY reader for pid %d still blocked after exit", self.pid)
        self._exit_code = code
        self._exited.set()
        self.close()

    async def wait_exit(self, timeout: float | None = None) -> int | None:
        """Wait for the process to exit and return its exit code.

        Raises:
            WatchTimeoutError: if it is still running after ``timeout``.
        """
        try:
            await asyncio.wait_for(self._exited.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            raise WatchTimeoutError(
                f"pid {self.pid} still running after {timeout}s"
            ) from None
        return self._exit_code

    def write(self, data: str) -> None:
        os.write(self._master_fd, data.encode("utf-8"))

    def resize(self, cols: int, rows: int) -> None:
        # The kernel delivers SIGWINCH to the foreground process group.
        _set_winsize(self._master_fd, cols, rows)

    def terminate(self) -> None:
        self._signal(signal.SIGTERM)

    def force_kill(self) -> None:
        self._signal(signal.SIGKILL)

    def _signal(self, sig: signal.Signals) -> None:
        try:
            os.killpg(self._pgid, sig)
            logger.debug("Sent %s to pgid %d", sig.name, self._pgid)
        except ProcessLookupError:
            logger.debug("Process group already gone: %d", self._pgid)

    def close(self) -> None:
        """Close the master side of the PTY. Safe to call more than once."""
        if self._master_fd < 0:
            return
        try:
            os.close(self._master_fd)
        except OSError as e:
            if e.errno != errno.EBADF:
                raise
        self._master_fd = -1


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))
