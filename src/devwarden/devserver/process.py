"""Dev server child process: an asyncio subprocess in its own process group."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from typing import Callable

import psutil

from devwarden.command import SafeCommand
from devwarden.errors import SpawnError, WatchTimeoutError

logger = logging.getLogger(__name__)


class DevServerChild:
    """A dev server launched without a shell.

    stdout and stderr are piped and read concurrently; the child leads its
    own process group so ``terminate``/``force_kill`` reach the whole tree
    (package managers spawn the real server as a grandchild).
    """

    def __init__(self, proc: asyncio.subprocess.Process) -> None:
        self._proc = proc
        self._pgid: int | None
        try:
            self._pgid = os.getpgid(proc.pid)
        except ProcessLookupError:
            self._pgid = None

    @classmethod
    async def launch(
        cls,
        command: SafeCommand,
        cwd: str,
        env: dict[str, str],
    ) -> DevServerChild:
        """Start ``command`` in ``cwd``.

        Raises:
            SpawnError: the binary is missing or the OS refused the spawn.
        """
        try:
            proc = await asyncio.create_subprocess_exec(
                command.bin,
                *command.args,
                cwd=cwd,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            raise SpawnError(f"Failed to spawn {command.bin}: {e}") from e
        logger.debug("Launched %s (pid %d) in %s", command.bin, proc.pid, cwd)
        return cls(proc)

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode

    async def read_output(self, on_output: Callable[[str], None]) -> None:
        """Pump both pipes into ``on_output`` until they close."""

        async def pump(stream: asyncio.StreamReader | None) -> None:
            if stream is None:
                return
            while True:
                chunk = await stream.read(4096)
                if not chunk:
                    return
                on_output(chunk.decode("utf-8", errors="replace"))

        await asyncio.gather(pump(self._proc.stdout), pump(self._proc.stderr))

    async def wait(self, timeout: float | None = None) -> int:
        """Wait for exit and return the exit code.

        Raises:
            WatchTimeoutError: still running after ``timeout``.
        """
        try:
            return await asyncio.wait_for(self._proc.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            raise WatchTimeoutError(
                f"pid {self.pid} still running after {timeout}s"
            ) from None

    def terminate(self) -> None:
        self._signal(signal.SIGTERM)

    def force_kill(self) -> None:
        # Anything that escaped the group (setsid'd grandchildren) goes too.
        for child in self._descendants():
            try:
                child.kill()
            except psutil.NoSuchProcess:
                pass
            except psutil.AccessDenied:
                logger.debug("Not allowed to kill descendant %d", child.pid)
        self._signal(signal.SIGKILL)

    def _descendants(self) -> list[psutil.Process]:
        try:
            return psutil.Process(self.pid).children(recursive=True)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return []

    def _signal(self, sig: signal.Signals) -> None:
        if self._proc.returncode is not None and self._pgid is None:
            return
        try:
            if self._pgid is not None:
                os.killpg(self._pgid, sig)
            else:
                self._proc.send_signal(sig)
        except ProcessLookupError:
            logger.debug("Process group already gone: %s", self._pgid)
