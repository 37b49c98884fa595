"""Shared fakes for dev server supervision tests."""

from __future__ import annotations

import asyncio
from typing import Callable

import pytest

from devwarden.config import WardenConfig
from devwarden.errors import WatchTimeoutError

READY_OUTPUT = "  VITE v5.0.0  ready in 200 ms\n  ➜  Local:   http://localhost:5173/\n"


class FakeChild:
    """Quacks like DevServerChild; output and exit are driven by the test."""

    def __init__(self, pid: int) -> None:
        self.pid = pid
        self.returncode: int | None = None
        self.signals: list[str] = []
        self.ignore_term = False
        self._done = asyncio.Event()
        self._output: asyncio.Queue[str | None] = asyncio.Queue()

    def say(self, text: str) -> None:
        self._output.put_nowait(text)

    def exit(self, code: int | None) -> None:
        if self._done.is_set():
            return
        self.returncode = code
        self._output.put_nowait(None)
        self._done.set()

    async def read_output(self, on_output: Callable[[str], None]) -> None:
        while True:
            data = await self._output.get()
            if data is None:
                return
            on_output(data)

    async def wait(self, timeout: float | None = None) -> int | None:
        try:
            await asyncio.wait_for(self._done.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            raise WatchTimeoutError("still running") from None
        return self.returncode

    def terminate(self) -> None:
        self.signals.append("TERM")
        if not self.ignore_term:
            self.exit(-15)

    def force_kill(self) -> None:
        self.signals.append("KILL")
        self.exit(-9)


Behaviour = Callable[[FakeChild], None]


def ready(child: FakeChild) -> None:
    child.say(READY_OUTPUT)


def silent(child: FakeChild) -> None:
    child.say("compiling...\n")


def exits(output: str, code: int = 1) -> Behaviour:
    def behave(child: FakeChild) -> None:
        child.say(output)
        child.exit(code)

    return behave


class FakeLauncher:
    """Launcher that hands out FakeChild objects following a script.

    Each launch pops the next behaviour; once the script runs out every
    child becomes ready.
    """

    def __init__(self, *script: Behaviour) -> None:
        self.script = list(script)
        self.calls: list[tuple] = []
        self.children: list[FakeChild] = []

    async def __call__(self, command, cwd, env) -> FakeChild:
        child = FakeChild(pid=7000 + len(self.calls))
        self.calls.append((command, cwd, env))
        self.children.append(child)
        behaviour = self.script.pop(0) if self.script else ready
        behaviour(child)
        return child

    @property
    def commands(self) -> list:
        return [call[0] for call in self.calls]


@pytest.fixture
def fast_config(tmp_path) -> WardenConfig:
    config = WardenConfig(state_dir=str(tmp_path / "state"))
    config.devserver.startup_timeout = 2.0
    config.devserver.startup_retries = 1
    config.devserver.crash_loop_max = 3
    config.timeouts.kill_grace = 0.05
    config.timeouts.shutdown_grace = 0.05
    config.timeouts.force_reap = 0.05
    config.timeouts.verification_window = 0.2
    return config


@pytest.fixture
def project(tmp_path) -> str:
    path = tmp_path / "app"
    path.mkdir()
    return str(path)
