"""Tests for devwarden.mcp session bookkeeping and the TTL reaper."""

from __future__ import annotations

import asyncio

import pytest

from devwarden.config import McpConfig
from devwarden.mcp import McpSessionRegistry, SessionReaper
from devwarden.session.wire import EventType, Wire


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def wire() -> Wire:
    return Wire()


@pytest.fixture
def registry(clock, wire) -> McpSessionRegistry:
    return McpSessionRegistry(wire=wire, clock=clock)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class TestSessions:
    def test_open(self, registry, clock) -> None:
        session = registry.open("/work/app", tab_id="tab-1")
        assert session.created_at == session.last_activity == clock.now
        assert len(session.session_id) >= 32
        assert registry.get(session.session_id).tab_id == "tab-1"
        assert len(registry) == 1

    def test_ids_are_unique(self, registry) -> None:
        ids = {registry.open("/work/app").session_id for _ in range(20)}
        assert len(ids) == 20

    def test_returned_sessions_are_copies(self, registry) -> None:
        session = registry.open("/work/app")
        session.last_activity = -1
        assert registry.get(session.session_id).last_activity != -1

    def test_touch(self, registry, clock) -> None:
        session = registry.open("/work/app")
        clock.advance(30)
        assert registry.touch(session.session_id)
        assert registry.get(session.session_id).last_activity == clock.now
        assert not registry.touch("unknown")

    def test_close_is_idempotent(self, registry, wire) -> None:
        q = wire.subscribe(types={EventType.MCP_SESSION_CLOSED})
        closed = []
        registry.on_close(lambda s, reason: closed.append((s.session_id, reason)))
        session = registry.open("/work/app")

        assert registry.close(session.session_id, reason="client")
        assert not registry.close(session.session_id)

        assert closed == [(session.session_id, "client")]
        event = q.get_nowait()
        assert event.key == session.session_id
        assert event.data == {"reason": "client"}
        assert q.empty()
        assert registry.get(session.session_id) is None

    def test_failing_close_callback_is_contained(self, registry) -> None:
        def boom(session, reason):
            raise RuntimeError("listener broke")

        registry.on_close(boom)
        session = registry.open("/work/app")
        assert registry.close(session.session_id)

    def test_unsubscribe_close_callback(self, registry) -> None:
        closed = []
        unsubscribe = registry.on_close(lambda s, reason: closed.append(reason))
        unsubscribe()
        registry.close(registry.open("/work/app").session_id)
        assert closed == []


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


class TestTokens:
    def test_resolve(self, registry) -> None:
        registry.register_token("tok", "/work/app", tab_id="tab-2")
        entry = registry.resolve_token("tok")
        assert entry.tab_id == "tab-2"
        assert entry.project_path == "/work/app"
        registry.unregister_token("tok")
        assert registry.resolve_token("tok") is None

    def test_closing_session_drops_its_token(self, registry) -> None:
        registry.register_token("tok", "/work/app")
        session = registry.open("/work/app", token="tok")
        registry.close(session.session_id)
        assert registry.resolve_token("tok") is None


# ---------------------------------------------------------------------------
# Reaping
# ---------------------------------------------------------------------------


class TestReap:
    def test_idle_sessions_reaped(self, registry, clock) -> None:
        idle = registry.open("/work/a")
        clock.advance(100)
        busy = registry.open("/work/b")

        clock.advance(1750)
        assert registry.reap(ttl=1800) == [idle.session_id]
        assert registry.get(busy.session_id) is not None

    def test_touch_slides_the_window(self, registry, clock) -> None:
        session = registry.open("/work/a")
        for _ in range(5):
            clock.advance(1000)
            registry.touch(session.session_id)
        assert registry.reap(ttl=1800) == []

    def test_boundary_is_exclusive(self, registry, clock) -> None:
        session = registry.open("/work/a")
        clock.advance(1800)
        assert registry.reap(ttl=1800) == []
        clock.advance(1)
        assert registry.reap(ttl=1800) == [session.session_id]

    def test_reap_closes_with_ttl_reason(self, registry, clock) -> None:
        reasons = []
        registry.on_close(lambda s, reason: reasons.append(reason))
        registry.open("/work/a")
        clock.advance(2000)
        registry.reap(ttl=1800)
        assert reasons == ["ttl"]

    def test_expired_tokens_dropped(self, registry, clock) -> None:
        registry.register_token("old", "/work/a")
        clock.advance(3600)
        registry.register_token("new", "/work/a")
        clock.advance(3700)
        registry.reap(ttl=1800, token_ttl=7200)
        assert registry.resolve_token("old") is None
        assert registry.resolve_token("new") is not None


class TestSessionReaper:
    def test_sweep_uses_config(self, registry, clock) -> None:
        reaper = SessionReaper(registry, McpConfig(session_ttl=10, token_ttl=20))
        registry.open("/work/a")
        registry.register_token("tok", "/work/a")
        clock.advance(25)
        assert len(reaper.sweep()) == 1
        assert registry.resolve_token("tok") is None

    async def test_background_sweeps(self, registry, clock) -> None:
        reaper = SessionReaper(registry, McpConfig(session_ttl=10, sweep_interval=0.01))
        registry.open("/work/a")
        clock.advance(60)

        reaper.start()
        reaper.start()
        assert reaper.running
        for _ in range(100):
            if len(registry) == 0:
                break
            await asyncio.sleep(0.01)
        await reaper.stop()

        assert len(registry) == 0
        assert not reaper.running

    async def test_stop_without_start(self, registry) -> None:
        await SessionReaper(registry).stop()
