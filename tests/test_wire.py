"""Tests for devwarden.session.wire (Wire, WireEvent, EventType)."""

from __future__ import annotations

import asyncio

from devwarden.session.wire import EventType, Wire, WireEvent


# ---------------------------------------------------------------------------
# EventType
# ---------------------------------------------------------------------------


class TestEventType:
    def test_all_variants_exist(self) -> None:
        expected = {
            "PTY_DATA",
            "PTY_EXIT",
            "DEV_STATUS",
            "DEV_OUTPUT",
            "DEV_EXIT",
            "DEV_CRASH",
            "REPAIR",
            "MCP_SESSION_CLOSED",
        }
        assert {e.name for e in EventType} == expected

    def test_values_are_lowercase(self) -> None:
        for e in EventType:
            assert e.value == e.name.lower()


# ---------------------------------------------------------------------------
# WireEvent
# ---------------------------------------------------------------------------


class TestWireEvent:
    def test_defaults(self) -> None:
        event = WireEvent(type=EventType.REPAIR)
        assert event.key == ""
        assert event.data == {}


# ---------------------------------------------------------------------------
# Wire: send/subscribe
# ---------------------------------------------------------------------------


class TestWire:
    def test_send_to_subscriber(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_pty_data("pty-1", "hi")
        event = q.get_nowait()
        assert event is not None
        assert event.type == EventType.PTY_DATA
        assert event.key == "pty-1"
        assert event.data["data"] == "hi"

    def test_send_to_multiple_subscribers(self) -> None:
        wire = Wire()
        q1 = wire.subscribe()
        q2 = wire.subscribe()
        wire.send_dev_status("/p", "running")
        e1 = q1.get_nowait()
        e2 = q2.get_nowait()
        assert e1 is not None and e2 is not None
        assert e1.type == e2.type == EventType.DEV_STATUS

    def test_key_filter(self) -> None:
        wire = Wire()
        q = wire.subscribe(key="/a")
        wire.send_dev_output("/b", "other project")
        wire.send_dev_output("/a", "mine")
        event = q.get_nowait()
        assert event is not None
        assert event.data["data"] == "mine"
        assert q.empty()

    def test_type_filter(self) -> None:
        wire = Wire()
        q = wire.subscribe(types={EventType.DEV_CRASH})
        wire.send_dev_output("/a", "noise")
        wire.send_dev_crash("/a", 1, "boom")
        event = q.get_nowait()
        assert event is not None
        assert event.type == EventType.DEV_CRASH
        assert q.empty()

    def test_unsubscribe(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.unsubscribe(q)
        wire.send_dev_exit("/a", 0)
        assert q.empty()

    def test_unsubscribe_nonexistent_is_safe(self) -> None:
        wire = Wire()
        q: asyncio.Queue[WireEvent | None] = asyncio.Queue()
        wire.unsubscribe(q)


# ---------------------------------------------------------------------------
# Wire: closed-state guard
# ---------------------------------------------------------------------------


class TestWireClosedGuard:
    def test_close_sends_sentinel_to_all_subscribers(self) -> None:
        wire = Wire()
        q1 = wire.subscribe()
        q2 = wire.subscribe()
        wire.close()
        assert q1.get_nowait() is None
        assert q2.get_nowait() is None

    def test_send_after_close_is_dropped(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.close()
        q.get_nowait()  # drain sentinel
        wire.send_pty_data("pty-1", "too late")
        wire.send_repair("/a", {"phase": "aborted"})
        wire.send_mcp_closed("s", "ttl")
        assert q.empty()


# ---------------------------------------------------------------------------
# Wire: convenience methods
# ---------------------------------------------------------------------------


class TestWireConvenience:
    def test_send_pty_exit(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_pty_exit("pty-1", 0, last_output="done")
        event = q.get_nowait()
        assert event is not None
        assert event.type == EventType.PTY_EXIT
        assert event.data == {"session_id": "pty-1", "exit_code": 0, "last_output": "done"}

    def test_send_pty_exit_truncates_output(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_pty_exit("pty-2", 1, last_output="x" * 1000)
        event = q.get_nowait()
        assert event is not None
        assert len(event.data["last_output"]) == 500

    def test_send_dev_status_carries_url(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_dev_status("/a", "running", "ready", url="http://localhost:3000")
        event = q.get_nowait()
        assert event is not None
        assert event.data == {
            "status": "running",
            "message": "ready",
            "url": "http://localhost:3000",
        }

    def test_send_dev_crash_keeps_tail(self) -> None:
        wire = Wire()
        q = wire.subscribe()
        wire.send_dev_crash("/a", 1, "a" * 1000 + "b" * 2000)
        event = q.get_nowait()
        assert event is not None
        assert event.data["exit_code"] == 1
        assert event.data["output_tail"] == "b" * 2000

    def test_send_mcp_closed(self) -> None:
        wire = Wire()
        q = wire.subscribe(key="sess")
        wire.send_mcp_closed("sess", "ttl")
        event = q.get_nowait()
        assert event is not None
        assert event.type == EventType.MCP_SESSION_CLOSED
        assert event.data["reason"] == "ttl"
