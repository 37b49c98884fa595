"""Wire protocol: decouples process supervision from its consumers.

Events flow from the registries (PTY, dev server, repair loop, MCP
sessions) to whatever bridge is attached: an IPC layer, the CLI, tests.
Every event carries the key it belongs to (a PTY id or a project path)
so consumers subscribe per key instead of filtering a global firehose.
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field
from typing import Any


class EventType(enum.Enum):
    PTY_DATA = "pty_data"
    PTY_EXIT = "pty_exit"
    DEV_STATUS = "dev_status"
    DEV_OUTPUT = "dev_output"
    DEV_EXIT = "dev_exit"
    DEV_CRASH = "dev_crash"
    REPAIR = "repair"
    MCP_SESSION_CLOSED = "mcp_session_closed"


@dataclass
class WireEvent:
    """An event on the wire."""

    type: EventType
    key: str = ""
    data: dict[str, Any] = field(default_factory=dict)


@dataclass
class _Subscription:
    queue: asyncio.Queue[WireEvent | None]
    key: str | None
    types: frozenset[EventType] | None

    def wants(self, event: WireEvent) -> bool:
        if self.key is not None and event.key != self.key:
            return False
        if self.types is not None and event.type not in self.types:
            return False
        return True


class Wire:
    """Async message bus: registries -> subscribers.

    Multi-producer, multi-consumer broadcast with optional per-key and
    per-type filtering at subscribe time.
    """

    def __init__(self) -> None:
        self._subscribers: list[_Subscription] = []
        self._closed: bool = False

    def send(self, event: WireEvent) -> None:
        """Send an event to all matching subscribers.

        Silently drops events after ``close()`` has been called.
        """
        if self._closed:
            return
        for sub in self._subscribers:
            if sub.wants(event):
                sub.queue.put_nowait(event)

    def send_pty_data(self, session_id: str, data: str) -> None:
        self.send(WireEvent(type=EventType.PTY_DATA, key=session_id, data={"data": data}))

    def send_pty_exit(
        self,
        session_id: str,
        exit_code: int | None,
        last_output: str = "",
    ) -> None:
        """Notify subscribers that a PTY session exited."""
        self.send(
            WireEvent(
                type=EventType.PTY_EXIT,
                key=session_id,
                data={
                    "session_id": session_id,
                    "exit_code": exit_code,
                    "last_output": last_output[:500],
                },
            )
        )

    def send_dev_status(
        self,
        project_path: str,
        status: str,
        message: str = "",
        url: str | None = None,
    ) -> None:
        self.send(
            WireEvent(
                type=EventType.DEV_STATUS,
                key=project_path,
                data={"status": status, "message": message, "url": url},
            )
        )

    def send_dev_output(self, project_path: str, data: str) -> None:
        self.send(WireEvent(type=EventType.DEV_OUTPUT, key=project_path, data={"data": data}))

    def send_dev_exit(self, project_path: str, exit_code: int | None) -> None:
        self.send(
            WireEvent(type=EventType.DEV_EXIT, key=project_path, data={"exit_code": exit_code})
        )

    def send_dev_crash(
        self, project_path: str, exit_code: int | None, output_tail: str = ""
    ) -> None:
        self.send(
            WireEvent(
                type=EventType.DEV_CRASH,
                key=project_path,
                data={"exit_code": exit_code, "output_tail": output_tail[-2000:]},
            )
        )

    def send_repair(self, project_path: str, payload: dict[str, Any]) -> None:
        self.send(WireEvent(type=EventType.REPAIR, key=project_path, data=payload))

    def send_mcp_closed(self, session_id: str, reason: str) -> None:
        self.send(
            WireEvent(
                type=EventType.MCP_SESSION_CLOSED,
                key=session_id,
                data={"reason": reason},
            )
        )

    def subscribe(
        self,
        key: str | None = None,
        types: set[EventType] | None = None,
    ) -> asyncio.Queue[WireEvent | None]:
        """Subscribe to events. Returns a queue to read from.

        Args:
            key: Only deliver events for this PTY id / project path.
            types: Only deliver these event types.
        """
        q: asyncio.Queue[WireEvent | None] = asyncio.Queue()
        self._subscribers.append(
            _Subscription(
                queue=q,
                key=key,
                types=frozenset(types) if types is not None else None,
            )
        )
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        """Unsubscribe from events."""
        self._subscribers = [s for s in self._subscribers if s.queue is not q]

    def close(self) -> None:
        """Signal all subscribers that the wire is closing."""
        self._closed = True
        for sub in self._subscribers:
            sub.queue.put_nowait(None)
