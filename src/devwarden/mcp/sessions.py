"""MCP bridge session bookkeeping.

The HTTP transport lives elsewhere; this module only tracks which
sessions exist, when each was last used, and which auth tokens map to
which tab. ``touch`` must be called on every inbound request, whatever
its verb, so the TTL is a sliding idle window rather than a fixed
lifetime.
"""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass, replace
from typing import Callable, TYPE_CHECKING

if TYPE_CHECKING:
    from devwarden.session.wire import Wire

logger = logging.getLogger(__name__)

CloseCallback = Callable[["McpSession", str], None]


@dataclass
class McpSession:
    session_id: str
    project_path: str
    created_at: float
    last_activity: float
    tab_id: str | None = None
    token: str | None = None


@dataclass
class TokenEntry:
    tab_id: str | None
    project_path: str
    created_at: float


class McpSessionRegistry:
    """Single owner of McpSession records and bridge tokens."""

    def __init__(
        self,
        wire: Wire | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._wire = wire
        self._clock = clock
        self._sessions: dict[str, McpSession] = {}
        self._tokens: dict[str, TokenEntry] = {}
        self._close_callbacks: list[CloseCallback] = []

    def open(
        self,
        project_path: str,
        tab_id: str | None = None,
        token: str | None = None,
    ) -> McpSession:
        now = self._clock()
        session = McpSession(
            session_id=secrets.token_urlsafe(24),
            project_path=project_path,
            created_at=now,
            last_activity=now,
            tab_id=tab_id,
            token=token,
        )
        self._sessions[session.session_id] = session
        logger.info("MCP session %s opened for %s", session.session_id[:8], project_path)
        return replace(session)

    def touch(self, session_id: str) -> bool:
        """Record activity. Returns False for unknown (already reaped) sessions."""
        session = self._sessions.get(session_id)
        if session is None:
            return False
        session.last_activity = self._clock()
        return True

    def close(self, session_id: str, reason: str = "closed") -> bool:
        """Close a session. Idempotent: unknown ids return False."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        if session.token is not None:
            self._tokens.pop(session.token, None)
        logger.info("MCP session %s closed (%s)", session_id[:8], reason)
        if self._wire:
            self._wire.send_mcp_closed(session_id, reason)
        for callback in list(self._close_callbacks):
            try:
                callback(replace(session), reason)
            except Exception:
                logger.exception("MCP close callback failed for %s", session_id[:8])
        return True

    def get(self, session_id: str) -> McpSession | None:
        session = self._sessions.get(session_id)
        return replace(session) if session else None

    def list_sessions(self) -> list[McpSession]:
        return [replace(s) for s in self._sessions.values()]

    def on_close(self, callback: CloseCallback) -> Callable[[], None]:
        self._close_callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._close_callbacks:
                self._close_callbacks.remove(callback)

        return unsubscribe

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def register_token(
        self, token: str, project_path: str, tab_id: str | None = None
    ) -> None:
        self._tokens[token] = TokenEntry(
            tab_id=tab_id, project_path=project_path, created_at=self._clock()
        )

    def unregister_token(self, token: str) -> None:
        self._tokens.pop(token, None)

    def resolve_token(self, token: str) -> TokenEntry | None:
        entry = self._tokens.get(token)
        return replace(entry) if entry else None

    # ------------------------------------------------------------------
    # Reaping
    # ------------------------------------------------------------------

    def reap(
        self,
        ttl: float,
        token_ttl: float | None = None,
        now: float | None = None,
    ) -> list[str]:
        """Close sessions idle for more than ``ttl`` and drop old tokens.

        Returns the ids of the closed sessions.
        """
        now = self._clock() if now is None else now
        stale = [
            (sid, now - s.last_activity)
            for sid, s in self._sessions.items()
            if now - s.last_activity > ttl
        ]
        for session_id, idle in stale:
            logger.info("Reaping stale MCP session %s (idle %ds)", session_id[:8], idle)
            self.close(session_id, reason="ttl")

        if token_ttl is not None:
            expired = [t for t, e in self._tokens.items() if now - e.created_at > token_ttl]
            for token in expired:
                del self._tokens[token]
            if expired:
                logger.info("Dropped %d expired MCP tokens", len(expired))

        return [sid for sid, _ in stale]

    def __len__(self) -> int:
        return len(self._sessions)
