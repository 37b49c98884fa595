"""Session reaper: periodic TTL sweep over MCP sessions."""

from __future__ import annotations

import asyncio
import logging

from devwarden.config import McpConfig
from devwarden.mcp.sessions import McpSessionRegistry

logger = logging.getLogger(__name__)


class SessionReaper:
    """Sweeps the registry every ``sweep_interval`` seconds."""

    def __init__(self, registry: McpSessionRegistry, config: McpConfig | None = None) -> None:
        self._registry = registry
        self._config = config or McpConfig()
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.debug(
            "Session reaper started (ttl=%ss, every %ss)",
            self._config.session_ttl,
            self._config.sweep_interval,
        )

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def sweep(self) -> list[str]:
        return self._registry.reap(
            ttl=self._config.session_ttl,
            token_ttl=self._config.token_ttl,
        )

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._config.sweep_interval)
            try:
                self.sweep()
            except Exception:
                logger.exception("Session sweep failed")
