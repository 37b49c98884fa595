"""Process tracker: read-only view over every process devwarden owns."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass

import psutil

from devwarden.devserver.supervisor import DevServerSupervisor
from devwarden.pty.registry import PTYRegistry

logger = logging.getLogger(__name__)


@dataclass
class ProcessInfo:
    pid: int
    kind: str  # "pty" | "devserver"
    label: str
    cwd: str
    started_at: float | None = None
    tab_id: str | None = None
    cpu: float | None = None
    memory: int | None = None


class ProcessTracker:
    """Aggregates PTY sessions and dev servers, enriched with CPU and RSS.

    CPU percentages are measured between successive calls, so the tracker
    keeps one ``psutil.Process`` per pid; the first sample of a new
    process reads 0.0.
    """

    def __init__(self, pty_registry: PTYRegistry, supervisor: DevServerSupervisor) -> None:
        self._ptys = pty_registry
        self._supervisor = supervisor
        self._procs: dict[int, psutil.Process] = {}

    async def list_processes(self, tab_id: str | None = None) -> list[ProcessInfo]:
        """All tracked processes.

        ``tab_id`` filters PTY sessions only; dev servers belong to a
        project, not a tab, so they are always listed.
        """
        infos = [
            ProcessInfo(
                pid=s.pid,
                kind="pty",
                label=os.path.basename(s.shell),
                cwd=s.cwd,
                started_at=s.started_at,
                tab_id=s.tab_id,
            )
            for s in self._ptys.list_sessions()
            if tab_id is None or s.tab_id == tab_id
        ]
        infos.extend(
            ProcessInfo(
                pid=p.pid,
                kind="devserver",
                label=p.command or "dev server",
                cwd=p.project_path,
                started_at=p.started_at,
            )
            for p in self._supervisor.list_processes()
            if p.pid is not None
        )
        await asyncio.to_thread(self._enrich, infos)
        return infos

    def _enrich(self, infos: list[ProcessInfo]) -> None:
        live = {info.pid for info in infos}
        for pid in list(self._procs):
            if pid not in live:
                del self._procs[pid]

        for info in infos:
            try:
                proc = self._procs.get(info.pid)
                if proc is None:
                    proc = psutil.Process(info.pid)
                    self._procs[info.pid] = proc
                with proc.oneshot():
                    info.cpu = proc.cpu_percent(interval=None)
                    info.memory = proc.memory_info().rss
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                self._procs.pop(info.pid, None)
                logger.debug("Could not sample pid %d", info.pid)
