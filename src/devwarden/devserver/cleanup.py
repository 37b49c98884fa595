"""Stale dev server cleanup, scoped to a single project directory.

Removes framework lock files and terminates orphaned processes that still
hold the dev server port, but only processes whose working directory is
at or under the project. Other projects are never touched.
"""

from __future__ import annotations

import logging
import os
import signal
from dataclasses import dataclass, field

import psutil

logger = logging.getLogger(__name__)

FRAMEWORK_LOCK_FILES: tuple[str, ...] = (
    ".next/dev/lock",
    ".nuxt/dev/lock",
)


@dataclass
class CleanupReport:
    locks_removed: list[str] = field(default_factory=list)
    processes_killed: list[int] = field(default_factory=list)


def cleanup_stale_dev_server(cwd: str, port: int | None = None) -> CleanupReport:
    """Blocking; call through ``asyncio.to_thread`` from async code."""
    report = CleanupReport(locks_removed=remove_framework_locks(cwd))
    if port:
        report.processes_killed = kill_stale_port_processes(cwd, port)
    return report


def remove_framework_locks(cwd: str) -> list[str]:
    removed = []
    for rel in FRAMEWORK_LOCK_FILES:
        try:
            os.unlink(os.path.join(cwd, rel))
        except FileNotFoundError:
            continue
        except OSError as e:
            logger.warning("Could not remove stale lock %s: %s", rel, e)
            continue
        removed.append(rel)
        logger.info("Removed stale lock: %s", rel)
    return removed


def _is_within(path: str, root: str) -> bool:
    root = os.path.realpath(root)
    path = os.path.realpath(path)
    return path == root or path.startswith(root + os.sep)


def listening_pids(port: int) -> set[int]:
    """Pids with a listening socket on ``port``."""
    try:
        conns = psutil.net_connections(kind="inet")
    except psutil.AccessDenied:
        logger.debug("Not allowed to list sockets; skipping port %d", port)
        return set()
    return {
        c.pid
        for c in conns
        if c.pid and c.status == psutil.CONN_LISTEN and c.laddr and c.laddr.port == port
    }


def kill_stale_port_processes(cwd: str, port: int) -> list[int]:
    killed = []
    own_pid = os.getpid()
    for pid in sorted(listening_pids(port)):
        if pid == own_pid:
            continue
        try:
            proc = psutil.Process(pid)
            proc_cwd = proc.cwd()
            if not _is_within(proc_cwd, cwd):
                logger.debug("Port %d held by pid %d outside project (%s)", port, pid, proc_cwd)
                continue
            proc.send_signal(signal.SIGTERM)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
        killed.append(pid)
        logger.info("Killed stale process %d on port %d (cwd: %s)", pid, port, proc_cwd)
    return killed
