"""Process-level helpers backed by psutil: liveness, force kill, RSS sampling."""

from __future__ import annotations

import logging

import psutil

logger = logging.getLogger(__name__)


def pid_alive(pid: int) -> bool:
    """Return ``True`` if *pid* exists and is not a zombie."""
    try:
        process = psutil.Process(pid)
        return process.is_running() and process.status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.ZombieProcess):
        return False
    except psutil.AccessDenied:
        # Exists but belongs to someone else
        return True


def force_kill(pid: int) -> bool:
    """Kill *pid* and its children. Returns ``True`` if the kill was delivered."""
    try:
        process = psutil.Process(pid)
        for child in process.children(recursive=True):
            try:
                child.kill()
            except psutil.NoSuchProcess:
                pass
        process.kill()
        return True
    except psutil.NoSuchProcess:
        return True
    except psutil.AccessDenied:
        logger.error("Access denied killing pid %d", pid)
        return False


def process_rss() -> int:
    """Resident set size of the current process in bytes."""
    return psutil.Process().memory_info().rss
