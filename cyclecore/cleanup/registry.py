"""Resource registry: the four tracking sets drained by the cleanup pipeline.

Producers (task executors, the browser pool, session factories) receive the
registry by injection and register what they acquire. Only the cleanup
pipeline drains it. Every registered browser, memory reference and session
must satisfy :class:`Disposable`; this is checked at registration time.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class Disposable(Protocol):
    """Anything with a ``close()``; the result may be awaitable."""

    def close(self) -> Any: ...


@dataclass
class BrowserEntry:
    id: str
    handle: Disposable
    pid: int | None = None
    registered_at: float = field(default_factory=time.monotonic)


@dataclass
class MemoryRefEntry:
    id: str
    resource: Disposable
    size_bytes: int = 0
    registered_at: float = field(default_factory=time.monotonic)


@dataclass
class TempFileEntry:
    path: Path
    metadata: dict = field(default_factory=dict)
    registered_at: float = field(default_factory=time.monotonic)


@dataclass
class SessionEntry:
    id: str
    session: Disposable
    registered_at: float = field(default_factory=time.monotonic)


def _require_disposable(kind: str, resource_id: str, obj: object) -> None:
    if not isinstance(obj, Disposable):
        raise TypeError(
            f"{kind} {resource_id!r} must provide close(); got {type(obj).__name__}"
        )


class ResourceRegistry:
    """Tracks resources acquired during a cycle until the pipeline releases them."""

    def __init__(self) -> None:
        self.browsers: dict[str, BrowserEntry] = {}
        self.memory_refs: dict[str, MemoryRefEntry] = {}
        self.temp_files: dict[str, TempFileEntry] = {}
        self.sessions: dict[str, SessionEntry] = {}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_browser(self, browser_id: str, handle: Disposable, *, pid: int | None = None) -> None:
        _require_disposable("Browser", browser_id, handle)
        self.browsers[browser_id] = BrowserEntry(id=browser_id, handle=handle, pid=pid)
        logger.debug("Browser registered for cleanup: %s (pid=%s)", browser_id, pid)

    def register_memory_ref(self, ref_id: str, resource: Disposable, *, size_bytes: int = 0) -> None:
        _require_disposable("Memory reference", ref_id, resource)
        self.memory_refs[ref_id] = MemoryRefEntry(id=ref_id, resource=resource, size_bytes=size_bytes)
        logger.debug("Memory reference registered: %s (%dKB)", ref_id, size_bytes // 1024)

    def register_temp_file(self, path: str | Path, **metadata: object) -> None:
        file_path = Path(path)
        self.temp_files[str(file_path)] = TempFileEntry(path=file_path, metadata=dict(metadata))
        logger.debug("Temp file registered: %s", file_path)

    def register_session(self, session_id: str, session: Disposable) -> None:
        _require_disposable("Session", session_id, session)
        self.sessions[session_id] = SessionEntry(id=session_id, session=session)
        logger.debug("Session registered: %s", session_id)

    # ------------------------------------------------------------------
    # Producer-side release
    # ------------------------------------------------------------------

    def unregister_browser(self, browser_id: str) -> None:
        self.browsers.pop(browser_id, None)

    def unregister_memory_ref(self, ref_id: str) -> None:
        self.memory_refs.pop(ref_id, None)

    def unregister_temp_file(self, path: str | Path) -> None:
        self.temp_files.pop(str(Path(path)), None)

    def unregister_session(self, session_id: str) -> None:
        self.sessions.pop(session_id, None)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def counts(self) -> dict[str, int]:
        return {
            "browsers": len(self.browsers),
            "memory_refs": len(self.memory_refs),
            "temp_files": len(self.temp_files),
            "sessions": len(self.sessions),
        }

    def is_empty(self) -> bool:
        return not any(self.counts().values())
