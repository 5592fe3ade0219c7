"""Session-keyed registry of live Q CLI processes."""

from __future__ import annotations

import logging
import threading
from typing import Protocol

logger = logging.getLogger(__name__)


class ProcessHandle(Protocol):
    """The parts of ``asyncio.subprocess.Process`` the supervisor relies on."""

    pid: int

    @property
    def returncode(self) -> int | None: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...

    async def wait(self) -> int: ...


class ProcessRegistry:
    """Track live processes by session ID so they can be aborted.

    Invariant: at most one handle per session ID. Uses RLock (reentrant lock)
    so a signal handler calling clear() while the lock is held by the same
    thread cannot deadlock.
    """

    def __init__(self) -> None:
        self._handles: dict[str, ProcessHandle] = {}
        self._lock = threading.RLock()

    def add(self, session_id: str, handle: ProcessHandle) -> None:
        """Register a handle.

        Raises:
            KeyError: If another handle is already registered for the session.
        """
        with self._lock:
            existing = self._handles.get(session_id)
            if existing is not None and existing is not handle:
                raise KeyError(f"Session already has a live process: {session_id}")
            self._handles[session_id] = handle

    def get(self, session_id: str) -> ProcessHandle | None:
        with self._lock:
            return self._handles.get(session_id)

    def discard(self, session_id: str, handle: ProcessHandle | None = None) -> bool:
        """Remove a session's handle. Missing sessions are a no-op.

        When ``handle`` is given, the entry is only removed if it is that exact
        handle, so a finished run cannot evict a newer run under the same ID.

        Returns:
            True if an entry was removed.
        """
        with self._lock:
            current = self._handles.get(session_id)
            if current is None:
                return False
            if handle is not None and current is not handle:
                return False
            del self._handles[session_id]
            return True

    def session_ids(self) -> list[str]:
        with self._lock:
            return list(self._handles)

    def clear(self) -> list[tuple[str, ProcessHandle]]:
        """Empty the registry, returning what was in it."""
        with self._lock:
            entries = list(self._handles.items())
            self._handles.clear()
        if entries:
            logger.debug(f"Cleared {len(entries)} process handle(s) from registry")
        return entries

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._handles

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)
