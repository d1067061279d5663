"""
In-process registry of open edit and live sessions.

One registry per session kind lives in ``app.extensions``. Sessions are
plain objects with a ``session_id`` attribute and a ``close()`` method.

Sessions a client abandons without closing are evicted once they have not
been accessed for ``idle_ttl`` seconds. Expired sessions are swept on every
``add`` / ``get`` and closed, which also stops any background poller they own.
An edit session in the middle of a save is never evicted.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from checklist_sync.core.exceptions import NotFoundError

logger = logging.getLogger(__name__)

DEFAULT_IDLE_TTL_SECONDS = 1800


@dataclass
class _Entry:
    session: object
    last_accessed: float


class SessionRegistry:
    def __init__(
        self,
        kind: str,
        *,
        idle_ttl: float | None = DEFAULT_IDLE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.kind = kind
        self.idle_ttl = idle_ttl
        self.clock = clock
        self._sessions: dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def add(self, session) -> str:
        self.cleanup_expired_sessions()
        with self._lock:
            self._sessions[session.session_id] = _Entry(session, self.clock())
        logger.info("Opened %s session_id=%s", self.kind, session.session_id,
                    extra={"session_id": session.session_id})
        return session.session_id

    def get(self, session_id: str):
        """Return the session and mark it accessed; NotFoundError if unknown or expired."""
        self.cleanup_expired_sessions()
        with self._lock:
            entry = self._sessions.get(session_id)
            if entry is not None:
                entry.last_accessed = self.clock()
        if entry is None:
            raise NotFoundError(self.kind, session_id)
        return entry.session

    def close(self, session_id: str) -> None:
        """Remove and close one session; NotFoundError if unknown."""
        with self._lock:
            entry = self._sessions.pop(session_id, None)
        if entry is None:
            raise NotFoundError(self.kind, session_id)
        entry.session.close()
        logger.info("Closed %s session_id=%s", self.kind, session_id,
                    extra={"session_id": session_id})

    def close_all(self) -> None:
        with self._lock:
            sessions = [entry.session for entry in self._sessions.values()]
            self._sessions.clear()
        for session in sessions:
            self._close_quietly(session)

    def cleanup_expired_sessions(self) -> int:
        """Close every session idle for longer than ``idle_ttl``.

        Returns:
            Number of sessions evicted.
        """
        if not self.idle_ttl:
            return 0
        now = self.clock()
        expired = []
        with self._lock:
            for session_id, entry in list(self._sessions.items()):
                if now - entry.last_accessed <= self.idle_ttl:
                    continue
                if getattr(entry.session, "is_saving", False):
                    continue
                expired.append(self._sessions.pop(session_id).session)

        for session in expired:
            logger.info("Evicting idle %s session_id=%s", self.kind, session.session_id,
                        extra={"session_id": session.session_id})
            self._close_quietly(session)
        return len(expired)

    def _close_quietly(self, session) -> None:
        try:
            session.close()
        except Exception:
            logger.exception("Failed to close %s session_id=%s", self.kind, session.session_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions
