from __future__ import annotations

import threading
from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class SessionIdentity:
    session_id: str | None = None
    live: bool = False


class SessionCell:
    """Current EventSub session identity.

    The session manager is the only writer; the reconciler and the stream
    registry read it. The lock is held only for the swap, never across I/O.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._identity = SessionIdentity()

    def get(self) -> SessionIdentity:
        with self._lock:
            return self._identity

    def live_session_id(self) -> str | None:
        with self._lock:
            if not self._identity.live:
                return None
            return self._identity.session_id

    def replace(self, session_id: str) -> SessionIdentity:
        identity = SessionIdentity(session_id=session_id, live=True)
        with self._lock:
            self._identity = identity
        return identity

    def mark_down(self) -> None:
        with self._lock:
            self._identity = SessionIdentity(session_id=self._identity.session_id, live=False)


class OnlineTracker:
    """Channels known to be live during the current connection."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._online: set[str] = set()

    def mark_online(self, channel: str) -> bool:
        key = channel.lower()
        with self._lock:
            if key in self._online:
                return False
            self._online.add(key)
            return True

    def mark_offline(self, channel: str) -> None:
        with self._lock:
            self._online.discard(channel.lower())

    def reset(self) -> None:
        with self._lock:
            self._online.clear()

    def is_online(self, channel: str) -> bool:
        with self._lock:
            return channel.lower() in self._online

    def snapshot(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._online)
