"""
Session registry: who is online, and on which connection.

A username owns at most one Session. The Session always points at the most
recently registered connection for that username; older connections of the
same user (other browser tabs) are dropped from the reverse index as soon as
they are superseded, so closing them later leaves presence alone.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Set

from errors import NotActiveError, ValidationError, DuplicateUsernameError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionView:
    username: str
    connection_id: Optional[str]
    last_seen_at: float
    is_online: bool


@dataclass
class Session:
    username: str
    connection_id: Optional[str]
    last_seen_at: float
    is_online: bool = True

    def view(self) -> SessionView:
        return SessionView(self.username, self.connection_id, self.last_seen_at, self.is_online)


def _require(value: Any, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"'{field}' is required and cannot be empty")
    return value.strip()


class SessionRegistry:
    """Maps connection ids <-> usernames and tracks presence."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._sessions: Dict[str, Session] = {}      # username -> session
        self._connections: Dict[str, str] = {}       # connection id -> username

    # ---- Registration ----

    def register(self, connection_id: str, username: str) -> SessionView:
        """Registers a username that must not be held by another open connection."""
        connection_id = _require(connection_id, "connectionId")
        username = _require(username, "username")

        session = self._sessions.get(username)
        if session and session.is_online and session.connection_id != connection_id:
            logger.info("Rejected registration of '%s' from %s: name in use", username, connection_id)
            raise DuplicateUsernameError(username)
        return self._attach(connection_id, username)

    def reassociate(self, username: str, new_connection_id: str) -> SessionView:
        """Points an existing Session at a new connection (new tab, reconnect).

        Falls back to ``register`` when the username has never been seen.
        """
        username = _require(username, "username")
        new_connection_id = _require(new_connection_id, "connectionId")
        if username not in self._sessions:
            return self.register(new_connection_id, username)
        return self._attach(new_connection_id, username)

    def _attach(self, connection_id: str, username: str) -> SessionView:
        previous = self._connections.get(connection_id)
        if previous is not None and previous != username:
            # Same connection switching names gives up the old one.
            self._release(connection_id, previous)

        now = self._clock()
        session = self._sessions.get(username)
        if session is None:
            session = Session(username, connection_id, now)
            self._sessions[username] = session
            logger.info("User '%s' registered on %s", username, connection_id)
        else:
            old = session.connection_id
            if old is not None and old != connection_id:
                self._connections.pop(old, None)
                logger.info("User '%s' moved from %s to %s", username, old, connection_id)
            session.connection_id = connection_id
            session.is_online = True
            session.last_seen_at = now

        self._connections[connection_id] = username
        return session.view()

    # ---- Disconnects ----

    def unregister(self, connection_id: str) -> SessionView:
        """Marks the user offline if ``connection_id`` is its current connection.

        Raises NotActiveError for unknown or superseded connections; presence
        is untouched in that case.
        """
        username = self._connections.get(connection_id)
        if username is None:
            raise NotActiveError(f"Connection {connection_id} is not the active connection of any user")

        session = self._sessions.get(username)
        if session is None or session.connection_id != connection_id:
            self._connections.pop(connection_id, None)
            raise NotActiveError(f"Connection {connection_id} is no longer current for '{username}'")

        self._release(connection_id, username)
        return session.view()

    def _release(self, connection_id: str, username: str) -> None:
        self._connections.pop(connection_id, None)
        session = self._sessions.get(username)
        if session is not None and session.connection_id == connection_id:
            session.is_online = False
            session.last_seen_at = self._clock()
            logger.info("User '%s' went offline (%s)", username, connection_id)

    # ---- Lookups ----

    def list_online_usernames(self) -> Set[str]:
        return {name for name, session in self._sessions.items() if session.is_online}

    def resolve_connection_for(self, username: str) -> Optional[str]:
        session = self._sessions.get(username)
        if session is None or not session.is_online:
            return None
        return session.connection_id

    def username_for(self, connection_id: str) -> Optional[str]:
        return self._connections.get(connection_id)

    def has_user(self, username: str) -> bool:
        return username in self._sessions

    def get_session(self, username: str) -> Optional[SessionView]:
        session = self._sessions.get(username)
        return session.view() if session else None

    @property
    def online_count(self) -> int:
        return len(self.list_online_usernames())

    @property
    def known_count(self) -> int:
        return len(self._sessions)

    # ---- Maintenance ----

    def sweep_idle_sessions(self, max_idle: float) -> int:
        """Deletes offline sessions idle for longer than ``max_idle`` seconds."""
        cutoff = self._clock() - max_idle
        stale = [
            name for name, session in self._sessions.items()
            if not session.is_online and session.last_seen_at < cutoff
        ]
        for name in stale:
            del self._sessions[name]
        if stale:
            logger.info("Swept %d idle session(s)", len(stale))
        return len(stale)

    def clear(self) -> None:
        self._sessions.clear()
        self._connections.clear()

    def export_sessions(self) -> Dict[str, Dict[str, Any]]:
        return {
            name: {"lastSeenAt": s.last_seen_at, "isOnline": s.is_online}
            for name, s in self._sessions.items()
        }

    def restore_sessions(self, data: Dict[str, Dict[str, Any]]) -> int:
        """Loads exported sessions as offline; live sessions win over imported ones."""
        restored = 0
        for name, info in data.items():
            if not isinstance(name, str) or not name.strip() or name in self._sessions:
                continue
            last_seen = info.get("lastSeenAt") if isinstance(info, dict) else None
            if not isinstance(last_seen, (int, float)):
                last_seen = self._clock()
            self._sessions[name] = Session(name, None, float(last_seen), is_online=False)
            restored += 1
        return restored
