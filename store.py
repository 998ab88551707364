"""
Conversation store: the public room log and one log per private pair.

All logs are bounded; once a log is full the oldest message is evicted.
Nothing here survives a restart unless it is exported and imported again.
"""

import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Iterable, List, Optional, Tuple

from codec import decode_messages, encode_messages
from common import PUBLIC_CAP, REPLAY_CAP, THREAD_CAP
from errors import UnknownParticipantError, ValidationError
from registry import SessionRegistry

logger = logging.getLogger(__name__)

EXPORT_VERSION = "1.0.0"

ThreadKey = Tuple[str, str]


def thread_key(user_a: str, user_b: str) -> ThreadKey:
    """Order-independent key for the thread between two users."""
    return tuple(sorted((user_a, user_b)))

def _now() -> str:
    return datetime.now(timezone.utc).isoformat()

def _text_field(value: Any, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"'{field}' is required and cannot be empty")
    return value

def _name_field(value: Any, field: str) -> str:
    # Usernames are stored trimmed, the same way the registry keys them.
    return _text_field(value, field).strip()

def _tail(log: Deque[Dict[str, Any]], limit: int) -> List[Dict[str, Any]]:
    if limit <= 0:
        return []
    items = list(log)
    return items[-limit:]


class ConversationStore:
    """Bounded message logs, plus aggregate stats over the registry."""

    def __init__(self, registry: SessionRegistry, public_cap: int = PUBLIC_CAP,
                 thread_cap: int = THREAD_CAP, replay_cap: int = REPLAY_CAP):
        for name, cap in (("public_cap", public_cap), ("thread_cap", thread_cap), ("replay_cap", replay_cap)):
            if cap < 1:
                raise ValueError(f"{name} must be at least 1, got {cap}")
        self.registry = registry
        self.public_cap = public_cap
        self.thread_cap = thread_cap
        self.replay_cap = replay_cap
        self._public: Deque[Dict[str, Any]] = deque(maxlen=public_cap)
        self._threads: Dict[ThreadKey, Deque[Dict[str, Any]]] = {}
        self._last_id = 0

    def _next_id(self) -> int:
        self._last_id += 1
        return self._last_id

    def _skip_ids_of(self, messages: Iterable[Dict[str, Any]]) -> None:
        for message in messages:
            message_id = message.get("id")
            if isinstance(message_id, (int, float)) and not isinstance(message_id, bool):
                self._last_id = max(self._last_id, int(message_id))

    # ---- Public room ----

    def append_public(self, record: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(record, dict):
            raise ValidationError("Message must be an object")
        # Clients send either "user" or "username"; only "user" is stored.
        user = record.get("user") or record.get("username")
        user = _name_field(user, "user")
        text = _text_field(record.get("text"), "text")

        message = {
            "id": record.get("id") or self._next_id(),
            "user": user,
            "text": text,
            "timestamp": record.get("timestamp") or _now(),
            "type": "public",
        }
        if self._public and len(self._public) == self.public_cap:
            logger.debug("Public log full, evicting message %s", self._public[0].get("id"))
        self._public.append(message)
        logger.debug("Public message %s from '%s'", message["id"], user)
        return message

    def get_public(self, limit: int = PUBLIC_CAP) -> List[Dict[str, Any]]:
        """Most recent ``limit`` public messages, oldest first."""
        return _tail(self._public, limit)

    # ---- Private threads ----

    def append_private(self, sender: str, recipient: str, text: str,
                       timestamp: Optional[Any] = None) -> Dict[str, Any]:
        sender = _name_field(sender, "from")
        recipient = _name_field(recipient, "to")
        text = _text_field(text, "text")
        for name in (sender, recipient):
            if not self.registry.has_user(name):
                raise UnknownParticipantError(name)

        key = thread_key(sender, recipient)
        thread = self._threads.get(key)
        if thread is None:
            thread = self._threads[key] = deque(maxlen=self.thread_cap)

        message = {
            "id": self._next_id(),
            "from": sender,
            "to": recipient,
            "text": text,
            "timestamp": timestamp or _now(),
            "type": "private",
        }
        if thread and len(thread) == self.thread_cap:
            logger.debug("Thread %s full, evicting message %s", key, thread[0].get("id"))
        thread.append(message)
        logger.debug("Private message %s from '%s' to '%s'", message["id"], sender, recipient)
        return message

    def get_private_thread(self, user_a: str, user_b: str, limit: int = THREAD_CAP) -> List[Dict[str, Any]]:
        thread = self._threads.get(thread_key(user_a, user_b))
        if thread is None:
            return []
        return _tail(thread, limit)

    def get_all_threads_for(self, username: str, limit: Optional[int] = None) -> Dict[str, List[Dict[str, Any]]]:
        """Every thread ``username`` takes part in, keyed by the other user."""
        limit = self.replay_cap if limit is None else limit
        chats: Dict[str, List[Dict[str, Any]]] = {}
        for (a, b), thread in self._threads.items():
            if username not in (a, b):
                continue
            other = b if a == username else a
            chats[other] = _tail(thread, limit)
        return chats

    # ---- Stats & maintenance ----

    def stats(self) -> Dict[str, int]:
        return {
            "publicCount": len(self._public),
            "threadCount": len(self._threads),
            "totalPrivateCount": sum(len(t) for t in self._threads.values()),
            "onlineCount": self.registry.online_count,
            "totalKnownUsers": self.registry.known_count,
        }

    def reset_all(self) -> None:
        self._public.clear()
        self._threads.clear()
        self.registry.clear()
        logger.warning("All chat data cleared")

    def export_data(self) -> Dict[str, Any]:
        return {
            "publicMessages": encode_messages(self._public),
            "privateChats": [
                {"participants": list(key), "messages": encode_messages(thread)}
                for key, thread in self._threads.items()
            ],
            "userSessions": self.registry.export_sessions(),
            "exportedAt": _now(),
            "version": EXPORT_VERSION,
        }

    def import_data(self, data: Dict[str, Any]) -> Dict[str, int]:
        """Replaces the message logs with an export; sessions come back offline."""
        if not isinstance(data, dict):
            raise ValidationError("Import data must be an object")

        counts = {"publicMessages": 0, "privateChats": 0, "userSessions": 0}

        public = data.get("publicMessages")
        if isinstance(public, list):
            self._public = deque(decode_messages(public), maxlen=self.public_cap)
            self._skip_ids_of(self._public)
            counts["publicMessages"] = len(self._public)

        chats = data.get("privateChats")
        if isinstance(chats, list):
            self._threads = {}
            for entry in chats:
                participants = entry.get("participants") if isinstance(entry, dict) else None
                if not (isinstance(participants, list) and len(participants) == 2
                        and all(isinstance(p, str) and p for p in participants)):
                    logger.warning("Skipping private chat with bad participants: %r", participants)
                    continue
                messages = decode_messages(entry.get("messages") or [])
                self._threads[thread_key(*participants)] = deque(messages, maxlen=self.thread_cap)
                self._skip_ids_of(messages)
            counts["privateChats"] = len(self._threads)

        sessions = data.get("userSessions")
        if isinstance(sessions, dict):
            counts["userSessions"] = self.registry.restore_sessions(sessions)

        logger.info("Imported %s", counts)
        return counts
