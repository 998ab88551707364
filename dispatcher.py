"""
RPC dispatcher: turns inbound envelopes into registry/store calls.

Every call with a usable ``id`` gets exactly one response on the connection
it came from, followed by any notifications the handler queued. Handlers run
synchronously against the in-memory state, so from the data model's point of
view each call is atomic.

Delivery is best-effort and at-most-once: a notification whose target has
gone away between resolution and send is dropped by the transport.
"""

import json
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Tuple

from common import HISTORY_LIMIT, INTERNAL_ERROR, Methods, make_error, make_notification, make_result
from errors import (
    ChatError, InvalidRequestError, NotActiveError, ParseError, RecipientOfflineError,
    UnknownMethodError, ValidationError,
)
from registry import SessionRegistry
from store import ConversationStore

logger = logging.getLogger(__name__)


class Transport(Protocol):
    def send_to(self, connection_id: str, envelope: dict) -> None: ...

    def broadcast(self, envelope: dict) -> None: ...

    def broadcast_except(self, connection_id: str, envelope: dict) -> None: ...


# ---- Param helpers ----

def _string_param(params: Dict[str, Any], name: str, required: bool = True) -> Optional[str]:
    value = params.get(name)
    if value is None and not required:
        return None
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Param '{name}' must be a non-empty string")
    return value

def _name_param(params: Dict[str, Any], name: str, required: bool = True) -> Optional[str]:
    # Usernames are matched trimmed everywhere, as the registry stores them.
    value = _string_param(params, name, required)
    return value.strip() if value is not None else None

def _int_param(params: Dict[str, Any], name: str, default: int) -> int:
    value = params.get(name)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"Param '{name}' must be a non-negative integer")
    return value

def _bool_param(params: Dict[str, Any], name: str, default: bool = False) -> bool:
    value = params.get(name, default)
    if not isinstance(value, bool):
        raise ValidationError(f"Param '{name}' must be a boolean")
    return value

def _usable_id(envelope: Any) -> Any:
    if not isinstance(envelope, dict):
        return None
    request_id = envelope.get("id")
    if isinstance(request_id, bool) or not isinstance(request_id, (int, float, str)):
        return None
    return request_id


class Call:
    """One inbound call: its connection, params and queued notifications."""

    def __init__(self, connection_id: str, params: Dict[str, Any]):
        self.connection_id = connection_id
        self.params = params
        self.outbox: List[Tuple[str, Any, dict]] = []

    def notify_all(self, envelope: dict) -> None:
        self.outbox.append(("all", None, envelope))

    def notify_others(self, envelope: dict) -> None:
        self.outbox.append(("except", self.connection_id, envelope))

    def notify_users(self, usernames: Iterable[str], envelope: dict, include_caller: bool = False) -> None:
        # Usernames are resolved to connections at delivery time, not here.
        self.outbox.append(("users", (tuple(usernames), include_caller), envelope))


class Dispatcher:
    """Routes calls to handlers and fans out their notifications."""

    def __init__(self, registry: SessionRegistry, store: ConversationStore, transport: Transport,
                 history_limit: int = HISTORY_LIMIT):
        self.registry = registry
        self.store = store
        self.transport = transport
        self.history_limit = history_limit
        self.methods: Dict[str, Callable[[Call], Dict[str, Any]]] = {
            Methods.REGISTER_USER: self.register_user,
            Methods.SEND_MESSAGE: self.send_message,
            Methods.SEND_PRIVATE_MESSAGE: self.send_private_message,
            Methods.TYPING: self.typing,
            Methods.STOP_TYPING: self.stop_typing,
            Methods.GET_ONLINE_USERS: self.get_online_users,
            Methods.GET_CHAT_HISTORY: self.get_chat_history,
            Methods.GET_STORAGE_STATS: self.get_storage_stats,
            Methods.RESET_ALL_DATA: self.reset_all_data,
        }

    # ---- Entry points ----

    def handle(self, connection_id: str, raw: Any) -> Optional[dict]:
        """Handles one inbound payload; returns the response sent, if any."""
        envelope = raw
        if isinstance(raw, (str, bytes)):
            try:
                envelope = json.loads(raw)
            except (json.JSONDecodeError, UnicodeDecodeError):
                logger.warning("Dropping unparseable payload from %s", connection_id)
                return None

        request_id = _usable_id(envelope)
        if request_id is None:
            logger.warning("Dropping envelope without usable id from %s", connection_id)
            return None

        call = None
        try:
            method, params = self._parse(envelope)
            handler = self.methods.get(method)
            if handler is None:
                raise UnknownMethodError(method)
            call = Call(connection_id, params)
            response = make_result(request_id, handler(call))
        except ChatError as e:
            logger.info("Call %r from %s failed: [%d] %s", request_id, connection_id, e.code, e.message)
            response = make_error(request_id, e.code, e.message)
            call = None
        except Exception:
            logger.exception("Unexpected error handling call %r from %s", request_id, connection_id)
            response = make_error(request_id, INTERNAL_ERROR, "Internal error")
            call = None

        self.transport.send_to(connection_id, response)
        if call is not None:
            self._deliver(call)
        return response

    def disconnect(self, connection_id: str) -> Optional[str]:
        """Handles a closed connection; returns the username that went offline."""
        try:
            session = self.registry.unregister(connection_id)
        except NotActiveError as e:
            logger.debug("Ignoring disconnect: %s", e)
            return None
        self.transport.broadcast(self._online_users_notification())
        return session.username

    def _parse(self, envelope: dict) -> Tuple[str, Dict[str, Any]]:
        method = envelope.get("method")
        if not isinstance(method, str) or not method:
            raise ParseError("Envelope has no method")
        params = envelope.get("params")
        if params is None:
            params = {}
        if not isinstance(params, dict):
            raise InvalidRequestError("Params must be an object")
        return method, params

    def _deliver(self, call: Call) -> None:
        for kind, target, envelope in call.outbox:
            if kind == "all":
                self.transport.broadcast(envelope)
            elif kind == "except":
                self.transport.broadcast_except(target, envelope)
            elif kind == "users":
                usernames, include_caller = target
                connections = []
                for name in usernames:
                    connection_id = self.registry.resolve_connection_for(name)
                    if connection_id is not None and connection_id not in connections:
                        connections.append(connection_id)
                if include_caller and call.connection_id not in connections:
                    connections.append(call.connection_id)
                for connection_id in connections:
                    self.transport.send_to(connection_id, envelope)

    def _online_users_notification(self) -> dict:
        return make_notification(Methods.ONLINE_USERS, {"users": sorted(self.registry.list_online_usernames())})

    # ---- Methods ----

    def register_user(self, call: Call) -> Dict[str, Any]:
        username = _name_param(call.params, "username")
        if _bool_param(call.params, "exclusive"):
            self.registry.register(call.connection_id, username)
        else:
            self.registry.reassociate(username, call.connection_id)
        call.notify_all(self._online_users_notification())
        return {"registered": True}

    def send_message(self, call: Call) -> Dict[str, Any]:
        message = self.store.append_public({
            "user": call.params.get("user"),
            "username": call.params.get("username"),
            "text": call.params.get("text"),
            "timestamp": call.params.get("timestamp"),
        })
        call.notify_all(make_notification(Methods.CHAT_MESSAGE, message))
        return {"delivered": True, "id": message["id"]}

    def send_private_message(self, call: Call) -> Dict[str, Any]:
        sender = _name_param(call.params, "sender")
        recipient = _name_param(call.params, "recipient")
        text = _string_param(call.params, "text")
        if self.registry.resolve_connection_for(recipient) is None:
            raise RecipientOfflineError(recipient)

        message = self.store.append_private(sender, recipient, text, call.params.get("timestamp"))
        call.notify_users([recipient, sender], make_notification(Methods.PRIVATE_MESSAGE, message),
                          include_caller=True)
        return {"delivered": True, "id": message["id"]}

    def _typing(self, call: Call, method: str) -> Dict[str, Any]:
        username = _name_param(call.params, "username")
        target = _name_param(call.params, "target", required=False)
        params = {"username": username}
        if target is not None:
            params["target"] = target
            call.notify_users([target], make_notification(method, params))
        else:
            call.notify_others(make_notification(method, params))
        return {}

    def typing(self, call: Call) -> Dict[str, Any]:
        return self._typing(call, Methods.TYPING)

    def stop_typing(self, call: Call) -> Dict[str, Any]:
        return self._typing(call, Methods.STOP_TYPING)

    def get_online_users(self, call: Call) -> Dict[str, Any]:
        return {"users": sorted(self.registry.list_online_usernames())}

    def get_chat_history(self, call: Call) -> Dict[str, Any]:
        limit = _int_param(call.params, "limit", self.history_limit)
        username = self.registry.username_for(call.connection_id)
        return {
            "publicMessages": self.store.get_public(limit),
            "privateChats": self.store.get_all_threads_for(username) if username else {},
        }

    def get_storage_stats(self, call: Call) -> Dict[str, Any]:
        return self.store.stats()

    def reset_all_data(self, call: Call) -> Dict[str, Any]:
        self.store.reset_all()
        call.notify_all(make_notification(Methods.DATA_RESET))
        return {"reset": True}
