"""
Common helpers for message formats and constants.
"""

import json
from typing import Any, Dict, Optional

DEFAULT_PORT = 2024

# Storage caps
PUBLIC_CAP = 1000
THREAD_CAP = 500
REPLAY_CAP = 50
HISTORY_LIMIT = 100

# Idle session sweeping (seconds)
SWEEP_INTERVAL = 6 * 60 * 60
IDLE_THRESHOLD = 24 * 60 * 60

# ---- Error codes ----

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
RECIPIENT_NOT_FOUND = -32004


class Methods:
    # Client -> Server
    REGISTER_USER = "registerUser"
    SEND_MESSAGE = "sendMessage"
    SEND_PRIVATE_MESSAGE = "sendPrivateMessage"
    TYPING = "typing"
    STOP_TYPING = "stopTyping"
    GET_ONLINE_USERS = "getOnlineUsers"
    GET_CHAT_HISTORY = "getChatHistory"
    GET_STORAGE_STATS = "getStorageStats"
    RESET_ALL_DATA = "resetAllData"

    # Server -> Client notifications
    ONLINE_USERS = "onlineUsers"
    CHAT_MESSAGE = "chatMessage"
    PRIVATE_MESSAGE = "privateMessage"
    DATA_RESET = "dataReset"


# ---- Wire message helpers (JSON over WebSocket) ----

def encode(obj: dict) -> str:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)

def decode(s: str) -> dict:
    return json.loads(s)

# ---- Envelopes ----
# Client -> Server:
# {"id":1,"method":"registerUser","params":{"username":"alice"}}
# {"id":2,"method":"sendMessage","params":{"user":"alice","text":"Hello"}}
# {"id":3,"method":"sendPrivateMessage","params":{"sender":"alice","recipient":"bob","text":"hey"}}
#
# Server -> Client:
# {"id":1,"result":{"registered":true}}
# {"id":3,"error":{"code":-32004,"message":"Recipient 'bob' not found or offline"}}
# {"method":"onlineUsers","params":{"users":["alice","bob"]}}
# {"method":"chatMessage","params":{"id":7,"user":"alice","text":"Hello","timestamp":"...","type":"public"}}

def make_request(request_id: Any, method: str, params: Optional[Dict[str, Any]] = None) -> dict:
    return {"id": request_id, "method": method, "params": params or {}}

def make_result(request_id: Any, result: Dict[str, Any]) -> dict:
    return {"id": request_id, "result": result}

def make_error(request_id: Any, code: int, message: str) -> dict:
    return {"id": request_id, "error": {"code": code, "message": message}}

def make_notification(method: str, params: Optional[Dict[str, Any]] = None) -> dict:
    return {"method": method, "params": params or {}}
