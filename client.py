#!/usr/bin/env python3
import asyncio
import itertools
import json
import os
import sys
from typing import Dict, Optional, Tuple

import websockets

from common import DEFAULT_PORT, Methods, decode, encode, make_request

HELP = """
Commands:
  /login <username>
  /pm <user> <message>        # private message
  /who                        # list online users
  /history                    # replay public and private history
  /stats                      # storage statistics
  /reset                      # wipe all server data
  /quit
  /help

Notes:
- You must /login before sending messages.
- Any line not starting with / is sent to the public room.
"""


class CommandError(ValueError):
    pass


def parse_command(line: str, username: Optional[str]) -> Tuple[str, dict]:
    """Turns one input line into an RPC method and params.

    Raises CommandError for lines that cannot be sent as typed.
    """
    line = line.strip()
    if not line.startswith("/"):
        if not username:
            raise CommandError("Please /login first")
        return Methods.SEND_MESSAGE, {"user": username, "text": line}

    parts = line.split(" ", 2)
    cmd = parts[0].lower()
    if cmd == "/login" and len(parts) >= 2 and parts[1].strip():
        return Methods.REGISTER_USER, {"username": parts[1].strip()}
    if cmd == "/pm" and len(parts) >= 3:
        if not username:
            raise CommandError("Please /login first")
        return Methods.SEND_PRIVATE_MESSAGE, {"sender": username, "recipient": parts[1].strip(), "text": parts[2]}
    if cmd == "/who":
        return Methods.GET_ONLINE_USERS, {}
    if cmd == "/history":
        return Methods.GET_CHAT_HISTORY, {}
    if cmd == "/stats":
        return Methods.GET_STORAGE_STATS, {}
    if cmd == "/reset":
        return Methods.RESET_ALL_DATA, {}
    raise CommandError("Unknown/invalid command. Type /help")


def format_public(m: dict) -> str:
    return f"<{m.get('user')}>: {m.get('text')}"

def format_private(m: dict) -> str:
    return f"[pm {m.get('from')} -> {m.get('to')}]: {m.get('text')}"


class Client:
    def __init__(self, uri: str):
        self.uri = uri
        self.username: Optional[str] = None
        self._ids = itertools.count(1)
        self.pending: Dict[int, Tuple[str, dict]] = {}

    async def call(self, ws, method: str, params: dict) -> None:
        request_id = next(self._ids)
        self.pending[request_id] = (method, params)
        await ws.send(encode(make_request(request_id, method, params)))

    async def input_loop(self, ws):
        print(HELP)
        while True:
            try:
                line = await asyncio.get_running_loop().run_in_executor(None, sys.stdin.readline)
            except (EOFError, KeyboardInterrupt):
                break
            if not line:
                break
            line = line.strip()
            if not line:
                continue
            cmd = line.split(" ", 1)[0].lower()
            if cmd == "/help":
                print(HELP)
                continue
            if cmd == "/quit":
                break
            try:
                method, params = parse_command(line, self.username)
            except CommandError as e:
                print(e)
                continue
            await self.call(ws, method, params)
        await ws.close()

    def on_response(self, data: dict) -> None:
        method, params = self.pending.pop(data.get("id"), (None, {}))
        if "error" in data:
            err = data["error"]
            print(f"<< ERROR {method or ''} [{err.get('code')}] {err.get('message')} >>")
            return
        result = data.get("result") or {}
        if method == Methods.REGISTER_USER:
            self.username = params.get("username")
            print(f"<< logged in as {self.username} >>")
        elif method == Methods.GET_ONLINE_USERS:
            print("Online:", ", ".join(result.get("users", [])) or "(none)")
        elif method == Methods.GET_CHAT_HISTORY:
            msgs = result.get("publicMessages", [])
            print(f"--- last {len(msgs)} public messages ---")
            for m in msgs:
                print(format_public(m))
            for other, thread in result.get("privateChats", {}).items():
                print(f"--- private chat with {other} ---")
                for m in thread:
                    print(format_private(m))
            print("--- end history ---")
        elif method == Methods.GET_STORAGE_STATS:
            print(json.dumps(result, indent=2))
        elif method == Methods.RESET_ALL_DATA:
            print("<< reset OK >>")

    def on_notification(self, data: dict) -> None:
        method = data.get("method")
        params = data.get("params") or {}
        if method == Methods.CHAT_MESSAGE:
            print(format_public(params))
        elif method == Methods.PRIVATE_MESSAGE:
            print(format_private(params))
        elif method == Methods.ONLINE_USERS:
            print("<< online:", ", ".join(params.get("users", [])), ">>")
        elif method == Methods.TYPING:
            print(f"<< {params.get('username')} is typing... >>")
        elif method == Methods.DATA_RESET:
            self.username = None
            print("<< server data was reset, please /login again >>")

    async def recv_loop(self, ws):
        async for raw in ws:
            try:
                data = decode(raw)
            except json.JSONDecodeError:
                print("<< invalid JSON >>")
                continue
            if not isinstance(data, dict):
                print("<< unknown message >>")
                continue
            if "id" in data:
                self.on_response(data)
            elif "method" in data:
                self.on_notification(data)
            else:
                print("<< unknown message >>")

    async def run(self):
        print(f"Connecting to {self.uri} ...")
        try:
            async with websockets.connect(self.uri, ping_interval=20, ping_timeout=20, max_queue=64) as ws:
                await asyncio.gather(self.input_loop(ws), self.recv_loop(ws))
        except ConnectionRefusedError:
            print("\nConnection failed. Is the server running?")
        except websockets.exceptions.ConnectionClosed as e:
            print(f"\nConnection closed: {e}")


def main():
    host = os.environ.get("CHAT_HOST", "localhost")
    port = int(os.environ.get("CHAT_PORT", DEFAULT_PORT))
    uri = f"ws://{host}:{port}"
    try:
        asyncio.run(Client(uri).run())
    except KeyboardInterrupt:
        pass

if __name__ == "__main__":
    main()
