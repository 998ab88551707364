#!/usr/bin/env python3
import argparse
import asyncio
import logging
import sys
from typing import Dict, Optional

import websockets
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.asyncio.server import broadcast as ws_broadcast

from common import encode
from config import ServerConfig
from dispatcher import Dispatcher
from registry import SessionRegistry
from store import ConversationStore

logger = logging.getLogger(__name__)


class WebSocketTransport:
    """Delivers envelopes to open connections, keyed by connection id.

    Sends go through websockets' ``broadcast``, which never blocks and skips
    connections that are no longer open, so a notification racing a
    disconnect is dropped rather than raised.
    """

    def __init__(self):
        self.connections: Dict[str, ServerConnection] = {}

    def add(self, ws: ServerConnection) -> str:
        connection_id = str(ws.id)
        self.connections[connection_id] = ws
        return connection_id

    def remove(self, connection_id: str) -> None:
        self.connections.pop(connection_id, None)

    def send_to(self, connection_id: str, envelope: dict) -> None:
        ws = self.connections.get(connection_id)
        if ws is None:
            return
        ws_broadcast([ws], encode(envelope))

    def broadcast(self, envelope: dict) -> None:
        targets = list(self.connections.values())
        if targets:
            ws_broadcast(targets, encode(envelope))

    def broadcast_except(self, connection_id: str, envelope: dict) -> None:
        targets = [ws for cid, ws in self.connections.items() if cid != connection_id]
        if targets:
            ws_broadcast(targets, encode(envelope))


class IdleSessionSweeper:
    """Periodically drops sessions that have been offline for too long."""

    def __init__(self, registry: SessionRegistry, interval: float, threshold: float):
        self.registry = registry
        self.interval = interval
        self.threshold = threshold
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            # Runs on the event loop between calls, never inside one.
            self.registry.sweep_idle_sessions(self.threshold)


class ChatServer:
    """Owns the registry, store, dispatcher and the websocket listener."""

    def __init__(self, config: Optional[ServerConfig] = None):
        self.config = config or ServerConfig()
        self.registry = SessionRegistry()
        self.store = ConversationStore(
            self.registry,
            public_cap=self.config.public_cap,
            thread_cap=self.config.thread_cap,
            replay_cap=self.config.replay_cap,
        )
        self.transport = WebSocketTransport()
        self.dispatcher = Dispatcher(self.registry, self.store, self.transport,
                                     history_limit=self.config.history_limit)
        self.sweeper = IdleSessionSweeper(self.registry, self.config.sweep_interval,
                                          self.config.idle_threshold)
        self._server: Optional[Server] = None

    @property
    def port(self) -> Optional[int]:
        if self._server is None or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[1]

    async def handler(self, ws: ServerConnection):
        """Handles the entire lifecycle of a client connection."""
        connection_id = self.transport.add(ws)
        logger.info("Connection %s opened from %s", connection_id, ws.remote_address)
        try:
            async for raw_message in ws:
                self.dispatcher.handle(connection_id, raw_message)
        except websockets.exceptions.ConnectionClosed:
            # Expected when a client goes away without a close handshake.
            pass
        except Exception:
            logger.exception("Unexpected error on connection %s", connection_id)
        finally:
            self.transport.remove(connection_id)
            username = self.dispatcher.disconnect(connection_id)
            logger.info("Connection %s closed%s", connection_id,
                        f" ('{username}' offline)" if username else "")

    async def start(self) -> None:
        self._server = await serve(self.handler, self.config.host, self.config.port,
                                   ping_interval=20, ping_timeout=20, max_queue=64)
        self.sweeper.start()
        logger.info("Chat server listening on ws://%s:%s", self.config.host, self.port)

    async def stop(self) -> None:
        await self.sweeper.stop()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    async def run(self) -> None:
        await self.start()
        try:
            await asyncio.Future()  # run forever
        finally:
            await self.stop()


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Real-time chat relay server")
    parser.add_argument("--host", type=str, default=None, help="Bind address (default: CHAT_HOST or 0.0.0.0)")
    parser.add_argument("--port", type=int, default=None, help="Port (default: CHAT_PORT or 2024)")
    parser.add_argument("--log-level", type=str, default=None, help="Log level (default: CHAT_LOG_LEVEL or INFO)")
    return parser.parse_args(argv)

def load_config(argv=None) -> ServerConfig:
    args = parse_args(argv)
    config = ServerConfig.from_env()
    if args.host:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    if args.log_level:
        config.log_level = args.log_level.upper()
    return config

def main(argv=None) -> int:
    config = load_config(argv)
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    try:
        asyncio.run(ChatServer(config).run())
    except KeyboardInterrupt:
        logger.info("Server stopped gracefully.")
    except OSError as e:
        logger.error("Server failed to start: %s", e)
        return 1
    return 0

if __name__ == "__main__":
    sys.exit(main())
