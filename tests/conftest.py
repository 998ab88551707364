"""Shared fixtures: an in-memory transport and a wired-up dispatcher."""

import pytest

from dispatcher import Dispatcher
from registry import SessionRegistry
from store import ConversationStore


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingTransport:
    """Records deliveries per connection, the way a real socket would see them."""

    def __init__(self):
        self.open = set()
        self.calls = []
        self.inbox = {}

    def connect(self, *connection_ids):
        for cid in connection_ids:
            self.open.add(cid)
            self.inbox.setdefault(cid, [])

    def close(self, connection_id):
        self.open.discard(connection_id)

    def _deliver(self, connection_id, envelope):
        if connection_id in self.open:
            self.inbox[connection_id].append(envelope)

    def send_to(self, connection_id, envelope):
        self.calls.append(("send_to", connection_id, envelope))
        self._deliver(connection_id, envelope)

    def broadcast(self, envelope):
        self.calls.append(("broadcast", None, envelope))
        for cid in list(self.open):
            self._deliver(cid, envelope)

    def broadcast_except(self, connection_id, envelope):
        self.calls.append(("broadcast_except", connection_id, envelope))
        for cid in list(self.open):
            if cid != connection_id:
                self._deliver(cid, envelope)

    def notifications(self, connection_id, method=None):
        return [
            env for env in self.inbox.get(connection_id, [])
            if "id" not in env and (method is None or env.get("method") == method)
        ]

    def responses(self, connection_id):
        return [env for env in self.inbox.get(connection_id, []) if "id" in env]

    def clear(self):
        self.calls.clear()
        for box in self.inbox.values():
            box.clear()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(clock):
    return SessionRegistry(clock=clock)


@pytest.fixture
def store(registry):
    return ConversationStore(registry)


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def dispatcher(registry, store, transport):
    return Dispatcher(registry, store, transport)
