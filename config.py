"""
Server configuration, read from CHAT_* environment variables.
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from common import (
    DEFAULT_PORT, HISTORY_LIMIT, IDLE_THRESHOLD, PUBLIC_CAP, REPLAY_CAP, SWEEP_INTERVAL, THREAD_CAP,
)


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    log_level: str = "INFO"

    # Session sweeping (seconds)
    sweep_interval: float = SWEEP_INTERVAL
    idle_threshold: float = IDLE_THRESHOLD

    # Storage caps
    public_cap: int = PUBLIC_CAP
    thread_cap: int = THREAD_CAP
    replay_cap: int = REPLAY_CAP
    history_limit: int = HISTORY_LIMIT

    def __post_init__(self):
        for name in ("public_cap", "thread_cap", "replay_cap"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be at least 1, got {getattr(self, name)}")
        if self.history_limit < 0:
            raise ValueError(f"history_limit cannot be negative, got {self.history_limit}")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ServerConfig":
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            host=env.get("CHAT_HOST", defaults.host),
            port=int(env.get("CHAT_PORT", defaults.port)),
            log_level=env.get("CHAT_LOG_LEVEL", defaults.log_level).upper(),
            sweep_interval=float(env.get("CHAT_SWEEP_INTERVAL", defaults.sweep_interval)),
            idle_threshold=float(env.get("CHAT_IDLE_THRESHOLD", defaults.idle_threshold)),
            public_cap=int(env.get("CHAT_PUBLIC_CAP", defaults.public_cap)),
            thread_cap=int(env.get("CHAT_THREAD_CAP", defaults.thread_cap)),
            replay_cap=int(env.get("CHAT_REPLAY_CAP", defaults.replay_cap)),
            history_limit=int(env.get("CHAT_HISTORY_LIMIT", defaults.history_limit)),
        )
