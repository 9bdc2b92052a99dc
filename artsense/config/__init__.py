"""Configuration helpers for the bidding server."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping

import yaml

_DEFAULT_SERVER_CONFIG = Path(__file__).resolve().parent / "server.yaml"


@dataclass(frozen=True)
class StorageConfig:
    backend: str
    options: Mapping[str, Any]


@dataclass(frozen=True)
class BiddingConfig:
    max_attempts: int
    retry_backoff_ms: int


@dataclass(frozen=True)
class FanoutConfig:
    backend: str
    queue_size: int
    options: Mapping[str, Any]


@dataclass(frozen=True)
class NotificationConfig:
    backend: str
    webhook_url: str | None
    timeout_ms: int


@dataclass(frozen=True)
class ServerConfig:
    listen: Mapping[str, Any]
    storage: StorageConfig
    bidding: BiddingConfig
    fanout: FanoutConfig
    notifications: NotificationConfig
    log_level: str


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(path)
    return yaml.safe_load(path.read_text()) or {}


def parse_server_config(data: Mapping[str, Any]) -> ServerConfig:
    storage = data.get("storage", {})
    bidding = data.get("bidding", {})
    fanout = data.get("fanout", {})
    notifications = data.get("notifications", {})
    max_attempts = int(bidding.get("max_attempts", 5))
    if max_attempts < 1:
        raise ValueError("bidding.max_attempts must be at least 1")
    return ServerConfig(
        listen=data.get("listen", {}),
        storage=StorageConfig(
            backend=str(storage.get("backend", "in_memory")),
            options=dict(storage.get("options") or {}),
        ),
        bidding=BiddingConfig(
            max_attempts=max_attempts,
            retry_backoff_ms=int(bidding.get("retry_backoff_ms", 10)),
        ),
        fanout=FanoutConfig(
            backend=str(fanout.get("backend", "local")),
            queue_size=int(fanout.get("queue_size", 100)),
            options=dict(fanout.get("pubsub") or {}),
        ),
        notifications=NotificationConfig(
            backend=str(notifications.get("backend", "log")),
            webhook_url=notifications.get("webhook_url"),
            timeout_ms=int(notifications.get("timeout_ms", 2000)),
        ),
        log_level=str((data.get("logging") or {}).get("level", "INFO")).upper(),
    )


@lru_cache(maxsize=1)
def get_server_config() -> ServerConfig:
    path = Path(os.getenv("ARTSENSE_CONFIG_PATH", _DEFAULT_SERVER_CONFIG))
    return parse_server_config(_load_yaml(path))
