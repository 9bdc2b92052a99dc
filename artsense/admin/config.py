"""Expose currently loaded server config for debugging."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from ..config import ServerConfig

router = APIRouter(prefix="/admin", tags=["admin"])

_SECRET_OPTION_KEYS = {"dsn", "url", "password", "credentials_path"}


def _get_config(request: Request) -> ServerConfig:
    return request.app.state.server_config


@router.get("/config")
async def config(
    request: Request,
    config: ServerConfig = Depends(_get_config),
) -> dict:
    storage_options = {
        key: ("***" if key in _SECRET_OPTION_KEYS else value)
        for key, value in config.storage.options.items()
    }
    return {
        "version": request.app.version,
        "storage_backend": config.storage.backend,
        "storage_options": storage_options,
        "bidding": {
            "max_attempts": config.bidding.max_attempts,
            "retry_backoff_ms": config.bidding.retry_backoff_ms,
        },
        "fanout_backend": config.fanout.backend,
        "fanout_queue_size": config.fanout.queue_size,
        "notification_backend": config.notifications.backend,
    }
