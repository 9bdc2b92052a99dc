"""Outbound bidder notifications dispatched off the bid write path."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Protocol

import httpx

from ..config import NotificationConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notification:
    recipient: str
    subject: str
    body: str


class NotificationSender(Protocol):
    async def send(self, notification: Notification) -> None: ...

    async def close(self) -> None: ...


class LogSender:
    async def send(self, notification: Notification) -> None:
        logger.info(
            "notification to=%s subject=%s", notification.recipient, notification.subject
        )

    async def close(self) -> None:
        return None


class WebhookSender:
    def __init__(self, *, url: str, timeout_ms: int = 2000) -> None:
        if not url:
            raise ValueError("webhook url missing")
        self._url = url
        self._client = httpx.AsyncClient(timeout=timeout_ms / 1000)

    async def send(self, notification: Notification) -> None:
        response = await self._client.post(
            self._url,
            json={
                "recipient": notification.recipient,
                "subject": notification.subject,
                "body": notification.body,
            },
        )
        response.raise_for_status()

    async def close(self) -> None:
        await self._client.aclose()


def build_sender(config: NotificationConfig) -> NotificationSender:
    if config.backend == "log":
        return LogSender()
    if config.backend == "webhook":
        return WebhookSender(url=config.webhook_url or "", timeout_ms=config.timeout_ms)
    raise ValueError(f"unknown notification backend {config.backend}")


class NotificationDispatcher:
    """Fire-and-forget delivery: failures are logged, never raised to callers."""

    def __init__(self, sender: NotificationSender) -> None:
        self._sender = sender
        self._pending: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def dispatch(self, notification: Notification) -> asyncio.Task:
        task = asyncio.create_task(self._deliver(notification))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _deliver(self, notification: Notification) -> None:
        try:
            await self._sender.send(notification)
        except Exception:
            logger.exception("notification to %s failed", notification.recipient)

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        await self._sender.close()
