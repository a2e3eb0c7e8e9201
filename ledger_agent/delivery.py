"""One-way delivery of assistant text to the user."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChatMessage:
    user_id: int
    thread_id: int
    message: str
    type: str = "chat"
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "userId": str(self.user_id),
            "threadId": str(self.thread_id),
            "message": self.message,
            "timestamp": self.timestamp,
        }


class DeliverySink(Protocol):
    async def send(self, message: ChatMessage) -> None: ...


class CallbackSink:
    """Calls ``callback(payload_dict)``; sync or async callbacks both work."""

    def __init__(self, callback: Callable[[dict[str, Any]], Awaitable[None] | None]) -> None:
        self.callback = callback

    async def send(self, message: ChatMessage) -> None:
        outcome = self.callback(message.to_dict())
        if inspect.isawaitable(outcome):
            await outcome


class QueueSink:
    """Puts messages on an ``asyncio.Queue`` for a transport task to drain."""

    def __init__(self, queue: asyncio.Queue[ChatMessage] | None = None) -> None:
        self.queue: asyncio.Queue[ChatMessage] = queue or asyncio.Queue()

    async def send(self, message: ChatMessage) -> None:
        await self.queue.put(message)

    def drain(self) -> list[ChatMessage]:
        out = []
        while not self.queue.empty():
            out.append(self.queue.get_nowait())
        return out
