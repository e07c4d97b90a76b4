from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from .asyncio import fire_and_forget

logger = logging.getLogger(__name__)

E = TypeVar("E")

Subscriber = Callable[[E], Awaitable[None]] | Callable[[E], None]

NEW_MESSAGE_ARRIVED = "new_message_arrived"


@dataclass(frozen=True, slots=True)
class NewMessageArrived:
    """A realtime, inbound, 1:1 message has been persisted."""

    tenant_id: str
    session_id: str
    remote_jid: str
    whatsapp_id: str
    content: str
    message_type: str
    push_name: str | None = None
    lead_id: str | None = None


class MessageBus(Generic[E]):
    """
    In-process, typed publish/subscribe channel.

    - Each `subscribe(fn)` registers exactly one delivery per event; subscribing
      the same callable twice is a no-op.
    - `publish(event)` is synchronous and never suspends: async subscribers are
      scheduled as background tasks, sync subscribers run inline.
    - Subscriber failures are logged and never reach the publisher.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._subscribers: list[Subscriber[E]] = []

    def subscribe(self, fn: Subscriber[E]) -> Callable[[], None]:
        if fn not in self._subscribers:
            self._subscribers.append(fn)

        def _unsubscribe() -> None:
            if fn in self._subscribers:
                self._subscribers.remove(fn)

        return _unsubscribe

    def __len__(self) -> int:
        return len(self._subscribers)

    def publish(self, event: E) -> None:
        for fn in list(self._subscribers):
            try:
                res = fn(event)
            except Exception:
                logger.exception("%s subscriber %r failed", self.name, fn)
                continue
            if asyncio.iscoroutine(res):
                fire_and_forget(res, name=f"bus.{self.name}")
