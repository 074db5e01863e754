"""In-process change notifications keyed by owner id.

Record stores publish a ``ChangeEvent`` after every committed mutation; each
subscriber gets its own queue so a slow consumer never blocks publishers.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from models import RecordKind

logger = logging.getLogger(__name__)


class ChangeType(str, Enum):
    insert = "INSERT"
    update = "UPDATE"
    delete = "DELETE"


@dataclass(frozen=True)
class ChangeEvent:
    event_type: ChangeType
    kind: RecordKind
    owner_id: str
    record: Optional[Any] = None
    old_record: Optional[Any] = None

    @property
    def record_id(self) -> Optional[int]:
        source = self.record if self.record is not None else self.old_record
        return getattr(source, "id", None)


class Subscription:
    def __init__(self, feed: "ChangeFeed", owner_id: str, maxsize: int = 0) -> None:
        self.feed = feed
        self.owner_id = owner_id
        self.queue: asyncio.Queue[ChangeEvent] = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def deliver(self, event: ChangeEvent) -> bool:
        if self.closed:
            return False
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(
                f"feed_drop: owner={self.owner_id} event={event.event_type.value} "
                f"record_id={event.record_id}"
            )
            return False
        return True

    async def get(self) -> ChangeEvent:
        return await self.queue.get()

    def get_nowait(self) -> Optional[ChangeEvent]:
        try:
            return self.queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def close(self) -> None:
        self.closed = True
        self.feed.unsubscribe(self)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ChangeEvent:
        if self.closed and self.queue.empty():
            raise StopAsyncIteration
        return await self.queue.get()


class ChangeFeed:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[Subscription]] = {}

    def subscribe(self, owner_id: str, maxsize: int = 0) -> Subscription:
        subscription = Subscription(self, owner_id, maxsize=maxsize)
        self._subscribers.setdefault(owner_id, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subs = self._subscribers.get(subscription.owner_id)
        if subs and subscription in subs:
            subs.remove(subscription)
            if not subs:
                del self._subscribers[subscription.owner_id]

    def publish(self, event: ChangeEvent) -> int:
        delivered = 0
        for subscription in list(self._subscribers.get(event.owner_id, [])):
            if subscription.deliver(event):
                delivered += 1
        return delivered

    def subscriber_count(self, owner_id: str) -> int:
        return len(self._subscribers.get(owner_id, []))
