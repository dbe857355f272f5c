"""In-process publish/subscribe channel carrying live stream messages.

Every subscriber owns a bounded queue.  Publishing never blocks: when a
subscriber's queue is full its oldest message is evicted, so one slow
consumer cannot stall the publisher or the other subscribers.  There is no
replay; a subscription only sees messages published after it was opened.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from .domain_models import BroadcastMessage, ProgressMessage, StreamMessage

LOGGER = logging.getLogger(__name__)

DEFAULT_QUEUE_MAXSIZE = 256

_DROP_LOG_INTERVAL_S: float = 10.0
"""Minimum interval between logged slow-subscriber warnings."""


class PublishFailure(RuntimeError):
    """A message could not be handed to the broadcast channel."""


@dataclass(slots=True)
class Subscription:
    sub_id: int
    queue: asyncio.Queue[StreamMessage]
    entity_id: str | None = None
    job_id: str | None = None
    dropped: int = field(default=0)

    def matches(self, message: StreamMessage) -> bool:
        if self.job_id is not None and message.job_id != self.job_id:
            return False
        if self.entity_id is not None and message.entity_id != self.entity_id:
            return False
        return True

    async def get(self) -> StreamMessage:
        return await self.queue.get()

    def drain(self) -> list[StreamMessage]:
        """Return every message already queued without waiting."""
        items: list[StreamMessage] = []
        while True:
            try:
                items.append(self.queue.get_nowait())
            except asyncio.QueueEmpty:
                return items

    def __aiter__(self) -> AsyncIterator[StreamMessage]:
        return self._iter()

    async def _iter(self) -> AsyncIterator[StreamMessage]:
        while True:
            yield await self.queue.get()


class BroadcastChannel:
    def __init__(self, queue_maxsize: int = DEFAULT_QUEUE_MAXSIZE) -> None:
        self._subscribers: dict[int, Subscription] = {}
        self._ids = itertools.count(1)
        self._queue_maxsize = max(1, int(queue_maxsize))
        self._closed = False
        self._published_total = 0
        self._last_drop_log_ts = 0.0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def published_total(self) -> int:
        return self._published_total

    @property
    def closed(self) -> bool:
        return self._closed

    def open(
        self,
        *,
        entity_id: str | None = None,
        job_id: str | None = None,
    ) -> Subscription:
        if self._closed:
            raise PublishFailure("Broadcast channel is closed")
        sub = Subscription(
            sub_id=next(self._ids),
            queue=asyncio.Queue(maxsize=self._queue_maxsize),
            entity_id=entity_id,
            job_id=job_id,
        )
        self._subscribers[sub.sub_id] = sub
        LOGGER.debug(
            "Subscription %d opened (entity=%s job=%s); %d active",
            sub.sub_id,
            entity_id,
            job_id,
            len(self._subscribers),
        )
        return sub

    def close_subscription(self, sub: Subscription) -> None:
        if self._subscribers.pop(sub.sub_id, None) is not None:
            LOGGER.debug(
                "Subscription %d closed; %d active", sub.sub_id, len(self._subscribers)
            )

    @asynccontextmanager
    async def subscribe(
        self,
        *,
        entity_id: str | None = None,
        job_id: str | None = None,
    ) -> AsyncIterator[Subscription]:
        """Open a subscription that is released however the block exits."""
        sub = self.open(entity_id=entity_id, job_id=job_id)
        try:
            yield sub
        finally:
            self.close_subscription(sub)

    def publish(self, message: StreamMessage) -> int:
        """Fan *message* out to every matching subscriber; return the delivery count."""
        if self._closed:
            raise PublishFailure("Broadcast channel is closed")
        if not isinstance(message, (BroadcastMessage, ProgressMessage)):
            raise PublishFailure(f"Unsupported message type {type(message).__name__}")
        self._published_total += 1
        delivered = 0
        for sub in list(self._subscribers.values()):
            if not sub.matches(message):
                continue
            if sub.queue.full():
                try:
                    sub.queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
                sub.dropped += 1
                self._log_drop(sub)
            sub.queue.put_nowait(message)
            delivered += 1
        return delivered

    def _log_drop(self, sub: Subscription) -> None:
        try:
            now = asyncio.get_running_loop().time()
        except RuntimeError:
            now = self._last_drop_log_ts + _DROP_LOG_INTERVAL_S
        if (now - self._last_drop_log_ts) >= _DROP_LOG_INTERVAL_S:
            self._last_drop_log_ts = now
            LOGGER.warning(
                "Subscriber %d is not keeping up; %d message(s) evicted so far",
                sub.sub_id,
                sub.dropped,
            )

    def close(self) -> None:
        self._closed = True
        self._subscribers.clear()
