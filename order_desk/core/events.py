"""Event bus and event definitions for the order desk."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING

from order_desk.models import OrderSide, OrderStatus, Quote

if TYPE_CHECKING:
    from order_desk.workflow import WorkflowState


class EventTopic(str, Enum):
    """Enumerates supported event channels."""

    ORDER_STATUS = "order_status"
    QUOTE = "quote"
    WORKFLOW = "workflow"


@dataclass(frozen=True, slots=True)
class OrderStatusEvent:
    """Payload emitted when the known state of a placed order changes."""

    order_id: str
    status: OrderStatus
    symbol: str
    side: OrderSide
    quantity: Decimal
    filled_quantity: Decimal
    avg_fill_price: Decimal | None
    cancel_requested: bool
    stale: bool
    timestamp: datetime


@dataclass(frozen=True, slots=True)
class QuoteEvent:
    """Payload representing a polled quote for a symbol."""

    symbol: str
    quote: Quote | None
    stale: bool
    timestamp: datetime


@dataclass(frozen=True, slots=True)
class WorkflowEvent:
    """Payload emitted on every trade workflow transition."""

    previous: WorkflowState
    state: WorkflowState
    preview_id: str | None
    order_id: str | None
    error: str | None
    timestamp: datetime


class EventSubscription:
    """Async iterator over events for a given topic."""

    def __init__(self, bus: EventBus, topic: EventTopic) -> None:
        self._bus = bus
        self._topic = topic
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._active = True
        self._bus._register(topic, self._queue)

    def __aiter__(self) -> AsyncIterator[object]:
        return self

    async def __anext__(self) -> object:
        if not self._active:
            raise StopAsyncIteration
        return await self._queue.get()

    async def get(self) -> object:
        """Retrieve the next event payload."""
        return await self.__anext__()

    def pending(self) -> list[object]:
        """Drain payloads already queued without waiting."""
        drained: list[object] = []
        while not self._queue.empty():
            drained.append(self._queue.get_nowait())
        return drained

    def close(self) -> None:
        """Unsubscribe from the event bus."""
        if self._active:
            self._active = False
            self._bus._unregister(self._topic, self._queue)

    async def __aenter__(self) -> EventSubscription:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()


class EventBus:
    """Simple pub/sub event bus built on asyncio queues."""

    def __init__(self) -> None:
        self._topics: defaultdict[EventTopic, list[asyncio.Queue[object]]] = defaultdict(list)
        self._lock = asyncio.Lock()

    def subscribe(self, topic: EventTopic) -> EventSubscription:
        """Subscribe to a topic."""
        return EventSubscription(self, topic)

    async def publish(self, topic: EventTopic, payload: object) -> None:
        """Publish payload to all subscribers of topic."""
        async with self._lock:
            queues = list(self._topics.get(topic, []))
        for queue in queues:
            await queue.put(payload)

    def publish_nowait(self, topic: EventTopic, payload: object) -> None:
        """Publish from synchronous code; subscriber queues are unbounded."""
        for queue in list(self._topics.get(topic, [])):
            queue.put_nowait(payload)

    def _register(self, topic: EventTopic, queue: asyncio.Queue[object]) -> None:
        self._topics[topic].append(queue)

    def _unregister(self, topic: EventTopic, queue: asyncio.Queue[object]) -> None:
        subscribers = self._topics.get(topic)
        if not subscribers:
            return
        try:
            subscribers.remove(queue)
        except ValueError:
            return
        if not subscribers:
            self._topics.pop(topic, None)
