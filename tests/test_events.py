"""Tests for the internal event bus."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from decimal import Decimal

import pytest

from order_desk.core.events import EventBus, EventTopic, OrderStatusEvent, QuoteEvent
from order_desk.models import OrderSide, OrderStatus


def _status_event(order_id: str = "o1") -> OrderStatusEvent:
    return OrderStatusEvent(
        order_id=order_id,
        status=OrderStatus.SUBMITTED,
        symbol="AAPL",
        side=OrderSide.BUY,
        quantity=Decimal("10"),
        filled_quantity=Decimal("0"),
        avg_fill_price=None,
        cancel_requested=False,
        stale=False,
        timestamp=datetime.now(UTC),
    )


@pytest.mark.asyncio
async def test_event_bus_publish_and_receive() -> None:
    bus = EventBus()
    subscription = bus.subscribe(EventTopic.ORDER_STATUS)

    event = _status_event()
    await bus.publish(EventTopic.ORDER_STATUS, event)

    received = await asyncio.wait_for(subscription.get(), timeout=0.1)
    assert received == event
    subscription.close()


@pytest.mark.asyncio
async def test_multiple_subscribers_receive_same_event() -> None:
    bus = EventBus()
    sub_a = bus.subscribe(EventTopic.ORDER_STATUS)
    sub_b = bus.subscribe(EventTopic.ORDER_STATUS)

    event = _status_event("o5")
    bus.publish_nowait(EventTopic.ORDER_STATUS, event)

    assert sub_a.pending() == [event]
    assert sub_b.pending() == [event]
    sub_a.close()
    sub_b.close()


@pytest.mark.asyncio
async def test_topics_are_isolated_and_close_unsubscribes() -> None:
    bus = EventBus()
    quotes = bus.subscribe(EventTopic.QUOTE)
    orders = bus.subscribe(EventTopic.ORDER_STATUS)
    orders.close()

    await bus.publish(EventTopic.ORDER_STATUS, _status_event())
    quote_event = QuoteEvent(symbol="AAPL", quote=None, stale=True, timestamp=datetime.now(UTC))
    await bus.publish(EventTopic.QUOTE, quote_event)

    assert quotes.pending() == [quote_event]
    assert orders.pending() == []
    with pytest.raises(StopAsyncIteration):
        await orders.get()
    quotes.close()


@pytest.mark.asyncio
async def test_subscription_context_manager_closes() -> None:
    bus = EventBus()

    async with bus.subscribe(EventTopic.WORKFLOW) as subscription:
        bus.publish_nowait(EventTopic.WORKFLOW, "payload")
        assert await subscription.get() == "payload"

    bus.publish_nowait(EventTopic.WORKFLOW, "ignored")
    assert subscription.pending() == []
