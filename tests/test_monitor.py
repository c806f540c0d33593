"""Tests for order lifecycle tracking and polling."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from order_desk.core.constants import CANCEL_PENDING_MAX_READS
from order_desk.core.events import EventBus, EventTopic, OrderStatusEvent
from order_desk.errors import (
    AlreadyFinalizedError,
    CancelNotSupportedError,
    GatewayError,
    LifecycleError,
    OrderNotFoundError,
)
from order_desk.models import (
    MarketOrderIntent,
    OrderSide,
    OrderStatus,
    OrderType,
    PlacedOrder,
)
from order_desk.monitor import OrderLifecycleTracker, OrderMonitor
from order_desk.sim.brokerage import SimulatedBrokerage

ACCOUNT = "acct-1"
BASE_TIME = datetime(2024, 3, 4, 15, 30, tzinfo=UTC)


def _order(
    order_id: str = "o1",
    status: OrderStatus = OrderStatus.OPEN,
    *,
    updated: datetime = BASE_TIME,
    placed: datetime = BASE_TIME,
    **changes: object,
) -> PlacedOrder:
    return PlacedOrder(
        order_id=order_id,
        account_id=ACCOUNT,
        symbol="AAPL",
        side=OrderSide.BUY,
        quantity=Decimal("10"),
        order_type=OrderType.MARKET,
        status=status,
        placed_at=placed,
        last_updated_at=updated,
        **changes,
    )


async def _place(brokerage: SimulatedBrokerage, quantity: str = "10") -> PlacedOrder:
    intent = MarketOrderIntent(
        account_id=ACCOUNT, symbol="AAPL", side=OrderSide.BUY, quantity=Decimal(quantity)
    )
    impact = await brokerage.compute_impact(intent)
    return await brokerage.commit(impact.preview_id)


async def _eventually(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_open_order_cancel_then_poll_shows_cancelled(brokerage: SimulatedBrokerage) -> None:
    await _place(brokerage)
    await brokerage.acknowledge("o1")
    brokerage.cancel_order = AsyncMock(wraps=brokerage.cancel_order)  # type: ignore[method-assign]
    tracker = OrderLifecycleTracker(brokerage)

    item = await tracker.get_order("o1")
    assert item.order.status == OrderStatus.OPEN

    item = await tracker.cancel("o1")
    assert item.order.cancel_requested
    assert item.order.status == OrderStatus.OPEN

    item = await tracker.get_order("o1")
    assert item.order.status == OrderStatus.CANCELLED

    with pytest.raises(AlreadyFinalizedError):
        await tracker.cancel("o1")
    assert brokerage.cancel_order.await_count == 1


@pytest.mark.asyncio
async def test_cancel_known_terminal_order_makes_no_request() -> None:
    backend = AsyncMock()
    tracker = OrderLifecycleTracker(backend)
    tracker.track(_order(status=OrderStatus.FILLED))

    with pytest.raises(AlreadyFinalizedError) as exc_info:
        await tracker.cancel("o1")

    assert exc_info.value.status == "Filled"
    backend.cancel_order.assert_not_awaited()
    held = tracker.get("o1")
    assert held is not None
    assert held.order.status == OrderStatus.FILLED
    assert not held.order.cancel_requested


@pytest.mark.asyncio
async def test_remote_conflict_reports_already_finalized() -> None:
    backend = AsyncMock()
    backend.cancel_order.side_effect = AlreadyFinalizedError("o1")
    tracker = OrderLifecycleTracker(backend)
    tracker.track(_order())

    with pytest.raises(AlreadyFinalizedError):
        await tracker.cancel("o1")

    held = tracker.get("o1")
    assert held is not None
    assert held.order.status == OrderStatus.OPEN
    assert not held.order.cancel_requested


@pytest.mark.asyncio
async def test_cancel_not_supported_propagates() -> None:
    backend = AsyncMock()
    backend.cancel_order.side_effect = CancelNotSupportedError("o1")
    tracker = OrderLifecycleTracker(backend)
    tracker.track(_order())

    with pytest.raises(CancelNotSupportedError):
        await tracker.cancel("o1")


@pytest.mark.asyncio
async def test_second_cancel_while_pending_returns_same_order() -> None:
    backend = AsyncMock()
    tracker = OrderLifecycleTracker(backend)
    tracker.track(_order())

    first = await tracker.cancel("o1")
    second = await tracker.cancel("o1")

    assert first is second
    assert second.order.cancel_requested
    backend.cancel_order.assert_awaited_once_with("o1", account_id=ACCOUNT)


@pytest.mark.asyncio
async def test_cancel_transport_failure_changes_nothing() -> None:
    backend = AsyncMock()
    backend.cancel_order.side_effect = GatewayError("connection reset")
    tracker = OrderLifecycleTracker(backend)
    tracker.track(_order())

    with pytest.raises(LifecycleError):
        await tracker.cancel("o1")

    held = tracker.get("o1")
    assert held is not None
    assert not held.order.cancel_requested


def test_merge_ignores_older_update() -> None:
    tracker = OrderLifecycleTracker(AsyncMock())
    tracker.track(_order(status=OrderStatus.PARTIALLY_FILLED, updated=BASE_TIME))

    applied = tracker.merge(_order(status=OrderStatus.OPEN, updated=BASE_TIME - timedelta(1)))

    assert not applied
    held = tracker.get("o1")
    assert held is not None
    assert held.order.status == OrderStatus.PARTIALLY_FILLED


def test_merge_keeps_cancel_mark_until_terminal() -> None:
    tracker = OrderLifecycleTracker(AsyncMock())
    tracker.track(_order(cancel_requested=True))

    tracker.merge(_order(updated=BASE_TIME + timedelta(seconds=1)))
    held = tracker.get("o1")
    assert held is not None
    assert held.order.cancel_requested

    tracker.merge(_order(status=OrderStatus.CANCELLED, updated=BASE_TIME + timedelta(seconds=2)))
    assert held.order.status == OrderStatus.CANCELLED
    assert not held.order.cancel_requested


def test_merge_publishes_status_events() -> None:
    bus = EventBus()
    subscription = bus.subscribe(EventTopic.ORDER_STATUS)
    tracker = OrderLifecycleTracker(AsyncMock(), event_bus=bus)

    tracker.track(_order(status=OrderStatus.SUBMITTED))
    tracker.merge(_order(status=OrderStatus.SUBMITTED))
    tracker.merge(_order(status=OrderStatus.OPEN, updated=BASE_TIME + timedelta(seconds=1)))

    events = subscription.pending()
    assert all(isinstance(event, OrderStatusEvent) for event in events)
    assert [event.status for event in events] == [OrderStatus.SUBMITTED, OrderStatus.OPEN]
    subscription.close()


@pytest.mark.asyncio
async def test_read_failure_marks_order_stale_and_keeps_state() -> None:
    backend = AsyncMock()
    backend.get_order.side_effect = GatewayError("service unavailable", status_code=503)
    tracker = OrderLifecycleTracker(backend)
    tracker.track(_order())

    with pytest.raises(LifecycleError):
        await tracker.get_order("o1")

    held = tracker.get("o1")
    assert held is not None
    assert held.stale
    assert held.last_error is not None
    assert held.order.status == OrderStatus.OPEN

    backend.get_order.side_effect = None
    backend.get_order.return_value = _order(updated=BASE_TIME + timedelta(seconds=5))
    refreshed = await tracker.get_order("o1")
    assert not refreshed.stale


@pytest.mark.asyncio
async def test_unknown_order_raises_not_found(brokerage: SimulatedBrokerage) -> None:
    tracker = OrderLifecycleTracker(brokerage)

    with pytest.raises(OrderNotFoundError):
        await tracker.get_order("missing")


@pytest.mark.asyncio
async def test_list_orders_is_reverse_chronological() -> None:
    now = datetime.now(UTC)
    backend = AsyncMock()
    backend.list_orders.return_value = [
        _order("o1", placed=now - timedelta(hours=3), updated=now - timedelta(hours=3)),
        _order("o3", placed=now - timedelta(hours=1), updated=now - timedelta(hours=1)),
        _order("o2", placed=now - timedelta(hours=2), updated=now - timedelta(hours=2)),
    ]
    tracker = OrderLifecycleTracker(backend)

    items = await tracker.list_orders(ACCOUNT, days=7)

    assert [item.order_id for item in items] == ["o3", "o2", "o1"]
    since = backend.list_orders.await_args.kwargs["since"]
    assert now - timedelta(days=7, minutes=1) < since < now - timedelta(days=6)


@pytest.mark.asyncio
async def test_list_failure_marks_all_orders_stale() -> None:
    backend = AsyncMock()
    backend.list_orders.side_effect = GatewayError("timeout", status_code=504)
    tracker = OrderLifecycleTracker(backend)
    tracker.track(_order("o1"))
    tracker.track(_order("o2"))

    with pytest.raises(LifecycleError):
        await tracker.list_orders(ACCOUNT)

    assert all(item.stale for item in tracker.orders)


@pytest.mark.asyncio
async def test_monitor_focus_polls_until_filled(brokerage: SimulatedBrokerage) -> None:
    await _place(brokerage)
    await brokerage.acknowledge("o1")
    tracker = OrderLifecycleTracker(brokerage)
    monitor = OrderMonitor(tracker, ACCOUNT, list_interval=10.0, focus_interval=0.01)

    async with monitor:
        assert [item.order_id for item in monitor.open_orders] == ["o1"]
        await monitor.focus("o1")
        assert monitor.focused_order_id == "o1"

        await brokerage.simulate_fill("o1", Decimal("4"), Decimal("149.50"))
        await brokerage.simulate_fill("o1", Decimal("6"), Decimal("150.00"))

        await _eventually(lambda: tracker.get("o1").order.status == OrderStatus.FILLED)

        held = tracker.get("o1")
        assert held is not None
        assert held.order.filled_quantity == Decimal("10")
        assert held.order.avg_fill_price == Decimal("149.80")
        assert monitor.open_orders == []
        assert [item.order_id for item in monitor.closed_orders] == ["o1"]

    assert not monitor.running
    assert monitor.focused_order_id is None


@pytest.mark.asyncio
async def test_monitor_list_loop_survives_failures() -> None:
    backend = AsyncMock()
    now = datetime.now(UTC)
    backend.list_orders.side_effect = [
        [],
        GatewayError("boom", status_code=503),
        [_order("o1", placed=now, updated=now)],
        *([] for _ in range(100)),
    ]
    tracker = OrderLifecycleTracker(backend)
    monitor = OrderMonitor(tracker, ACCOUNT, list_interval=0.01, focus_interval=0.005)

    async with monitor:
        await _eventually(lambda: tracker.get("o1") is not None)

    assert backend.list_orders.await_count >= 3


@pytest.mark.asyncio
async def test_monitor_cancel_uses_account(brokerage: SimulatedBrokerage) -> None:
    await _place(brokerage)
    await brokerage.acknowledge("o1")
    tracker = OrderLifecycleTracker(brokerage)
    monitor = OrderMonitor(tracker, ACCOUNT)

    await monitor.refresh()
    item = await monitor.cancel("o1")

    assert item.order.cancel_requested
    assert (await brokerage.get_order("o1")).status == OrderStatus.CANCELLED


class _GatedBackend:
    """Lifecycle backend whose get_order responses can be held back."""

    def __init__(self) -> None:
        self.responses: list[tuple[asyncio.Event | None, PlacedOrder]] = []
        self.cancel_order = AsyncMock()
        self.list_orders = AsyncMock(return_value=[])

    async def get_order(self, order_id: str, *, account_id: str | None = None) -> PlacedOrder:
        gate, order = self.responses.pop(0)
        if gate is not None:
            await gate.wait()
        return order


@pytest.mark.asyncio
async def test_overlapping_reads_with_equal_timestamps_keep_newest_issued() -> None:
    backend = _GatedBackend()
    release = asyncio.Event()
    backend.responses = [
        (release, _order(status=OrderStatus.OPEN)),
        (None, _order(status=OrderStatus.CANCELLED)),
    ]
    tracker = OrderLifecycleTracker(backend)

    slow = asyncio.create_task(tracker.get_order("o1"))
    await asyncio.sleep(0)
    fast = await tracker.get_order("o1")
    assert fast.order.status == OrderStatus.CANCELLED

    release.set()
    await slow

    held = tracker.get("o1")
    assert held is not None
    assert held.order.status == OrderStatus.CANCELLED


@pytest.mark.asyncio
async def test_overlapping_list_and_get_keep_newest_issued() -> None:
    backend = _GatedBackend()
    release = asyncio.Event()
    now = datetime.now(UTC)

    async def slow_listing(account_id: str, *, since: datetime) -> list[PlacedOrder]:
        await release.wait()
        return [_order(status=OrderStatus.OPEN, placed=now, updated=now)]

    backend.list_orders = AsyncMock(side_effect=slow_listing)
    backend.responses = [
        (None, _order(status=OrderStatus.PARTIALLY_FILLED, placed=now, updated=now))
    ]
    tracker = OrderLifecycleTracker(backend)

    listing = asyncio.create_task(tracker.list_orders(ACCOUNT))
    await asyncio.sleep(0)
    await tracker.get_order("o1")
    release.set()
    await listing

    held = tracker.get("o1")
    assert held is not None
    assert held.order.status == OrderStatus.PARTIALLY_FILLED


def test_terminal_status_is_not_reverted_by_equal_timestamp() -> None:
    tracker = OrderLifecycleTracker(AsyncMock())
    tracker.track(_order(status=OrderStatus.FILLED))

    applied = tracker.merge(_order(status=OrderStatus.OPEN))

    assert not applied
    held = tracker.get("o1")
    assert held is not None
    assert held.order.status == OrderStatus.FILLED


@pytest.mark.asyncio
async def test_unexecuted_cancel_can_be_requested_again() -> None:
    backend = AsyncMock()
    backend.get_order.return_value = _order(updated=BASE_TIME + timedelta(seconds=1))
    tracker = OrderLifecycleTracker(backend)
    tracker.track(_order())

    await tracker.cancel("o1")
    for _ in range(CANCEL_PENDING_MAX_READS - 1):
        item = await tracker.get_order("o1")
        assert item.order.cancel_requested

    item = await tracker.get_order("o1")
    assert not item.order.cancel_requested
    assert item.order.status == OrderStatus.OPEN

    item = await tracker.cancel("o1")
    assert item.order.cancel_requested
    assert backend.cancel_order.await_count == 2


@pytest.mark.asyncio
async def test_focus_loop_survives_unexpected_errors() -> None:
    backend = AsyncMock()
    backend.list_orders.return_value = []
    filled = _order(status=OrderStatus.FILLED, updated=BASE_TIME + timedelta(seconds=1))
    backend.get_order.side_effect = [
        _order(),
        RuntimeError("decoder exploded"),
        *([filled] * 200),
    ]
    tracker = OrderLifecycleTracker(backend)
    monitor = OrderMonitor(tracker, ACCOUNT, list_interval=10.0, focus_interval=0.005)

    async with monitor:
        await monitor.focus("o1")
        await _eventually(lambda: tracker.get("o1").order.status == OrderStatus.FILLED)
        assert monitor.running

    assert backend.get_order.await_count >= 3


@pytest.mark.asyncio
async def test_list_loop_marks_orders_stale_on_unexpected_errors() -> None:
    backend = AsyncMock()
    now = datetime.now(UTC)
    backend.list_orders.side_effect = [
        [_order("o1", placed=now, updated=now)],
        *(RuntimeError("decoder exploded") for _ in range(200)),
    ]
    tracker = OrderLifecycleTracker(backend)
    monitor = OrderMonitor(tracker, ACCOUNT, list_interval=0.005, focus_interval=0.001)

    async with monitor:
        await _eventually(lambda: tracker.get("o1").stale)
        await _eventually(lambda: backend.list_orders.await_count >= 3)
        assert monitor.running

    held = tracker.get("o1")
    assert held is not None
    assert held.order.status == OrderStatus.OPEN
    assert held.last_error == "decoder exploded"
