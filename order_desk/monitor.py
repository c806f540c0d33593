"""Order lifecycle tracking and status polling."""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Iterable
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from loguru import logger

from order_desk.core.constants import (
    CANCEL_PENDING_MAX_READS,
    ORDER_FOCUS_POLL_SECONDS,
    ORDER_HISTORY_DAYS,
    ORDER_LIST_POLL_SECONDS,
)
from order_desk.core.events import EventBus, EventTopic, OrderStatusEvent
from order_desk.errors import (
    AlreadyFinalizedError,
    GatewayError,
    LifecycleError,
)
from order_desk.gateway.base import OrderLifecycleBackend
from order_desk.models import PlacedOrder


@dataclass(slots=True)
class TrackedOrder:
    """Last known state of a placed order plus its freshness."""

    order: PlacedOrder
    stale: bool = False
    last_error: str | None = None
    refreshed_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    read_seq: int = 0
    cancel_seq: int = 0
    cancel_reads_left: int = CANCEL_PENDING_MAX_READS

    @property
    def order_id(self) -> str:
        return self.order.order_id


class OrderLifecycleTracker:
    """Authoritative local collection of placed orders.

    Status only ever comes from the brokerage. The single client-side write is
    the ``cancel_requested`` mark set after a cancel request is accepted.

    Every read takes a sequence number when it is issued. A response is applied
    only if no later-issued read has been applied already, its timestamp is not
    older than the held one, and it does not move a terminal order back to a
    live status.
    """

    def __init__(
        self, backend: OrderLifecycleBackend, *, event_bus: EventBus | None = None
    ) -> None:
        self._backend = backend
        self._event_bus = event_bus
        self._orders: dict[str, TrackedOrder] = {}
        self._sequence = itertools.count(1)

    @property
    def orders(self) -> list[TrackedOrder]:
        """Tracked orders, newest first."""
        return sorted(self._orders.values(), key=lambda item: item.order.placed_at, reverse=True)

    def get(self, order_id: str) -> TrackedOrder | None:
        return self._orders.get(order_id)

    def track(self, order: PlacedOrder) -> TrackedOrder:
        """Adopt a freshly committed order."""
        self.merge(order)
        return self._orders[order.order_id]

    def merge(self, order: PlacedOrder, *, read_seq: int | None = None) -> bool:
        """Apply a brokerage read unless a newer one is already held.

        Args:
            order: The order as reported by the brokerage
            read_seq: Sequence number taken when the read was issued; reads
                without one count as issued now

        Returns:
            True if the update was applied
        """
        if read_seq is None:
            read_seq = next(self._sequence)
        held = self._orders.get(order.order_id)
        now = datetime.now(UTC)
        if held is not None:
            superseded = _superseded_by(held, order, read_seq)
            if superseded:
                logger.debug("Ignoring {} update for {}", superseded, order.order_id)
                held.stale = False
                held.refreshed_at = now
                return False
            order = self._carry_cancel_mark(held, order, read_seq)

        changed = held is None or held.order != order
        if held is None:
            self._orders[order.order_id] = TrackedOrder(
                order=order, refreshed_at=now, read_seq=read_seq
            )
        else:
            if held.order.status != order.status:
                logger.info(
                    f"Order {order.order_id} {held.order.status.value} -> {order.status.value}"
                )
            held.order = order
            held.stale = False
            held.last_error = None
            held.refreshed_at = now
            held.read_seq = read_seq
        if changed:
            self._publish(self._orders[order.order_id])
        return True

    async def list_orders(
        self, account_id: str, days: int = ORDER_HISTORY_DAYS
    ) -> list[TrackedOrder]:
        """Refresh the account's recent orders.

        Raises:
            LifecycleError: The listing could not be read; held orders are marked stale
        """
        since = datetime.now(UTC) - timedelta(days=days)
        read_seq = next(self._sequence)
        try:
            orders = await self._backend.list_orders(account_id, since=since)
        except (GatewayError, TimeoutError, ConnectionError) as exc:
            self.mark_stale(self._account_orders(account_id), exc)
            raise LifecycleError(f"Could not load orders: {exc}") from exc

        for order in orders:
            self.merge(order, read_seq=read_seq)
        return [
            item
            for item in self.orders
            if item.order.placed_at >= since and item.order.account_id in (None, account_id)
        ]

    async def get_order(self, order_id: str, *, account_id: str | None = None) -> TrackedOrder:
        """Refresh a single order.

        Raises:
            OrderNotFoundError: The brokerage does not know the order
            LifecycleError: The order could not be read; it is marked stale
        """
        read_seq = next(self._sequence)
        try:
            order = await self._backend.get_order(order_id, account_id=account_id)
        except LifecycleError as exc:
            self.mark_stale(self._held(order_id), exc)
            raise
        except (GatewayError, TimeoutError, ConnectionError) as exc:
            self.mark_stale(self._held(order_id), exc)
            raise LifecycleError(
                f"Could not load order {order_id}: {exc}", order_id=order_id
            ) from exc

        self.merge(order, read_seq=read_seq)
        return self._orders[order_id]

    async def cancel(self, order_id: str, *, account_id: str | None = None) -> TrackedOrder:
        """Request cancellation of an open order.

        Raises:
            AlreadyFinalizedError: The order is already Filled, Cancelled or Rejected
            OrderNotFoundError: The brokerage does not know the order
            CancelNotSupportedError: The brokerage cannot cancel orders
            LifecycleError: The request failed; nothing was changed
        """
        held = self._orders.get(order_id)
        if held is not None:
            if held.order.is_terminal:
                raise AlreadyFinalizedError(order_id, held.order.status.value)
            if held.order.cancel_requested:
                logger.debug("Cancel for {} already pending", order_id)
                return held
            account_id = account_id or held.order.account_id

        try:
            await self._backend.cancel_order(order_id, account_id=account_id)
        except (GatewayError, TimeoutError, ConnectionError) as exc:
            raise LifecycleError(
                f"Could not cancel order {order_id}: {exc}", order_id=order_id
            ) from exc

        logger.info(f"Cancellation requested for order {order_id}")
        held = self._orders.get(order_id)
        if held is None:
            held = await self.get_order(order_id, account_id=account_id)
        if not held.order.is_terminal:
            held.order = held.order.model_copy(update={"cancel_requested": True})
            held.cancel_seq = next(self._sequence)
            held.cancel_reads_left = CANCEL_PENDING_MAX_READS
            self._publish(held)
        return held

    def mark_stale(self, items: Iterable[TrackedOrder], exc: Exception) -> None:
        """Flag orders whose refresh failed, keeping their last known state."""
        for item in items:
            if not item.stale:
                item.stale = True
                item.last_error = str(exc)
                self._publish(item)
            else:
                item.last_error = str(exc)

    def _account_orders(self, account_id: str) -> list[TrackedOrder]:
        return [
            item for item in self._orders.values() if item.order.account_id in (None, account_id)
        ]

    def _held(self, order_id: str) -> list[TrackedOrder]:
        held = self._orders.get(order_id)
        return [held] if held is not None else []

    def _carry_cancel_mark(
        self, held: TrackedOrder, order: PlacedOrder, read_seq: int
    ) -> PlacedOrder:
        if not held.order.cancel_requested or order.cancel_requested or order.is_terminal:
            return order
        if read_seq > held.cancel_seq:
            held.cancel_reads_left -= 1
        if held.cancel_reads_left > 0:
            return order.model_copy(update={"cancel_requested": True})
        logger.warning(
            f"Order {order.order_id} still {order.status.value} after cancel request; "
            "it can be cancelled again"
        )
        return order

    def _publish(self, item: TrackedOrder) -> None:
        if self._event_bus is None:
            return
        order = item.order
        self._event_bus.publish_nowait(
            EventTopic.ORDER_STATUS,
            OrderStatusEvent(
                order_id=order.order_id,
                status=order.status,
                symbol=order.symbol,
                side=order.side,
                quantity=order.quantity,
                filled_quantity=order.filled_quantity,
                avg_fill_price=order.avg_fill_price,
                cancel_requested=order.cancel_requested,
                stale=item.stale,
                timestamp=datetime.now(UTC),
            ),
        )


def _superseded_by(held: TrackedOrder, order: PlacedOrder, read_seq: int) -> str | None:
    """Name the reason ``order`` must not replace ``held``, if any."""
    if read_seq < held.read_seq:
        return "out-of-order"
    if order.last_updated_at < held.order.last_updated_at:
        return "older"
    if held.order.is_terminal and not order.is_terminal:
        return f"{order.status.value} after {held.order.status.value}"
    return None


class OrderMonitor:
    """Polls one account's orders for a single view.

    The list loop runs while the monitor is started; focusing an order adds a
    faster loop for that order alone.
    """

    def __init__(
        self,
        tracker: OrderLifecycleTracker,
        account_id: str,
        *,
        list_interval: float = ORDER_LIST_POLL_SECONDS,
        focus_interval: float = ORDER_FOCUS_POLL_SECONDS,
        history_days: int = ORDER_HISTORY_DAYS,
    ) -> None:
        self.tracker = tracker
        self.account_id = account_id
        self.list_interval = list_interval
        self.focus_interval = focus_interval
        self.history_days = history_days
        self._focused: str | None = None
        self._list_task: asyncio.Task[None] | None = None
        self._focus_task: asyncio.Task[None] | None = None

    @property
    def focused_order_id(self) -> str | None:
        return self._focused

    @property
    def running(self) -> bool:
        return self._list_task is not None and not self._list_task.done()

    @property
    def orders(self) -> list[TrackedOrder]:
        since = datetime.now(UTC) - timedelta(days=self.history_days)
        return [
            item
            for item in self.tracker.orders
            if item.order.account_id in (None, self.account_id) and item.order.placed_at >= since
        ]

    @property
    def open_orders(self) -> list[TrackedOrder]:
        return [item for item in self.orders if not item.order.is_terminal]

    @property
    def closed_orders(self) -> list[TrackedOrder]:
        return [item for item in self.orders if item.order.is_terminal]

    async def refresh(self) -> list[TrackedOrder]:
        return await self.tracker.list_orders(self.account_id, days=self.history_days)

    async def cancel(self, order_id: str) -> TrackedOrder:
        return await self.tracker.cancel(order_id, account_id=self.account_id)

    async def start(self) -> None:
        if self.running:
            return
        try:
            await self.refresh()
        except LifecycleError as exc:
            logger.warning(f"Initial order refresh failed: {exc}")
        except Exception as exc:
            logger.error(f"Unexpected initial order refresh failure: {exc}")
            self.tracker.mark_stale(self.orders, exc)
        self._list_task = asyncio.create_task(self._run_list_loop())
        logger.info(
            "Started order monitor for {} (list every {}s)", self.account_id, self.list_interval
        )

    async def stop(self) -> None:
        await self.unfocus()
        if self._list_task is not None:
            self._list_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._list_task
            self._list_task = None
            logger.info("Stopped order monitor for {}", self.account_id)

    async def focus(self, order_id: str) -> TrackedOrder | None:
        """Poll one order at the focused interval until unfocused."""
        await self.unfocus()
        self._focused = order_id
        item: TrackedOrder | None = None
        try:
            item = await self.tracker.get_order(order_id, account_id=self.account_id)
        except LifecycleError as exc:
            logger.warning(f"Could not refresh order {order_id}: {exc}")
            item = self.tracker.get(order_id)
        except Exception as exc:
            logger.error("Unexpected failure refreshing order {}: {}", order_id, exc)
            self.tracker.mark_stale(self._held(order_id), exc)
            item = self.tracker.get(order_id)
        self._focus_task = asyncio.create_task(self._run_focus_loop(order_id))
        return item

    async def unfocus(self) -> None:
        self._focused = None
        if self._focus_task is None:
            return
        self._focus_task.cancel()
        with suppress(asyncio.CancelledError):
            await self._focus_task
        self._focus_task = None

    def _held(self, order_id: str) -> list[TrackedOrder]:
        item = self.tracker.get(order_id)
        return [item] if item is not None else []

    async def __aenter__(self) -> OrderMonitor:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    async def _run_list_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.list_interval)
                try:
                    await self.refresh()
                except LifecycleError as exc:
                    logger.warning("Order list refresh failed: {}", exc)
                except Exception as exc:
                    logger.error("Unexpected order list refresh failure: {}", exc)
                    self.tracker.mark_stale(self.orders, exc)
        except asyncio.CancelledError:
            logger.debug("Order list loop cancelled")
            raise

    async def _run_focus_loop(self, order_id: str) -> None:
        try:
            while True:
                await asyncio.sleep(self.focus_interval)
                try:
                    item = await self.tracker.get_order(order_id, account_id=self.account_id)
                except LifecycleError as exc:
                    logger.warning("Order {} refresh failed: {}", order_id, exc)
                    continue
                except Exception as exc:
                    logger.error("Unexpected failure refreshing order {}: {}", order_id, exc)
                    self.tracker.mark_stale(self._held(order_id), exc)
                    continue
                if item.order.is_terminal:
                    logger.debug("Focused order {} reached {}", order_id, item.order.status.value)
        except asyncio.CancelledError:
            logger.debug("Focus loop for {} cancelled", order_id)
            raise
