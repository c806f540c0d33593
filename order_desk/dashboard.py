"""Live order status table for terminal monitoring."""

from __future__ import annotations

import asyncio
from contextlib import suppress
from datetime import UTC, datetime

from rich.console import Console
from rich.live import Live
from rich.table import Table
from rich.text import Text

from order_desk.core.events import EventBus, EventSubscription, EventTopic, OrderStatusEvent
from order_desk.models import OrderStatus
from order_desk.monitor import OrderMonitor, TrackedOrder

_STATUS_STYLES = {
    OrderStatus.SUBMITTED: "yellow",
    OrderStatus.OPEN: "cyan",
    OrderStatus.PARTIALLY_FILLED: "blue",
    OrderStatus.FILLED: "green",
    OrderStatus.CANCELLED: "dim",
    OrderStatus.REJECTED: "red",
}


def build_orders_table(items: list[TrackedOrder], title: str = "Orders") -> Table:
    """Render tracked orders as a rich table."""
    table = Table(title=title, expand=True)
    table.add_column("Order", style="bold")
    table.add_column("Symbol")
    table.add_column("Side")
    table.add_column("Type")
    table.add_column("Filled", justify="right")
    table.add_column("Avg Price", justify="right")
    table.add_column("Status")
    table.add_column("Placed")

    for item in items:
        order = item.order
        status = Text(order.status.value, style=_STATUS_STYLES.get(order.status, ""))
        if order.cancel_requested and not order.is_terminal:
            status.append(" (cancel requested)", style="italic")
        if item.stale:
            status.append(" [stale]", style="bold red")
        table.add_row(
            order.order_id,
            order.symbol,
            order.side.value,
            order.order_type.value,
            f"{order.filled_quantity}/{order.quantity}",
            f"{order.avg_fill_price:.2f}" if order.avg_fill_price is not None else "-",
            status,
            order.placed_at.astimezone(UTC).strftime("%Y-%m-%d %H:%M:%S"),
        )
    if not items:
        table.add_row("-", "", "", "", "", "", Text("No orders", style="dim"), "")
    return table


class OrderDashboard:
    """Re-renders the order table whenever an order status event arrives."""

    def __init__(
        self,
        monitor: OrderMonitor,
        event_bus: EventBus,
        console: Console | None = None,
    ) -> None:
        self.monitor = monitor
        self.event_bus = event_bus
        self.console = console or Console()
        self.last_update = datetime.now(UTC)
        self._subscription: EventSubscription | None = None

    def render(self) -> Table:
        title = (
            f"Orders for {self.monitor.account_id} "
            f"(updated {self.last_update.strftime('%H:%M:%S')})"
        )
        return build_orders_table(self.monitor.orders, title=title)

    async def run(self, duration: float | None = None) -> None:
        """Render until cancelled or ``duration`` seconds elapse."""
        self._subscription = self.event_bus.subscribe(EventTopic.ORDER_STATUS)
        try:
            with Live(self.render(), console=self.console, refresh_per_second=2) as live:
                task = asyncio.create_task(self._process_events(live, self._subscription))
                try:
                    if duration is None:
                        await task
                    else:
                        await asyncio.sleep(duration)
                finally:
                    task.cancel()
                    with suppress(asyncio.CancelledError):
                        await task
        finally:
            self._subscription.close()
            self._subscription = None

    async def _process_events(self, live: Live, subscription: EventSubscription) -> None:
        async for event in subscription:
            if isinstance(event, OrderStatusEvent):
                self.last_update = event.timestamp
                live.update(self.render())
