"""Order monitoring commands for the order desk CLI."""

import asyncio

import typer
from loguru import logger
from rich.console import Console

from order_desk.core.config import OrderDeskConfig, load_config
from order_desk.core.events import EventBus
from order_desk.dashboard import OrderDashboard, build_orders_table
from order_desk.errors import AlreadyFinalizedError, OrderDeskError
from order_desk.gateway.base import BrokerageGateway
from order_desk.monitor import OrderLifecycleTracker, OrderMonitor, TrackedOrder

from .utils import build_gateway, close_gateway, open_gateway, resolve_account, setup_logging

monitoring_app = typer.Typer(
    name="monitoring",
    help="Order status and cancellation commands",
)


def _print_tracked(item: TrackedOrder) -> None:
    order = item.order
    typer.echo(f"Order {order.order_id}: {order.status.value}")
    typer.echo(f"  {order.side.value} {order.quantity} {order.symbol} ({order.order_type.value})")
    typer.echo(f"  Filled: {order.filled_quantity}/{order.quantity}")
    if order.avg_fill_price is not None:
        typer.echo(f"  Avg fill price: {order.avg_fill_price:.2f}")
    if order.cancel_requested and not order.is_terminal:
        typer.echo("  Cancellation requested")
    typer.echo(f"  Placed: {order.placed_at.isoformat()}")
    typer.echo(f"  Updated: {order.last_updated_at.isoformat()}")


async def list_account_orders(
    gateway: BrokerageGateway, account_id: str, days: int
) -> list[TrackedOrder]:
    await open_gateway(gateway)
    try:
        tracker = OrderLifecycleTracker(gateway)
        return await tracker.list_orders(account_id, days=days)
    finally:
        await close_gateway(gateway)


async def fetch_order(
    gateway: BrokerageGateway, order_id: str, account_id: str | None
) -> TrackedOrder:
    await open_gateway(gateway)
    try:
        tracker = OrderLifecycleTracker(gateway)
        return await tracker.get_order(order_id, account_id=account_id)
    finally:
        await close_gateway(gateway)


async def cancel_account_order(
    gateway: BrokerageGateway, order_id: str, account_id: str | None
) -> TrackedOrder:
    await open_gateway(gateway)
    try:
        tracker = OrderLifecycleTracker(gateway)
        await tracker.get_order(order_id, account_id=account_id)
        return await tracker.cancel(order_id, account_id=account_id)
    finally:
        await close_gateway(gateway)


async def watch_orders(
    config: OrderDeskConfig,
    gateway: BrokerageGateway,
    account_id: str,
    focus: str | None,
    duration: float | None,
) -> None:
    """Poll the account's orders and render them live."""
    await open_gateway(gateway)
    event_bus = EventBus()
    tracker = OrderLifecycleTracker(gateway, event_bus=event_bus)
    monitor = OrderMonitor(
        tracker,
        account_id,
        list_interval=config.order_list_poll_interval,
        focus_interval=config.order_poll_interval,
        history_days=config.order_history_days,
    )
    dashboard = OrderDashboard(monitor, event_bus)
    try:
        async with monitor:
            if focus:
                await monitor.focus(focus)
            await dashboard.run(duration)
    finally:
        await close_gateway(gateway)


@monitoring_app.command()
def orders(
    account: str | None = typer.Option(None, "--account", "-a", help="Brokerage account id"),
    days: int | None = typer.Option(None, "--days", min=1, help="Lookback window in days"),
    open_only: bool = typer.Option(False, "--open", help="Only show orders still working"),
    sim: bool = typer.Option(False, "--sim", help="Use the simulated brokerage (demo order o1)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """List recent orders for an account."""
    config = load_config()
    setup_logging(config.log_dir, verbose)
    account_id = resolve_account(config, account)
    gateway = build_gateway(config, sim)

    try:
        items = asyncio.run(
            list_account_orders(gateway, account_id, days or config.order_history_days)
        )
    except OrderDeskError as exc:
        logger.error(f"Could not list orders: {exc}")
        raise typer.Exit(code=1) from exc

    if open_only:
        items = [item for item in items if not item.order.is_terminal]
    Console().print(build_orders_table(items, title=f"Orders for {account_id}"))


@monitoring_app.command()
def status(
    order_id: str = typer.Argument(..., help="Order id"),
    account: str | None = typer.Option(None, "--account", "-a", help="Brokerage account id"),
    sim: bool = typer.Option(False, "--sim", help="Use the simulated brokerage (demo order o1)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Show the current status of one order."""
    config = load_config()
    setup_logging(config.log_dir, verbose)
    gateway = build_gateway(config, sim)

    try:
        item = asyncio.run(fetch_order(gateway, order_id, account or config.default_account_id))
    except OrderDeskError as exc:
        logger.error(f"Could not load order {order_id}: {exc}")
        raise typer.Exit(code=1) from exc

    _print_tracked(item)


@monitoring_app.command()
def cancel(
    order_id: str = typer.Argument(..., help="Order id"),
    account: str | None = typer.Option(None, "--account", "-a", help="Brokerage account id"),
    sim: bool = typer.Option(False, "--sim", help="Use the simulated brokerage (demo order o1)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Request cancellation of an open order."""
    config = load_config()
    setup_logging(config.log_dir, verbose)
    gateway = build_gateway(config, sim)

    try:
        item = asyncio.run(
            cancel_account_order(gateway, order_id, account or config.default_account_id)
        )
    except AlreadyFinalizedError as exc:
        logger.warning(str(exc))
        raise typer.Exit(code=1) from exc
    except OrderDeskError as exc:
        logger.error(f"Could not cancel order {order_id}: {exc}")
        raise typer.Exit(code=1) from exc

    typer.echo(f"Cancellation requested for order {order_id}")
    _print_tracked(item)


@monitoring_app.command()
def watch(
    account: str | None = typer.Option(None, "--account", "-a", help="Brokerage account id"),
    focus: str | None = typer.Option(
        None, "--focus", "-f", help="Poll this order at the faster focused interval"
    ),
    duration: float | None = typer.Option(
        None, "--duration", min=0, help="Stop after this many seconds"
    ),
    sim: bool = typer.Option(False, "--sim", help="Use the simulated brokerage (demo order o1)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Watch order statuses update live until interrupted."""
    config = load_config()
    setup_logging(config.log_dir, verbose)
    account_id = resolve_account(config, account)
    gateway = build_gateway(config, sim)

    try:
        asyncio.run(watch_orders(config, gateway, account_id, focus, duration))
    except KeyboardInterrupt:
        typer.echo("Stopped watching orders.")
    except OrderDeskError as exc:
        logger.error(f"Order watch failed: {exc}")
        raise typer.Exit(code=1) from exc
