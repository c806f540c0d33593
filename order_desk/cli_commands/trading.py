"""Trading commands for the order desk CLI."""

import asyncio

import typer
from loguru import logger

from order_desk.core.config import OrderDeskConfig, load_config
from order_desk.core.events import EventBus, EventTopic, QuoteEvent
from order_desk.errors import OrderDeskError
from order_desk.gateway.base import BrokerageGateway
from order_desk.models import (
    ImpactQuote,
    OrderSide,
    OrderType,
    PlacedOrder,
    Quote,
    TimeInForce,
)
from order_desk.quotes import QuotePoller
from order_desk.safety import OrderGuard
from order_desk.workflow import TradeWorkflowController

from .utils import (
    build_gateway,
    close_gateway,
    open_gateway,
    parse_decimal,
    resolve_account,
    setup_logging,
)

trading_app = typer.Typer(
    name="trading",
    help="Quote, preview and place orders",
)


def _print_impact(impact: ImpactQuote) -> None:
    intent = impact.intent
    typer.echo("=== Order Preview ===")
    typer.echo(
        f"{intent.side.value} {intent.quantity} {intent.symbol} "
        f"{intent.kind.value} ({intent.time_in_force.value})"
    )
    if intent.reference_price is not None:
        typer.echo(f"Price: {intent.reference_price}")
    for line in impact.lines:
        typer.echo(f"  {line.label}: {line.value}")
    typer.echo(f"Estimated total: {impact.estimated_total}")
    for warning in impact.warnings:
        typer.echo(f"Warning: {warning}")
    if not impact.accepted:
        typer.echo(f"Rejected: {impact.rejection_reason}")


def _print_order(order: PlacedOrder) -> None:
    typer.echo(f"Order {order.order_id}: {order.status.value}")
    typer.echo(f"  {order.side.value} {order.quantity} {order.symbol} ({order.order_type.value})")


def _build_controller(
    config: OrderDeskConfig, gateway: BrokerageGateway, account_id: str
) -> TradeWorkflowController:
    return TradeWorkflowController(
        gateway,
        account_id=account_id,
        guard=OrderGuard(max_order_quantity=config.max_order_quantity),
    )


def _intent_fields(
    symbol: str,
    side: OrderSide,
    quantity: str,
    order_type: OrderType,
    limit_price: str | None,
    stop_price: str | None,
    time_in_force: TimeInForce,
) -> dict[str, object]:
    fields: dict[str, object] = {
        "symbol": symbol,
        "side": side,
        "quantity": parse_decimal(quantity, "quantity"),
        "order_type": order_type,
        "time_in_force": time_in_force,
    }
    limit_decimal = parse_decimal(limit_price, "limit price")
    if limit_decimal is not None:
        fields["limit_price"] = limit_decimal
    stop_decimal = parse_decimal(stop_price, "stop price")
    if stop_decimal is not None:
        fields["stop_price"] = stop_decimal
    return fields


async def preview_order(
    config: OrderDeskConfig, gateway: BrokerageGateway, account_id: str, fields: dict[str, object]
) -> ImpactQuote:
    await open_gateway(gateway)
    try:
        controller = _build_controller(config, gateway, account_id)
        return await controller.request_preview(fields)
    finally:
        await close_gateway(gateway)


async def place_order(
    config: OrderDeskConfig,
    gateway: BrokerageGateway,
    account_id: str,
    fields: dict[str, object],
    assume_yes: bool,
) -> PlacedOrder | None:
    """Preview, ask for confirmation and commit the previewed order."""
    await open_gateway(gateway)
    try:
        controller = _build_controller(config, gateway, account_id)
        impact = await controller.request_preview(fields)
        _print_impact(impact)
        if not controller.can_confirm:
            raise typer.Exit(code=1)
        if not assume_yes and not typer.confirm("Place this order?"):
            typer.echo("Order not placed.")
            controller.reset()
            return None
        return await controller.confirm(impact)
    finally:
        await close_gateway(gateway)


def _print_quote(result: Quote, stale: bool = False) -> None:
    suffix = " [stale]" if stale else ""
    typer.echo(f"{result.symbol}: {result.price}{suffix}")
    if result.bid is not None and result.ask is not None:
        typer.echo(f"  bid {result.bid} / ask {result.ask}")
    typer.echo(f"  as of {result.as_of.isoformat()}")


async def watch_quote(
    config: OrderDeskConfig, gateway: BrokerageGateway, symbol: str, duration: float
) -> None:
    """Print every polled quote for ``duration`` seconds."""
    await open_gateway(gateway)
    event_bus = EventBus()
    subscription = event_bus.subscribe(EventTopic.QUOTE)
    poller = QuotePoller(
        gateway, symbol, interval=config.quote_poll_interval, event_bus=event_bus
    )
    loop = asyncio.get_running_loop()
    deadline = loop.time() + duration
    try:
        async with poller:
            while (remaining := deadline - loop.time()) > 0:
                try:
                    event = await asyncio.wait_for(subscription.get(), timeout=remaining)
                except TimeoutError:
                    break
                if isinstance(event, QuoteEvent) and event.quote is not None:
                    _print_quote(event.quote, event.stale)
    finally:
        subscription.close()
        await close_gateway(gateway)


@trading_app.command()
def quote(
    symbol: str = typer.Argument(..., help="Symbol to quote"),
    watch: float | None = typer.Option(
        None, "--watch", "-w", help="Keep polling for this many seconds"
    ),
    sim: bool = typer.Option(False, "--sim", help="Use the simulated brokerage"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Show the current quote for a symbol."""
    config = load_config()
    setup_logging(config.log_dir, verbose)
    gateway = build_gateway(config, sim)

    async def _fetch() -> None:
        await open_gateway(gateway)
        try:
            result = await gateway.get_quote(symbol)
        finally:
            await close_gateway(gateway)
        _print_quote(result)

    try:
        if watch is not None:
            asyncio.run(watch_quote(config, gateway, symbol, watch))
        else:
            asyncio.run(_fetch())
    except KeyboardInterrupt:
        typer.echo("Stopped watching.")
    except OrderDeskError as exc:
        logger.error(f"Quote failed: {exc}")
        raise typer.Exit(code=1) from exc


@trading_app.command()
def preview(
    symbol: str = typer.Option(..., "--symbol", "-s", help="Symbol to trade"),
    side: OrderSide = typer.Option(OrderSide.BUY, "--side", "-d", help="Order side"),
    quantity: str = typer.Option(..., "--quantity", "-q", help="Number of shares"),
    order_type: OrderType = typer.Option(OrderType.MARKET, "--type", "-t", help="Order type"),
    limit_price: str | None = typer.Option(None, "--limit", help="Limit price"),
    stop_price: str | None = typer.Option(None, "--stop", help="Stop price"),
    time_in_force: TimeInForce = typer.Option(TimeInForce.DAY, "--tif", help="Time in force"),
    account: str | None = typer.Option(None, "--account", "-a", help="Brokerage account id"),
    sim: bool = typer.Option(False, "--sim", help="Use the simulated brokerage"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Show the estimated impact of an order without placing it."""
    config = load_config()
    setup_logging(config.log_dir, verbose)
    account_id = resolve_account(config, account)
    fields = _intent_fields(
        symbol, side, quantity, order_type, limit_price, stop_price, time_in_force
    )
    gateway = build_gateway(config, sim)

    try:
        impact = asyncio.run(preview_order(config, gateway, account_id, fields))
    except OrderDeskError as exc:
        logger.error(f"Preview failed: {exc}")
        raise typer.Exit(code=1) from exc

    _print_impact(impact)
    if not impact.accepted:
        raise typer.Exit(code=1)


@trading_app.command()
def place(
    symbol: str = typer.Option(..., "--symbol", "-s", help="Symbol to trade"),
    side: OrderSide = typer.Option(OrderSide.BUY, "--side", "-d", help="Order side"),
    quantity: str = typer.Option(..., "--quantity", "-q", help="Number of shares"),
    order_type: OrderType = typer.Option(OrderType.MARKET, "--type", "-t", help="Order type"),
    limit_price: str | None = typer.Option(None, "--limit", help="Limit price"),
    stop_price: str | None = typer.Option(None, "--stop", help="Stop price"),
    time_in_force: TimeInForce = typer.Option(TimeInForce.DAY, "--tif", help="Time in force"),
    account: str | None = typer.Option(None, "--account", "-a", help="Brokerage account id"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
    sim: bool = typer.Option(False, "--sim", help="Use the simulated brokerage"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Preview an order, confirm it and place it."""
    config = load_config()
    setup_logging(config.log_dir, verbose)
    account_id = resolve_account(config, account)
    fields = _intent_fields(
        symbol, side, quantity, order_type, limit_price, stop_price, time_in_force
    )
    gateway = build_gateway(config, sim)

    try:
        order = asyncio.run(place_order(config, gateway, account_id, fields, yes))
    except OrderDeskError as exc:
        logger.error(f"Order not placed: {exc}")
        raise typer.Exit(code=1) from exc

    if order is not None:
        _print_order(order)
