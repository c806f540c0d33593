"""Shared utility functions for CLI commands."""

import sys
from decimal import Decimal, InvalidOperation
from pathlib import Path

import typer
from loguru import logger

from order_desk.core.config import OrderDeskConfig
from order_desk.core.constants import SIM_DEMO_QUANTITY, SIM_DEMO_SYMBOL
from order_desk.gateway.base import BrokerageGateway
from order_desk.gateway.http import HttpBrokerageGateway
from order_desk.models import OrderSide
from order_desk.sim.brokerage import SimulatedBrokerage


def setup_logging(log_dir: Path, verbose: bool = False) -> None:
    """Configure loguru logging.

    Args:
        log_dir: Directory for log files
        verbose: Enable verbose debug logging
    """
    # Remove default handler
    logger.remove()

    # Console handler
    log_level = "DEBUG" if verbose else "INFO"
    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan> - "
        "<level>{message}</level>",
        level=log_level,
    )

    # File handler
    logger.add(
        log_dir / "order_desk_{time}.log",
        rotation="1 day",
        retention="7 days",
        level="DEBUG",
    )


def build_gateway(config: OrderDeskConfig, sim: bool = False) -> BrokerageGateway:
    """Return the simulated brokerage or an HTTP gateway for the configured URL.

    The simulated brokerage lives for one command only. Its book starts with one
    open demo order for the default account so the monitoring commands have
    something to show.
    """
    if sim:
        brokerage = SimulatedBrokerage()
        demo = brokerage.seed_order(
            config.default_account_id, SIM_DEMO_SYMBOL, OrderSide.BUY, SIM_DEMO_QUANTITY
        )
        logger.info(f"Using simulated brokerage with demo order {demo.order_id}")
        return brokerage
    return HttpBrokerageGateway(config)


async def open_gateway(gateway: BrokerageGateway) -> None:
    connect = getattr(gateway, "connect", None)
    if connect is not None:
        await connect()


async def close_gateway(gateway: BrokerageGateway) -> None:
    disconnect = getattr(gateway, "disconnect", None)
    if disconnect is not None:
        await disconnect()


def resolve_account(config: OrderDeskConfig, account: str | None) -> str:
    """Pick the account from the option or the configured default."""
    account_id = account or config.default_account_id
    if not account_id:
        raise typer.BadParameter(
            "No account given. Pass --account or set ORDER_DESK_DEFAULT_ACCOUNT_ID."
        )
    return account_id


def parse_decimal(value: str | None, label: str) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(value)
    except (InvalidOperation, ValueError) as exc:
        raise typer.BadParameter(f"Invalid {label} format.") from exc
