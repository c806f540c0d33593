"""Pytest configuration for shared fixtures."""

from __future__ import annotations

from decimal import Decimal
from pathlib import Path

import pytest
from loguru import logger

from order_desk.core.config import OrderDeskConfig
from order_desk.models import MarketOrderIntent, OrderSide
from order_desk.sim.brokerage import SimulatedBrokerage

ACCOUNT_ID = "acct-1"


@pytest.fixture(scope="session", autouse=True)
def silence_loguru_handlers() -> None:
    """Route Loguru output to a no-op sink during tests to avoid closed stream errors."""
    logger.remove()
    logger.add(lambda _: None, catch=True)
    yield


@pytest.fixture
def config(tmp_path: Path) -> OrderDeskConfig:
    return OrderDeskConfig(
        gateway_url="http://gateway.test",
        log_dir=tmp_path / "logs",
        retry_backoff=0.0,
        default_account_id=ACCOUNT_ID,
    )


@pytest.fixture
def brokerage() -> SimulatedBrokerage:
    return SimulatedBrokerage()


@pytest.fixture
def aapl_buy() -> MarketOrderIntent:
    return MarketOrderIntent(
        account_id=ACCOUNT_ID, symbol="AAPL", side=OrderSide.BUY, quantity=Decimal("10")
    )
