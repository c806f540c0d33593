"""CLI tests for order preview, placement and monitoring."""

from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest
from typer.testing import CliRunner

from order_desk import cli
from order_desk.cli_commands import monitoring, trading
from order_desk.core.config import OrderDeskConfig
from order_desk.models import MarketOrderIntent, OrderSide, OrderStatus
from order_desk.sim.brokerage import SimulatedBrokerage

runner = CliRunner()


@pytest.fixture
def brokerage(monkeypatch: pytest.MonkeyPatch, config: OrderDeskConfig) -> SimulatedBrokerage:
    """Route every CLI command to one shared simulated brokerage."""
    shared = SimulatedBrokerage()
    for module in (trading, monitoring):
        monkeypatch.setattr(module, "load_config", lambda: config)
        monkeypatch.setattr(module, "setup_logging", lambda *_args, **_kwargs: None)
        monkeypatch.setattr(module, "build_gateway", lambda _config, _sim=False: shared)
    return shared


def _seed_order(brokerage: SimulatedBrokerage) -> str:
    async def _place() -> str:
        intent = MarketOrderIntent(
            account_id="acct-1", symbol="AAPL", side=OrderSide.BUY, quantity=Decimal("10")
        )
        impact = await brokerage.compute_impact(intent)
        order = await brokerage.commit(impact.preview_id)
        await brokerage.acknowledge(order.order_id)
        return order.order_id

    return asyncio.run(_place())


def test_place_with_yes_commits_once(brokerage: SimulatedBrokerage) -> None:
    result = runner.invoke(
        cli.app, ["place", "--symbol", "AAPL", "--quantity", "10", "--yes"]
    )

    assert result.exit_code == 0, result.stdout
    assert "Estimated total: 1,500.00 USD" in result.stdout
    assert "Order o1: Submitted" in result.stdout
    assert brokerage.commit_calls == 1


def test_place_declined_at_prompt_does_not_commit(brokerage: SimulatedBrokerage) -> None:
    result = runner.invoke(
        cli.app,
        ["trading", "place", "--symbol", "AAPL", "--quantity", "10"],
        input="n\n",
    )

    assert result.exit_code == 0, result.stdout
    assert "Order not placed." in result.stdout
    assert brokerage.commit_calls == 0


def test_place_rejected_preview_exits_without_commit(brokerage: SimulatedBrokerage) -> None:
    brokerage.market_open = False

    result = runner.invoke(
        cli.app, ["place", "--symbol", "AAPL", "--quantity", "10", "--yes"]
    )

    assert result.exit_code == 1
    assert "Rejected: Outside market hours" in result.stdout
    assert brokerage.commit_calls == 0


def test_preview_rejects_zero_quantity_without_request(brokerage: SimulatedBrokerage) -> None:
    result = runner.invoke(cli.app, ["preview", "--symbol", "AAPL", "--quantity", "0"])

    assert result.exit_code == 1
    assert brokerage.impact_calls == 0


def test_preview_invalid_limit_format(brokerage: SimulatedBrokerage) -> None:
    result = runner.invoke(
        cli.app,
        ["preview", "--symbol", "AAPL", "--quantity", "1", "--type", "LIMIT", "--limit", "abc"],
    )

    assert result.exit_code != 0
    assert "Invalid limit price format" in result.output


def test_preview_shows_impact_lines(brokerage: SimulatedBrokerage) -> None:
    result = runner.invoke(
        cli.app,
        ["preview", "--symbol", "MSFT", "--quantity", "2", "--type", "LIMIT", "--limit", "400"],
    )

    assert result.exit_code == 0, result.stdout
    assert "Estimated cost: $800.00" in result.stdout
    assert "Settlement: T+2" in result.stdout
    assert brokerage.commit_calls == 0


def test_orders_lists_recent_orders(brokerage: SimulatedBrokerage) -> None:
    order_id = _seed_order(brokerage)

    result = runner.invoke(cli.app, ["orders"])

    assert result.exit_code == 0, result.stdout
    assert order_id in result.stdout
    assert "AAPL" in result.stdout


def test_status_shows_order(brokerage: SimulatedBrokerage) -> None:
    order_id = _seed_order(brokerage)

    result = runner.invoke(cli.app, ["monitoring", "status", order_id])

    assert result.exit_code == 0, result.stdout
    assert f"Order {order_id}: Open" in result.stdout


def test_cancel_open_then_finalized(brokerage: SimulatedBrokerage) -> None:
    order_id = _seed_order(brokerage)

    first = runner.invoke(cli.app, ["cancel", order_id])
    assert first.exit_code == 0, first.stdout
    assert f"Cancellation requested for order {order_id}" in first.stdout

    second = runner.invoke(cli.app, ["cancel", order_id])
    assert second.exit_code == 1
    assert asyncio.run(brokerage.get_order(order_id)).status == OrderStatus.CANCELLED


def test_status_unknown_order_fails(brokerage: SimulatedBrokerage) -> None:
    result = runner.invoke(cli.app, ["status", "missing"])

    assert result.exit_code == 1


def test_quote_with_simulated_brokerage(
    monkeypatch: pytest.MonkeyPatch, config: OrderDeskConfig
) -> None:
    monkeypatch.setattr(trading, "load_config", lambda: config)
    monkeypatch.setattr(trading, "setup_logging", lambda *_args, **_kwargs: None)

    result = runner.invoke(cli.app, ["quote", "AAPL", "--sim"])

    assert result.exit_code == 0, result.stdout
    assert "AAPL: 150.00" in result.stdout


def test_quote_watch_polls_until_duration(brokerage: SimulatedBrokerage) -> None:
    result = runner.invoke(cli.app, ["quote", "MSFT", "--watch", "0.2"])

    assert result.exit_code == 0, result.stdout
    assert "MSFT: " in result.stdout


def test_sim_status_and_cancel_use_seeded_demo_order(
    monkeypatch: pytest.MonkeyPatch, config: OrderDeskConfig
) -> None:
    monkeypatch.setattr(monitoring, "load_config", lambda: config)
    monkeypatch.setattr(monitoring, "setup_logging", lambda *_args, **_kwargs: None)

    status = runner.invoke(cli.app, ["status", "o1", "--sim"])
    assert status.exit_code == 0, status.stdout
    assert "Order o1: Open" in status.stdout

    cancel = runner.invoke(cli.app, ["cancel", "o1", "--sim"])
    assert cancel.exit_code == 0, cancel.stdout
    assert "Cancellation requested for order o1" in cancel.stdout
