"""Contracts consumed by the order desk from the external brokerage."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol, runtime_checkable

from order_desk.models import ImpactQuote, OrderIntent, PlacedOrder, Quote


@runtime_checkable
class QuoteProvider(Protocol):
    """Supplies the current price for a symbol."""

    async def get_quote(self, symbol: str) -> Quote: ...


@runtime_checkable
class ImpactCalculator(Protocol):
    """Returns a non-binding estimate and verdict for an order intent."""

    async def compute_impact(self, intent: OrderIntent) -> ImpactQuote: ...


@runtime_checkable
class OrderCommitter(Protocol):
    """Places the order authorised by a preview handle.

    Implementations raise ``CommitRejectedError`` when the brokerage refuses the
    order and ``CommitFailedError`` when the outcome is unknown.
    """

    async def commit(self, preview_id: str) -> PlacedOrder: ...


@runtime_checkable
class OrderLifecycleBackend(Protocol):
    """Reads and cancels placed orders."""

    async def list_orders(self, account_id: str, *, since: datetime) -> list[PlacedOrder]: ...

    async def get_order(self, order_id: str, *, account_id: str | None = None) -> PlacedOrder: ...

    async def cancel_order(self, order_id: str, *, account_id: str | None = None) -> None: ...


@runtime_checkable
class BrokerageGateway(
    QuoteProvider, ImpactCalculator, OrderCommitter, OrderLifecycleBackend, Protocol
):
    """Every brokerage capability the order desk consumes."""
