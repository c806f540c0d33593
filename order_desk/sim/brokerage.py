"""In-memory brokerage used for simulation, demos and tests."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta
from decimal import Decimal

from loguru import logger

from order_desk.core.constants import SETTLEMENT_LABEL, SIM_DEFAULT_PRICES
from order_desk.errors import (
    AlreadyFinalizedError,
    CommitRejectedError,
    GatewayError,
    OrderNotFoundError,
)
from order_desk.models import (
    ImpactQuote,
    ImpactSummaryLine,
    Money,
    OrderIntent,
    OrderSide,
    OrderStatus,
    OrderType,
    PlacedOrder,
    Quote,
)


class SimulatedBrokerage:
    """Simplified brokerage that previews, places, fills and cancels orders.

    Implements every gateway contract so the workflow controller and the order
    monitor can run without a live brokerage connection.
    """

    def __init__(
        self,
        prices: Mapping[str, Decimal] | None = None,
        *,
        commission: Decimal = Decimal("0"),
        buying_power: Decimal | None = None,
        market_open: bool = True,
        preview_ttl: timedelta = timedelta(minutes=2),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._prices = {
            symbol.upper(): Decimal(price)
            for symbol, price in (prices if prices is not None else SIM_DEFAULT_PRICES).items()
        }
        self.commission = commission
        self.buying_power = buying_power
        self.market_open = market_open
        self.preview_ttl = preview_ttl
        self._clock = clock or (lambda: datetime.now(UTC))
        self._next_preview_id = 1
        self._next_order_id = 1
        self._previews: dict[str, ImpactQuote] = {}
        self._used_previews: set[str] = set()
        self._orders: dict[str, PlacedOrder] = {}
        self._lock = asyncio.Lock()
        self.commit_calls = 0
        self.impact_calls = 0

    def set_price(self, symbol: str, price: Decimal) -> None:
        self._prices[symbol.upper()] = Decimal(price)

    async def get_quote(self, symbol: str) -> Quote:
        price = self._price_for(symbol)
        spread = (price * Decimal("0.0005")).quantize(Decimal("0.01"))
        return Quote(
            symbol=symbol,
            price=price,
            bid=price - spread,
            ask=price + spread,
            as_of=self._clock(),
        )

    async def compute_impact(self, intent: OrderIntent) -> ImpactQuote:
        self.impact_calls += 1
        price = self._execution_price(intent)
        cost = (price * intent.quantity).quantize(Decimal("0.01"))
        fees = self.commission
        total = cost + fees if intent.side == OrderSide.BUY else cost - fees

        reason: str | None = None
        if not self.market_open:
            reason = "Outside market hours"
        elif (
            intent.side == OrderSide.BUY
            and self.buying_power is not None
            and total > self.buying_power
        ):
            reason = "Insufficient buying power"

        lines = [
            ImpactSummaryLine(
                label="Estimated cost" if intent.side == OrderSide.BUY else "Estimated proceeds",
                value=f"${cost:,.2f}",
            )
        ]
        if fees > 0:
            lines.append(ImpactSummaryLine(label="Fees", value=f"${fees:,.2f}"))
        lines.append(ImpactSummaryLine(label="Settlement", value=SETTLEMENT_LABEL))

        async with self._lock:
            preview_id = f"p{self._next_preview_id}"
            self._next_preview_id += 1
            now = self._clock()
            impact = ImpactQuote(
                preview_id=preview_id,
                intent=intent,
                accepted=reason is None,
                rejection_reason=reason,
                estimated_cost=Money(amount=cost),
                estimated_fees=Money(amount=fees),
                estimated_total=Money(amount=total),
                lines=tuple(lines),
                generated_at=now,
                expires_at=now + self.preview_ttl,
            )
            self._previews[preview_id] = impact
        return impact

    async def commit(self, preview_id: str) -> PlacedOrder:
        self.commit_calls += 1
        async with self._lock:
            impact = self._previews.get(preview_id)
            if impact is None:
                raise CommitRejectedError(preview_id, "Unknown preview")
            if preview_id in self._used_previews:
                raise CommitRejectedError(preview_id, "Preview has already been used")
            if not impact.accepted:
                raise CommitRejectedError(preview_id, impact.rejection_reason or "Rejected")
            if impact.is_expired(self._clock()):
                raise CommitRejectedError(preview_id, "Preview has expired")
            self._used_previews.add(preview_id)

            intent = impact.intent
            order_id = f"o{self._next_order_id}"
            self._next_order_id += 1
            now = self._clock()
            order = PlacedOrder(
                order_id=order_id,
                account_id=intent.account_id,
                symbol=intent.symbol,
                side=intent.side,
                quantity=intent.quantity,
                order_type=intent.kind,
                limit_price=getattr(intent, "limit_price", None),
                stop_price=getattr(intent, "stop_price", None),
                time_in_force=intent.time_in_force,
                status=OrderStatus.SUBMITTED,
                placed_at=now,
                last_updated_at=now,
            )
            self._orders[order_id] = order

        logger.info(
            f"Simulated order {order_id}: {intent.side.value} {intent.quantity} {intent.symbol}"
        )
        return order.model_copy()

    async def list_orders(self, account_id: str, *, since: datetime) -> list[PlacedOrder]:
        orders = [
            order.model_copy()
            for order in self._orders.values()
            if order.account_id == account_id and order.placed_at >= since
        ]
        orders.sort(key=lambda item: item.placed_at, reverse=True)
        return orders

    async def get_order(self, order_id: str, *, account_id: str | None = None) -> PlacedOrder:
        order = self._orders.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        return order.model_copy()

    async def cancel_order(self, order_id: str, *, account_id: str | None = None) -> None:
        async with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                raise OrderNotFoundError(order_id)
            if order.status.is_terminal:
                raise AlreadyFinalizedError(order_id, order.status.value)
            self._update(order_id, status=OrderStatus.CANCELLED)

    def seed_order(
        self,
        account_id: str | None,
        symbol: str,
        side: OrderSide,
        quantity: Decimal,
        *,
        status: OrderStatus = OrderStatus.OPEN,
    ) -> PlacedOrder:
        """Add an order to the book without going through preview and commit."""
        order_id = f"o{self._next_order_id}"
        self._next_order_id += 1
        now = self._clock()
        order = PlacedOrder(
            order_id=order_id,
            account_id=account_id,
            symbol=symbol.upper(),
            side=side,
            quantity=Decimal(quantity),
            order_type=OrderType.MARKET,
            status=status,
            placed_at=now,
            last_updated_at=now,
        )
        self._orders[order_id] = order
        return order.model_copy()

    async def acknowledge(self, order_id: str) -> PlacedOrder:
        """Move a submitted order to Open."""
        async with self._lock:
            return self._update(order_id, status=OrderStatus.OPEN)

    async def simulate_fill(
        self, order_id: str, fill_quantity: Decimal, fill_price: Decimal
    ) -> PlacedOrder:
        if Decimal(fill_quantity) <= 0:
            raise ValueError(f"Fill quantity must be positive, got {fill_quantity}")
        async with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                raise OrderNotFoundError(order_id)
            if order.status.is_terminal:
                raise AlreadyFinalizedError(order_id, order.status.value)
            filled = min(order.quantity, order.filled_quantity + Decimal(fill_quantity))
            previous_value = order.filled_quantity * (order.avg_fill_price or Decimal("0"))
            added = filled - order.filled_quantity
            avg_price = (previous_value + added * Decimal(fill_price)) / filled
            status = (
                OrderStatus.FILLED if filled >= order.quantity else OrderStatus.PARTIALLY_FILLED
            )
            return self._update(
                order_id, status=status, filled_quantity=filled, avg_fill_price=avg_price
            )

    async def reject(self, order_id: str) -> PlacedOrder:
        async with self._lock:
            return self._update(order_id, status=OrderStatus.REJECTED)

    def _update(self, order_id: str, **changes: object) -> PlacedOrder:
        order = self._orders.get(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        now = max(self._clock(), order.last_updated_at)
        updated = order.model_copy(update={**changes, "last_updated_at": now})
        self._orders[order_id] = updated
        return updated.model_copy()

    def _price_for(self, symbol: str) -> Decimal:
        price = self._prices.get(symbol.upper().strip())
        if price is None:
            raise GatewayError(
                f"Symbol {symbol.upper()} not found or not tradable", status_code=404
            )
        return price

    def _execution_price(self, intent: OrderIntent) -> Decimal:
        market_price = self._price_for(intent.symbol)
        if intent.kind in (OrderType.LIMIT, OrderType.STOP_LIMIT):
            return intent.limit_price  # type: ignore[union-attr]
        if intent.kind == OrderType.STOP:
            return intent.stop_price  # type: ignore[union-attr]
        return market_price
