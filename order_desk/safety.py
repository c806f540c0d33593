"""Client-side order safety checks."""

from __future__ import annotations

from decimal import Decimal

from loguru import logger

from order_desk.errors import OrderValidationError
from order_desk.models import OrderIntent, OrderSide


class OrderGuard:
    """Advisory validation applied before an intent is sent for impact.

    The brokerage remains authoritative; these checks only stop obviously
    invalid orders from generating network traffic:
    1. Quantity must be positive
    2. Quantity must not exceed the configured per-order cap
    3. A SELL must not exceed the current holdings, when they are known
    """

    def __init__(self, max_order_quantity: Decimal | None = None) -> None:
        """Initialize the guard.

        Args:
            max_order_quantity: Optional per-order quantity cap
        """
        self.max_order_quantity = max_order_quantity

    def check_intent(
        self, intent: OrderIntent, current_holdings: Decimal | None = None
    ) -> None:
        """Validate intent against local limits.

        Args:
            intent: Parsed order intent
            current_holdings: Quantity currently held in the account, if known

        Raises:
            OrderValidationError: If any check fails
        """
        errors: list[str] = []

        if intent.quantity <= 0:
            errors.append("quantity must be greater than zero")

        if self.max_order_quantity is not None and intent.quantity > self.max_order_quantity:
            errors.append(
                f"quantity {intent.quantity} exceeds the per-order limit "
                f"of {self.max_order_quantity} for {intent.symbol}"
            )

        if (
            intent.side == OrderSide.SELL
            and current_holdings is not None
            and intent.quantity > current_holdings
        ):
            errors.append(
                f"cannot sell {intent.quantity} {intent.symbol}: "
                f"only {current_holdings} held"
            )

        if errors:
            logger.info("Order intent rejected locally: {}", "; ".join(errors))
            raise OrderValidationError(errors)
