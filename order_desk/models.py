"""Order desk models using Pydantic v2."""

from __future__ import annotations

import re
from collections.abc import Mapping
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal

from loguru import logger
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

from order_desk.core.constants import DEFAULT_CURRENCY
from order_desk.errors import OrderValidationError


class OrderSide(str, Enum):
    """Order side enumeration."""

    BUY = "BUY"
    SELL = "SELL"


class OrderType(str, Enum):
    """Order type enumeration."""

    MARKET = "MARKET"
    LIMIT = "LIMIT"
    STOP = "STOP"
    STOP_LIMIT = "STOP_LIMIT"


class TimeInForce(str, Enum):
    """Order time-in-force enumeration."""

    DAY = "DAY"
    GTC = "GTC"
    FOK = "FOK"
    IOC = "IOC"


class OrderStatus(str, Enum):
    """Lifecycle status of a placed order."""

    SUBMITTED = "Submitted"
    OPEN = "Open"
    PARTIALLY_FILLED = "PartiallyFilled"
    FILLED = "Filled"
    CANCELLED = "Cancelled"
    REJECTED = "Rejected"

    @property
    def is_terminal(self) -> bool:
        """No further transition is possible from this status."""
        return self in TERMINAL_STATUSES

    @property
    def is_cancellable(self) -> bool:
        return self in CANCELLABLE_STATUSES


TERMINAL_STATUSES = frozenset({OrderStatus.FILLED, OrderStatus.CANCELLED, OrderStatus.REJECTED})
CANCELLABLE_STATUSES = frozenset({OrderStatus.OPEN, OrderStatus.PARTIALLY_FILLED})

_STATUS_ALIASES: dict[str, OrderStatus] = {
    "pending": OrderStatus.SUBMITTED,
    "pendingsubmit": OrderStatus.SUBMITTED,
    "submitted": OrderStatus.SUBMITTED,
    "new": OrderStatus.OPEN,
    "accepted": OrderStatus.OPEN,
    "open": OrderStatus.OPEN,
    "working": OrderStatus.OPEN,
    "replaced": OrderStatus.OPEN,
    "partiallyfilled": OrderStatus.PARTIALLY_FILLED,
    "partialfilled": OrderStatus.PARTIALLY_FILLED,
    "partial": OrderStatus.PARTIALLY_FILLED,
    "filled": OrderStatus.FILLED,
    "executed": OrderStatus.FILLED,
    "complete": OrderStatus.FILLED,
    "cancelled": OrderStatus.CANCELLED,
    "canceled": OrderStatus.CANCELLED,
    "expired": OrderStatus.CANCELLED,
    "rejected": OrderStatus.REJECTED,
    "failed": OrderStatus.REJECTED,
}


def normalize_order_status(raw: str | OrderStatus | None) -> OrderStatus:
    """Map a brokerage status string onto the lifecycle status set."""
    if isinstance(raw, OrderStatus):
        return raw
    key = re.sub(r"[\s_\-]", "", (raw or "")).lower()
    status = _STATUS_ALIASES.get(key)
    if status is None:
        logger.debug(f"Unmapped brokerage order status '{raw}' - treating as SUBMITTED")
        return OrderStatus.SUBMITTED
    return status


class Money(BaseModel):
    """Amount in a given currency."""

    model_config = ConfigDict(frozen=True)

    amount: Decimal
    currency: str = Field(default=DEFAULT_CURRENCY)

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Currency cannot be empty")
        return v.strip().upper()

    def __str__(self) -> str:
        return f"{self.amount:,.2f} {self.currency}"


class _OrderIntentBase(BaseModel):
    """Fields shared by every order type."""

    model_config = ConfigDict(frozen=True)

    account_id: str = Field(..., description="Brokerage account the order is placed in")
    symbol: str = Field(..., description="Trading symbol")
    side: OrderSide
    quantity: Annotated[Decimal, Field(gt=0, description="Order quantity (must be positive)")]
    time_in_force: TimeInForce = Field(default=TimeInForce.DAY)

    @field_validator("account_id")
    @classmethod
    def validate_account_id(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Account id cannot be empty")
        return v.strip()

    @field_validator("symbol")
    @classmethod
    def validate_symbol(cls, v: str) -> str:
        """Ensure symbol is uppercase and non-empty."""
        if not v or not v.strip():
            raise ValueError("Symbol cannot be empty")
        return v.upper().strip()

    @property
    def kind(self) -> OrderType:
        return OrderType(self.order_type)  # type: ignore[attr-defined]

    @property
    def reference_price(self) -> Decimal | None:
        """Price the order is pinned to, if any."""
        return getattr(self, "limit_price", None) or getattr(self, "stop_price", None)

    def to_payload(self) -> dict[str, Any]:
        """Render the gateway wire body for an impact request."""
        payload: dict[str, Any] = {
            "accountId": self.account_id,
            "symbol": self.symbol,
            "side": self.side.value,
            "type": self.kind.value,
            "quantity": str(self.quantity),
            "timeInForce": self.time_in_force.value,
        }
        limit_price = getattr(self, "limit_price", None)
        if limit_price is not None:
            payload["limitPrice"] = str(limit_price)
        stop_price = getattr(self, "stop_price", None)
        if stop_price is not None:
            payload["stopPrice"] = str(stop_price)
        return payload


class MarketOrderIntent(_OrderIntentBase):
    order_type: Literal["MARKET"] = "MARKET"


class LimitOrderIntent(_OrderIntentBase):
    order_type: Literal["LIMIT"] = "LIMIT"
    limit_price: Annotated[Decimal, Field(gt=0, description="Limit price")]


class StopOrderIntent(_OrderIntentBase):
    order_type: Literal["STOP"] = "STOP"
    stop_price: Annotated[Decimal, Field(gt=0, description="Stop trigger price")]


class StopLimitOrderIntent(_OrderIntentBase):
    order_type: Literal["STOP_LIMIT"] = "STOP_LIMIT"
    limit_price: Annotated[Decimal, Field(gt=0, description="Limit price once triggered")]
    stop_price: Annotated[Decimal, Field(gt=0, description="Stop trigger price")]


OrderIntent = Annotated[
    MarketOrderIntent | LimitOrderIntent | StopOrderIntent | StopLimitOrderIntent,
    Field(discriminator="order_type"),
]
ORDER_INTENT_TYPES = (MarketOrderIntent, LimitOrderIntent, StopOrderIntent, StopLimitOrderIntent)

_intent_adapter: TypeAdapter[OrderIntent] = TypeAdapter(OrderIntent)


def build_intent(data: Mapping[str, Any] | _OrderIntentBase) -> OrderIntent:
    """Parse raw form input into an order intent.

    Raises:
        OrderValidationError: If the input does not describe a valid order
    """
    if isinstance(data, ORDER_INTENT_TYPES):
        return data

    fields = dict(data)
    order_type = fields.get("order_type", OrderType.MARKET)
    if isinstance(order_type, OrderType):
        fields["order_type"] = order_type.value
    elif isinstance(order_type, str):
        fields["order_type"] = order_type.strip().upper().replace(" ", "_")
    for key in ("side", "time_in_force"):
        value = fields.get(key)
        if isinstance(value, str) and not isinstance(value, Enum):
            fields[key] = value.strip().upper()
    # Blank form inputs mean "not provided"
    for key, value in list(fields.items()):
        if isinstance(value, str) and not value.strip():
            fields.pop(key)

    try:
        return _intent_adapter.validate_python(fields)
    except ValidationError as exc:
        messages = [_describe_error(err) for err in exc.errors()]
        raise OrderValidationError(messages) from exc


def _describe_error(err: Mapping[str, Any]) -> str:
    location = [str(part) for part in err.get("loc", ()) if str(part) not in _VARIANT_TAGS]
    field = ".".join(location) or "order"
    message = str(err.get("msg", "invalid value"))
    if err.get("type") == "missing":
        return f"{field} is required"
    return f"{field}: {message}"


_VARIANT_TAGS = {member.value for member in OrderType}


class ImpactSummaryLine(BaseModel):
    """Display line of an impact preview (cost, fees, settlement...)."""

    model_config = ConfigDict(frozen=True)

    label: str
    value: str


class ImpactQuote(BaseModel):
    """Non-binding cost estimate and acceptability verdict for an intent."""

    model_config = ConfigDict(frozen=True)

    preview_id: str = Field(..., description="Single-use handle authorising a commit")
    intent: OrderIntent
    accepted: bool
    rejection_reason: str | None = Field(default=None)
    estimated_cost: Money
    estimated_fees: Money
    estimated_total: Money
    warnings: tuple[str, ...] = Field(default=())
    lines: tuple[ImpactSummaryLine, ...] = Field(default=())
    generated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    expires_at: datetime | None = Field(default=None)

    @field_validator("preview_id")
    @classmethod
    def validate_preview_id(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("preview_id cannot be empty")
        return v.strip()

    @model_validator(mode="after")
    def validate_rejection_reason(self) -> ImpactQuote:
        """A rejection reason is present exactly when the quote is rejected."""
        if not self.accepted and not self.rejection_reason:
            raise ValueError("Rejected impact quotes must carry a rejection reason")
        if self.accepted and self.rejection_reason:
            raise ValueError("Accepted impact quotes cannot carry a rejection reason")
        return self

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or datetime.now(UTC)) >= self.expires_at


class PlacedOrder(BaseModel):
    """A committed order as last reported by the brokerage."""

    order_id: str
    account_id: str | None = Field(default=None)
    symbol: str
    side: OrderSide
    quantity: Decimal
    filled_quantity: Decimal = Field(default=Decimal("0"))
    order_type: OrderType
    limit_price: Decimal | None = Field(default=None)
    stop_price: Decimal | None = Field(default=None)
    time_in_force: TimeInForce = Field(default=TimeInForce.DAY)
    status: OrderStatus = Field(default=OrderStatus.SUBMITTED)
    avg_fill_price: Decimal | None = Field(default=None)
    placed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    last_updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    cancel_requested: bool = Field(
        default=False, description="Client-side mark for a pending cancellation request"
    )

    @field_validator("symbol")
    @classmethod
    def validate_symbol(cls, v: str) -> str:
        return v.upper().strip()

    @field_validator("status", mode="before")
    @classmethod
    def validate_status(cls, v: object) -> OrderStatus:
        return normalize_order_status(v if isinstance(v, (str, OrderStatus)) else None)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def remaining_quantity(self) -> Decimal:
        return max(Decimal("0"), self.quantity - self.filled_quantity)


class Quote(BaseModel):
    """Current price information for a symbol."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    price: Decimal
    bid: Decimal | None = Field(default=None)
    ask: Decimal | None = Field(default=None)
    change_percent: Decimal | None = Field(default=None)
    as_of: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("symbol")
    @classmethod
    def validate_symbol(cls, v: str) -> str:
        return v.upper().strip()

    @property
    def mid_price(self) -> Decimal:
        """Calculate mid price from bid/ask."""
        if self.bid is not None and self.ask is not None:
            return (self.bid + self.ask) / Decimal("2")
        return self.price
