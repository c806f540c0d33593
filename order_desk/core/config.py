"""Configuration management for the order desk client."""

from __future__ import annotations

from decimal import Decimal
from pathlib import Path

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from order_desk.core.constants import (
    DEFAULT_GATEWAY_URL,
    DEFAULT_LOG_DIR,
    ORDER_FOCUS_POLL_SECONDS,
    ORDER_HISTORY_DAYS,
    ORDER_LIST_POLL_SECONDS,
    PREVIEW_TTL_SECONDS,
    QUOTE_POLL_SECONDS,
)


class OrderDeskConfig(BaseSettings):
    """Brokerage gateway connection and polling configuration.

    Uses Pydantic v2 settings with environment variable support.
    """

    model_config = SettingsConfigDict(
        env_prefix="ORDER_DESK_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Gateway connection
    gateway_url: str = Field(
        default=DEFAULT_GATEWAY_URL, description="Base URL of the brokerage gateway API"
    )
    api_token: str | None = Field(default=None, description="Bearer token for the gateway")
    request_timeout: float = Field(default=10.0, description="Per-request timeout in seconds")
    max_retries: int = Field(default=3, description="Attempts for retry-safe requests")
    retry_backoff: float = Field(default=0.5, description="Base backoff between retries")

    # Polling
    quote_poll_interval: float = Field(
        default=QUOTE_POLL_SECONDS, description="Quote refresh interval while a ticket is open"
    )
    order_poll_interval: float = Field(
        default=ORDER_FOCUS_POLL_SECONDS,
        description="Refresh interval for the focused order status view",
    )
    order_list_poll_interval: float = Field(
        default=ORDER_LIST_POLL_SECONDS, description="Refresh interval for the order list view"
    )
    order_history_days: int = Field(
        default=ORDER_HISTORY_DAYS, description="Lookback window for order listings"
    )

    # Trading workflow
    preview_ttl_seconds: float = Field(
        default=PREVIEW_TTL_SECONDS,
        description="Client-side preview expiry when the gateway does not send one",
    )
    max_order_quantity: Decimal | None = Field(
        default=None, description="Optional advisory cap on a single order's quantity"
    )
    default_account_id: str | None = Field(
        default=None, description="Account used when a command does not name one"
    )

    log_dir: Path = Field(default=DEFAULT_LOG_DIR, description="Directory for logs")

    @field_validator(
        "request_timeout",
        "quote_poll_interval",
        "order_poll_interval",
        "order_list_poll_interval",
        "preview_ttl_seconds",
    )
    @classmethod
    def validate_positive_seconds(cls, value: float) -> float:
        """Ensure time values are positive."""
        if value <= 0:
            raise ValueError("Intervals and timeouts must be positive")
        return value

    @field_validator("max_retries", "order_history_days")
    @classmethod
    def validate_positive_count(cls, value: int) -> int:
        if value < 1:
            raise ValueError("Value must be at least 1")
        return value

    @field_validator("gateway_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @model_validator(mode="after")
    def validate_poll_cadence(self) -> OrderDeskConfig:
        """The focused status view must poll faster than the list view."""
        if self.order_poll_interval >= self.order_list_poll_interval:
            raise ValueError(
                "order_poll_interval must be shorter than order_list_poll_interval "
                f"({self.order_poll_interval} >= {self.order_list_poll_interval})"
            )
        return self

    def model_post_init(self, __context: object) -> None:
        """Create directories after initialization."""
        self.log_dir.mkdir(parents=True, exist_ok=True)


def load_config() -> OrderDeskConfig:
    """Load configuration from environment and .env file."""
    return OrderDeskConfig()
