"""Common constants shared across the order desk."""

from __future__ import annotations

from decimal import Decimal
from pathlib import Path

DEFAULT_GATEWAY_URL = "http://127.0.0.1:5000"
DEFAULT_CURRENCY = "USD"
QUOTE_POLL_SECONDS = 5.0
ORDER_FOCUS_POLL_SECONDS = 2.0
ORDER_LIST_POLL_SECONDS = 10.0
ORDER_HISTORY_DAYS = 7
CANCEL_PENDING_MAX_READS = 5
PREVIEW_TTL_SECONDS = 120.0
SETTLEMENT_LABEL = "T+2"
DEFAULT_REJECTION_REASON = "Order rejected by brokerage"
COMMIT_UNCONFIRMED_MESSAGE = (
    "Could not confirm order placement. Check your order history before trying again."
)
SIM_DEFAULT_PRICES = {
    "AAPL": Decimal("150.00"),
    "MSFT": Decimal("410.00"),
    "SPY": Decimal("520.00"),
}
DEFAULT_LOG_DIR = Path("logs")
SIM_DEMO_SYMBOL = "AAPL"
SIM_DEMO_QUANTITY = Decimal("10")
