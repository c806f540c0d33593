"""Core infrastructure modules for the order desk."""

from .config import OrderDeskConfig, load_config
from .constants import (
    DEFAULT_GATEWAY_URL,
    ORDER_FOCUS_POLL_SECONDS,
    ORDER_HISTORY_DAYS,
    ORDER_LIST_POLL_SECONDS,
    PREVIEW_TTL_SECONDS,
    QUOTE_POLL_SECONDS,
)
from .events import (
    EventBus,
    EventSubscription,
    EventTopic,
    OrderStatusEvent,
    QuoteEvent,
    WorkflowEvent,
)

__all__ = [
    "OrderDeskConfig",
    "load_config",
    "DEFAULT_GATEWAY_URL",
    "ORDER_FOCUS_POLL_SECONDS",
    "ORDER_HISTORY_DAYS",
    "ORDER_LIST_POLL_SECONDS",
    "PREVIEW_TTL_SECONDS",
    "QUOTE_POLL_SECONDS",
    "EventBus",
    "EventSubscription",
    "EventTopic",
    "OrderStatusEvent",
    "QuoteEvent",
    "WorkflowEvent",
]
