"""Order desk - brokerage order placement and lifecycle tracking."""

__version__ = "0.1.0"

from order_desk.core.config import OrderDeskConfig, load_config
from order_desk.core.events import EventBus, EventTopic
from order_desk.errors import (
    AlreadyFinalizedError,
    CancelNotSupportedError,
    CommitFailedError,
    CommitRejectedError,
    GatewayError,
    ImpactRejectedError,
    LifecycleError,
    OrderDeskError,
    OrderNotFoundError,
    OrderValidationError,
    PreviewConsumedError,
    StalePreviewError,
    WorkflowStateError,
)
from order_desk.gateway.http import HttpBrokerageGateway
from order_desk.models import (
    ImpactQuote,
    LimitOrderIntent,
    MarketOrderIntent,
    Money,
    OrderIntent,
    OrderSide,
    OrderStatus,
    OrderType,
    PlacedOrder,
    Quote,
    StopLimitOrderIntent,
    StopOrderIntent,
    TimeInForce,
    build_intent,
)
from order_desk.monitor import OrderLifecycleTracker, OrderMonitor, TrackedOrder
from order_desk.quotes import QuotePoller
from order_desk.safety import OrderGuard
from order_desk.sim.brokerage import SimulatedBrokerage
from order_desk.workflow import TradeWorkflowController, WorkflowState

__all__ = [
    "OrderDeskConfig",
    "load_config",
    "EventBus",
    "EventTopic",
    "OrderDeskError",
    "OrderValidationError",
    "WorkflowStateError",
    "PreviewConsumedError",
    "StalePreviewError",
    "ImpactRejectedError",
    "GatewayError",
    "CommitFailedError",
    "CommitRejectedError",
    "LifecycleError",
    "OrderNotFoundError",
    "CancelNotSupportedError",
    "AlreadyFinalizedError",
    "HttpBrokerageGateway",
    "SimulatedBrokerage",
    "ImpactQuote",
    "MarketOrderIntent",
    "LimitOrderIntent",
    "StopOrderIntent",
    "StopLimitOrderIntent",
    "OrderIntent",
    "Money",
    "OrderSide",
    "OrderStatus",
    "OrderType",
    "PlacedOrder",
    "Quote",
    "TimeInForce",
    "build_intent",
    "OrderGuard",
    "TradeWorkflowController",
    "WorkflowState",
    "OrderLifecycleTracker",
    "OrderMonitor",
    "TrackedOrder",
    "QuotePoller",
]
