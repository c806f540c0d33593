"""Brokerage gateway contracts and implementations."""

from .base import (
    BrokerageGateway,
    ImpactCalculator,
    OrderCommitter,
    OrderLifecycleBackend,
    QuoteProvider,
)
from .http import HttpBrokerageGateway
from .retry import with_retry

__all__ = [
    "BrokerageGateway",
    "ImpactCalculator",
    "OrderCommitter",
    "OrderLifecycleBackend",
    "QuoteProvider",
    "HttpBrokerageGateway",
    "with_retry",
]
