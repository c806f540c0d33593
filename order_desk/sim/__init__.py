"""Simulation helpers for running the order desk without a brokerage."""

from .brokerage import SimulatedBrokerage

__all__ = ["SimulatedBrokerage"]
