"""Retry utilities for async gateway calls."""

from __future__ import annotations

import asyncio
import functools
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import httpx
from loguru import logger

IDEMPOTENT_METHODS = {"GET", "HEAD"}

_T = TypeVar("_T")


def with_retry(
    max_attempts: int = 3,
    backoff_base: float = 0.5,
    method: str = "GET",
) -> Callable[[Callable[..., Awaitable[_T]]], Callable[..., Awaitable[_T]]]:
    """Return an idempotency-aware async retry decorator.

    - Idempotent methods (GET, HEAD): retry on transport errors and 5xx.
    - Non-idempotent methods: retry on transport errors only.
    - Never retry on 4xx.

    ``max_attempts`` and ``backoff_base`` may be overridden per instance through
    ``self.max_attempts`` / ``self.backoff_base`` on the decorated method's owner.
    """

    method_upper = method.upper()

    def decorator(func: Callable[..., Awaitable[_T]]) -> Callable[..., Awaitable[_T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> _T:
            owner = args[0] if args else None
            attempts = getattr(owner, "max_attempts", max_attempts)
            backoff = getattr(owner, "backoff_base", backoff_base)
            for attempt in range(attempts):
                try:
                    return await func(*args, **kwargs)
                except httpx.TransportError as exc:
                    if attempt == attempts - 1:
                        raise
                    logger.debug(
                        "{} {} transport error ({}), retrying", method_upper, func.__name__, exc
                    )
                    await asyncio.sleep(backoff * (2**attempt))
                except httpx.HTTPStatusError as exc:
                    status_code = exc.response.status_code
                    if status_code >= 500 and method_upper in IDEMPOTENT_METHODS:
                        if attempt == attempts - 1:
                            raise
                        logger.debug(
                            "{} {} returned {}, retrying", method_upper, func.__name__, status_code
                        )
                        await asyncio.sleep(backoff * (2**attempt))
                    else:
                        raise

            raise RuntimeError("Retry exhausted")

        return wrapper

    return decorator
