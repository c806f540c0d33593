"""Periodic quote refresh for an open trade ticket."""

from __future__ import annotations

import asyncio
from contextlib import suppress
from datetime import UTC, datetime

from loguru import logger

from order_desk.core.constants import QUOTE_POLL_SECONDS
from order_desk.core.events import EventBus, EventTopic, QuoteEvent
from order_desk.errors import OrderDeskError
from order_desk.gateway.base import QuoteProvider
from order_desk.models import Quote


class QuotePoller:
    """Keeps the latest quote for one symbol fresh while a ticket is open.

    A failed refresh keeps the last good quote and marks it stale; the next
    successful refresh clears the flag. Older quotes never replace newer ones.
    """

    def __init__(
        self,
        provider: QuoteProvider,
        symbol: str,
        *,
        interval: float = QUOTE_POLL_SECONDS,
        event_bus: EventBus | None = None,
    ) -> None:
        self._provider = provider
        self.symbol = symbol.upper().strip()
        self.interval = interval
        self._event_bus = event_bus
        self._quote: Quote | None = None
        self._stale = False
        self._last_error: Exception | None = None
        self._task: asyncio.Task[None] | None = None

    @property
    def quote(self) -> Quote | None:
        return self._quote

    @property
    def stale(self) -> bool:
        return self._stale

    @property
    def last_error(self) -> Exception | None:
        return self._last_error

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def refresh(self) -> Quote | None:
        """Fetch a quote now; failures are recorded rather than raised."""
        try:
            quote = await self._provider.get_quote(self.symbol)
        except (OrderDeskError, TimeoutError, ConnectionError) as exc:
            logger.warning(f"Quote refresh for {self.symbol} failed: {exc}")
            await self._record_failure(exc)
            return self._quote

        if self._quote is None or quote.as_of >= self._quote.as_of:
            self._quote = quote
        self._stale = False
        self._last_error = None
        await self._publish()
        return self._quote

    async def start(self) -> None:
        if self.running:
            return
        await self.refresh()
        self._task = asyncio.create_task(self._run())
        logger.debug("Started quote polling for {} every {}s", self.symbol, self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.debug("Stopped quote polling for {}", self.symbol)

    async def __aenter__(self) -> QuotePoller:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    async def _run(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.interval)
                try:
                    await self.refresh()
                except Exception as exc:
                    logger.error("Unexpected quote refresh failure for {}: {}", self.symbol, exc)
                    await self._record_failure(exc)
        except asyncio.CancelledError:
            logger.debug("Quote polling loop cancelled for {}", self.symbol)
            raise

    async def _record_failure(self, exc: Exception) -> None:
        self._last_error = exc
        self._stale = True
        await self._publish()

    async def _publish(self) -> None:
        if self._event_bus is None:
            return
        await self._event_bus.publish(
            EventTopic.QUOTE,
            QuoteEvent(
                symbol=self.symbol,
                quote=self._quote,
                stale=self._stale,
                timestamp=datetime.now(UTC),
            ),
        )
