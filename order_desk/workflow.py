"""Trade workflow controller: Impact -> Preview -> Confirm.

A single state machine shared by every trading surface (quick trade buttons,
the full ticket, the preview dialog). Surfaces render ``snapshot()`` and call
``update``, ``request_preview``, ``confirm`` and ``reset``; they never own the
transitions themselves.

Guarantees:
- ``confirm`` is only dispatched for the quote currently held in Preview, and
  only when that quote was accepted.
- Each preview handle reaches the committer at most once. The handle is
  checked and consumed without an intervening suspension point, so two
  overlapping ``confirm`` calls cannot both observe it as unused.
- An ambiguous commit failure is never retried; a new preview is required.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Protocol

from loguru import logger

from order_desk.core.events import EventBus, EventTopic, OrderStatusEvent, WorkflowEvent
from order_desk.errors import (
    CommitError,
    CommitFailedError,
    GatewayError,
    ImpactRejectedError,
    OrderDeskError,
    OrderValidationError,
    PreviewConsumedError,
    StalePreviewError,
    WorkflowStateError,
)
from order_desk.gateway.base import ImpactCalculator, OrderCommitter
from order_desk.models import ImpactQuote, OrderIntent, PlacedOrder, build_intent
from order_desk.safety import OrderGuard


class WorkflowState(str, Enum):
    """States of a single trade workflow run."""

    FORM = "Form"
    PREVIEWING = "Previewing"
    PREVIEW = "Preview"
    CONFIRMING = "Confirming"
    SUCCESS = "Success"
    ERROR = "Error"


_PREVIEWABLE = frozenset({WorkflowState.FORM, WorkflowState.PREVIEW, WorkflowState.ERROR})
_EDITABLE = frozenset(
    {WorkflowState.FORM, WorkflowState.PREVIEWING, WorkflowState.PREVIEW, WorkflowState.ERROR}
)


class TradeGateway(ImpactCalculator, OrderCommitter, Protocol):
    """Gateway capabilities the workflow needs."""


@dataclass(frozen=True, slots=True)
class WorkflowSnapshot:
    """Read-only view of the workflow for rendering."""

    state: WorkflowState
    draft: dict[str, Any] = field(default_factory=dict)
    intent: OrderIntent | None = None
    quote: ImpactQuote | None = None
    order: PlacedOrder | None = None
    error: OrderDeskError | None = None
    can_preview: bool = False
    can_confirm: bool = False


class TradeWorkflowController:
    """Drives one trade from entered intent to a placed order or a reported failure."""

    def __init__(
        self,
        gateway: TradeGateway,
        *,
        account_id: str | None = None,
        current_holdings: Decimal | None = None,
        guard: OrderGuard | None = None,
        event_bus: EventBus | None = None,
        preview_ttl: timedelta | None = None,
    ) -> None:
        """Initialize the controller.

        Args:
            gateway: Impact calculator and order committer
            account_id: Account pre-selected by the calling surface
            current_holdings: Quantity held, used for the advisory SELL check
            guard: Local validation rules
            event_bus: Optional bus for workflow and order events
            preview_ttl: Client-side expiry for quotes that carry none
        """
        self._gateway = gateway
        self._account_id = account_id
        self._holdings = current_holdings
        self._guard = guard or OrderGuard()
        self._event_bus = event_bus
        self._preview_ttl = preview_ttl

        self._state = WorkflowState.FORM
        self._draft: dict[str, Any] = self._blank_draft()
        self._intent: OrderIntent | None = None
        self._quote: ImpactQuote | None = None
        self._order: PlacedOrder | None = None
        self._error: OrderDeskError | None = None
        self._consumed: set[str] = set()
        # Bumped on every edit/reset so late responses can be recognised
        self._generation = 0

    # ------------------------------------------------------------------
    # Exposed state
    # ------------------------------------------------------------------
    @property
    def state(self) -> WorkflowState:
        return self._state

    @property
    def draft(self) -> dict[str, Any]:
        return dict(self._draft)

    @property
    def intent(self) -> OrderIntent | None:
        return self._intent

    @property
    def quote(self) -> ImpactQuote | None:
        return self._quote

    @property
    def order(self) -> PlacedOrder | None:
        return self._order

    @property
    def error(self) -> OrderDeskError | None:
        return self._error

    @property
    def current_holdings(self) -> Decimal | None:
        return self._holdings

    @property
    def is_busy(self) -> bool:
        """True while a network call triggered by the workflow is in flight."""
        return self._state in (WorkflowState.PREVIEWING, WorkflowState.CONFIRMING)

    @property
    def can_preview(self) -> bool:
        return self._state in _PREVIEWABLE

    @property
    def can_confirm(self) -> bool:
        quote = self._quote
        return (
            self._state == WorkflowState.PREVIEW
            and quote is not None
            and quote.accepted
            and quote.preview_id not in self._consumed
            and not self._is_expired(quote)
        )

    def snapshot(self) -> WorkflowSnapshot:
        return WorkflowSnapshot(
            state=self._state,
            draft=dict(self._draft),
            intent=self._intent,
            quote=self._quote,
            order=self._order,
            error=self._error,
            can_preview=self.can_preview,
            can_confirm=self.can_confirm,
        )

    def is_consumed(self, preview_id: str) -> bool:
        return preview_id in self._consumed

    # ------------------------------------------------------------------
    # Form handling
    # ------------------------------------------------------------------
    def update(self, **fields: Any) -> None:
        """Apply form edits; any held preview becomes stale."""
        if self._state not in _EDITABLE:
            raise WorkflowStateError(
                f"Order form cannot be edited while {self._state.value}; reset the ticket first"
            )
        self._draft.update(fields)
        self._generation += 1
        if self._state != WorkflowState.FORM:
            if self._quote is not None:
                logger.debug("Discarding preview {} after form edit", self._quote.preview_id)
            self._quote = None
            self._intent = None
            self._error = None
            self._transition(WorkflowState.FORM)

    def set_holdings(self, quantity: Decimal | None) -> None:
        self._holdings = quantity

    def reset(self) -> None:
        """Return to a blank form. Safe from any state.

        An in-flight commit is not cancelled; if it succeeds the order is still
        published for the lifecycle tracker.
        """
        self._generation += 1
        self._draft = self._blank_draft()
        self._intent = None
        self._quote = None
        self._order = None
        self._error = None
        self._transition(WorkflowState.FORM)

    # ------------------------------------------------------------------
    # Impact -> Preview
    # ------------------------------------------------------------------
    async def request_preview(
        self, intent: OrderIntent | Mapping[str, Any] | None = None
    ) -> ImpactQuote:
        """Validate the intent and request an impact quote.

        Args:
            intent: Intent or raw form fields; defaults to the current draft

        Returns:
            The quote now held in Preview (possibly with ``accepted=False``)

        Raises:
            OrderValidationError: Local validation failed; no request was made
            WorkflowStateError: A preview or commit is already in flight
            GatewayError: The impact request failed; retry with the same intent
            StalePreviewError: The form changed while the request was in flight
        """
        if not self.can_preview:
            raise WorkflowStateError(f"Cannot request a preview while {self._state.value}")

        if intent is not None and not isinstance(intent, Mapping):
            self._draft = self._draft_from_intent(intent)
            self._generation += 1
        elif intent is not None:
            self._draft.update(intent)
            self._generation += 1

        try:
            parsed = build_intent(self._draft)
            self._guard.check_intent(parsed, self._holdings)
        except OrderValidationError as exc:
            self._quote = None
            self._intent = None
            self._error = exc
            self._transition(WorkflowState.FORM)
            raise

        generation = self._generation
        self._intent = parsed
        self._quote = None
        self._error = None
        self._transition(WorkflowState.PREVIEWING)

        try:
            quote = await self._gateway.compute_impact(parsed)
        except (TimeoutError, ConnectionError) as exc:
            raise self._fail_preview(generation, parsed.symbol, GatewayError(str(exc))) from exc
        except OrderDeskError as exc:
            failure = self._fail_preview(generation, parsed.symbol, exc)
            if failure is exc:
                raise
            raise failure from exc

        if generation != self._generation:
            logger.debug("Dropping preview {} for an outdated order form", quote.preview_id)
            raise StalePreviewError("Order changed while the preview was loading")

        if quote.expires_at is None and self._preview_ttl is not None:
            quote = quote.model_copy(update={"expires_at": quote.generated_at + self._preview_ttl})

        self._quote = quote
        if quote.accepted:
            logger.info(
                "Preview {} ready: {} {} {} total={}",
                quote.preview_id,
                parsed.side.value,
                parsed.quantity,
                parsed.symbol,
                quote.estimated_total,
            )
        else:
            logger.info(f"Preview {quote.preview_id} rejected: {quote.rejection_reason}")
        self._transition(WorkflowState.PREVIEW)
        return quote

    # ------------------------------------------------------------------
    # Preview -> Confirm
    # ------------------------------------------------------------------
    async def confirm(self, quote: ImpactQuote | str | None = None) -> PlacedOrder:
        """Commit the held preview exactly once.

        Args:
            quote: The quote (or its preview id) the user confirmed; defaults to
                the held quote

        Returns:
            The placed order

        Raises:
            PreviewConsumedError: The preview handle was already used
            StalePreviewError: The quote is no longer held, or it expired
            ImpactRejectedError: The brokerage rejected the preview
            CommitRejectedError: The brokerage refused the order
            CommitFailedError: Placement could not be confirmed; check order history
        """
        held = self._quote
        if quote is None:
            preview_id = held.preview_id if held is not None else None
        else:
            preview_id = quote if isinstance(quote, str) else quote.preview_id

        # Check and consume with no await in between
        if preview_id is not None and preview_id in self._consumed:
            raise PreviewConsumedError(preview_id)
        if (
            self._state != WorkflowState.PREVIEW
            or held is None
            or preview_id != held.preview_id
        ):
            raise StalePreviewError(
                "This preview is no longer current. Request a new preview before confirming."
            )
        if not held.accepted:
            raise ImpactRejectedError(held.preview_id, held.rejection_reason or "rejected")
        if self._is_expired(held):
            logger.info(f"Preview {held.preview_id} expired before confirmation")
            self._quote = None
            self._transition(WorkflowState.FORM)
            raise StalePreviewError("Preview expired. Request a new preview before confirming.")

        self._consumed.add(held.preview_id)
        generation = self._generation
        self._transition(WorkflowState.CONFIRMING)

        try:
            order = await self._gateway.commit(held.preview_id)
        except CommitError as exc:
            self._fail_commit(generation, exc)
            raise
        except (OrderDeskError, TimeoutError, ConnectionError) as exc:
            failure = CommitFailedError(held.preview_id, str(exc))
            self._fail_commit(generation, failure)
            raise failure from exc

        self._publish_order(order)
        if generation != self._generation:
            logger.warning(
                f"Order {order.order_id} was placed after its ticket was closed; "
                "it will appear in order history"
            )
            return order

        self._order = order
        self._quote = None
        self._transition(WorkflowState.SUCCESS)
        logger.info(f"Order {order.order_id} placed from preview {held.preview_id}")
        return order

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _fail_preview(self, generation: int, symbol: str, exc: OrderDeskError) -> OrderDeskError:
        if generation != self._generation:
            return StalePreviewError("Order changed while the preview was loading")
        logger.warning(f"Impact request failed for {symbol}: {exc}")
        self._error = exc
        self._transition(WorkflowState.ERROR)
        return exc

    def _fail_commit(self, generation: int, exc: CommitError) -> None:
        if isinstance(exc, CommitFailedError):
            logger.error(f"Commit for preview {exc.preview_id} unconfirmed: {exc.detail}")
        else:
            logger.warning(f"Commit rejected: {exc}")
        if generation != self._generation:
            return
        self._quote = None
        self._error = exc
        self._transition(WorkflowState.ERROR)

    def _is_expired(self, quote: ImpactQuote) -> bool:
        now = datetime.now(UTC)
        if quote.expires_at is not None:
            return quote.is_expired(now)
        if self._preview_ttl is not None:
            return now >= quote.generated_at + self._preview_ttl
        return False

    def _blank_draft(self) -> dict[str, Any]:
        return {"account_id": self._account_id} if self._account_id else {}

    @staticmethod
    def _draft_from_intent(intent: OrderIntent) -> dict[str, Any]:
        return intent.model_dump(exclude_none=True)

    def _transition(self, state: WorkflowState) -> None:
        previous = self._state
        self._state = state
        if previous != state:
            logger.debug("Workflow {} -> {}", previous.value, state.value)
        if self._event_bus is None:
            return
        self._event_bus.publish_nowait(
            EventTopic.WORKFLOW,
            WorkflowEvent(
                previous=previous,
                state=state,
                preview_id=self._quote.preview_id if self._quote else None,
                order_id=self._order.order_id if self._order else None,
                error=str(self._error) if self._error else None,
                timestamp=datetime.now(UTC),
            ),
        )

    def _publish_order(self, order: PlacedOrder) -> None:
        if self._event_bus is None:
            return
        self._event_bus.publish_nowait(
            EventTopic.ORDER_STATUS,
            OrderStatusEvent(
                order_id=order.order_id,
                status=order.status,
                symbol=order.symbol,
                side=order.side,
                quantity=order.quantity,
                filled_quantity=order.filled_quantity,
                avg_fill_price=order.avg_fill_price,
                cancel_requested=order.cancel_requested,
                stale=False,
                timestamp=datetime.now(UTC),
            ),
        )
