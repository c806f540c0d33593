"""Error taxonomy for order placement and lifecycle tracking."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from order_desk.core.constants import COMMIT_UNCONFIRMED_MESSAGE


class OrderDeskError(Exception):
    """Base class for every error raised by the order desk."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class OrderValidationError(OrderDeskError):
    """Order intent failed local validation; no request was made."""

    def __init__(self, errors: Iterable[str]) -> None:
        self.errors = list(errors) or ["Invalid order"]
        super().__init__("; ".join(self.errors))


class WorkflowStateError(OrderDeskError):
    """Operation is not allowed in the current workflow state."""


class PreviewConsumedError(WorkflowStateError):
    """The preview handle was already used for a commit attempt."""

    def __init__(self, preview_id: str) -> None:
        self.preview_id = preview_id
        super().__init__(
            f"Preview {preview_id} has already been used. Request a new preview to try again."
        )


class StalePreviewError(WorkflowStateError):
    """The preview no longer matches the order being placed."""


class ImpactRejectedError(OrderDeskError):
    """The brokerage would reject the previewed order."""

    def __init__(self, preview_id: str, reason: str) -> None:
        self.preview_id = preview_id
        self.reason = reason
        super().__init__(f"Order cannot be placed: {reason}")


@dataclass(frozen=True, slots=True)
class FailureClass:
    """Classification of a gateway failure."""

    code: str
    transient: bool
    user_message: str


_TRANSIENT_STATUSES = {408, 429, 503, 504}
_TRANSIENT_CODES = {"TEMPORARY_ERROR", "TIMEOUT", "RATE_LIMIT"}
_AUTH_STATUSES = {401, 403}
_AUTH_CODES = {"INVALID_CREDENTIALS", "ACCESS_REVOKED", "AUTHORIZATION_EXPIRED"}


def classify_gateway_failure(status_code: int | None, code: str | None = None) -> FailureClass:
    """Classify a gateway failure by HTTP status and brokerage error code."""
    normalized = (code or "").upper()
    if status_code is None:
        return FailureClass(
            code="NETWORK_ERROR",
            transient=True,
            user_message="Could not reach the brokerage. Please check your connection.",
        )
    if status_code in _TRANSIENT_STATUSES or normalized in _TRANSIENT_CODES:
        return FailureClass(
            code="TEMPORARY_ERROR",
            transient=True,
            user_message="Service temporarily unavailable. Please try again in a moment.",
        )
    if status_code in _AUTH_STATUSES or normalized in _AUTH_CODES:
        return FailureClass(
            code="AUTH_EXPIRED",
            transient=False,
            user_message="Account authorization expired. Please reconnect your account.",
        )
    if status_code == 404:
        return FailureClass(
            code="TEMPORARY_UNAVAILABLE",
            transient=True,
            user_message="Account data temporarily unavailable. Please try again.",
        )
    return FailureClass(
        code=normalized or "REQUEST_FAILED",
        transient=False,
        user_message="Request to the brokerage failed. Please try again.",
    )


class GatewayError(OrderDeskError):
    """Transport or HTTP failure talking to the brokerage gateway."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        failure = classify_gateway_failure(status_code, code)
        self.code = failure.code
        self.transient = failure.transient
        self.user_message = failure.user_message


class CommitError(OrderDeskError):
    """Base class for commit (order placement) failures."""


class CommitFailedError(CommitError):
    """Placement outcome is unknown; the order may exist remotely.

    Never retried automatically: resubmitting could duplicate the order.
    """

    def __init__(self, preview_id: str, detail: str | None = None) -> None:
        self.preview_id = preview_id
        self.detail = detail
        super().__init__(COMMIT_UNCONFIRMED_MESSAGE)


class CommitRejectedError(CommitError):
    """The brokerage refused to place the order (e.g. insufficient buying power)."""

    def __init__(self, preview_id: str, reason: str) -> None:
        self.preview_id = preview_id
        self.reason = reason
        super().__init__(f"Order was rejected: {reason}")


class LifecycleError(OrderDeskError):
    """Reading or cancelling a placed order failed; retry on the next poll."""

    def __init__(self, message: str, *, order_id: str | None = None) -> None:
        super().__init__(message)
        self.order_id = order_id


class OrderNotFoundError(LifecycleError):
    """The brokerage does not know the order."""

    def __init__(self, order_id: str) -> None:
        super().__init__("Order not found or already processed", order_id=order_id)


class CancelNotSupportedError(LifecycleError):
    """The brokerage does not support cancelling orders for this account."""

    def __init__(self, order_id: str) -> None:
        super().__init__(
            "This brokerage does not support order cancellation", order_id=order_id
        )


class AlreadyFinalizedError(OrderDeskError):
    """Cancel was attempted on an order that has already reached a terminal state."""

    def __init__(self, order_id: str, status: str | None = None) -> None:
        self.order_id = order_id
        self.status = status
        detail = f" ({status})" if status else ""
        super().__init__(f"Order {order_id} is already finalized{detail} and cannot be cancelled")
