"""HTTP brokerage gateway client."""

from __future__ import annotations

import math
import re
from datetime import UTC, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any
from urllib.parse import quote

import httpx
from loguru import logger

from order_desk.core.config import OrderDeskConfig
from order_desk.core.constants import DEFAULT_CURRENCY, DEFAULT_REJECTION_REASON
from order_desk.errors import (
    AlreadyFinalizedError,
    CancelNotSupportedError,
    CommitFailedError,
    CommitRejectedError,
    GatewayError,
    LifecycleError,
    OrderNotFoundError,
)
from order_desk.gateway.retry import with_retry
from order_desk.models import (
    ImpactQuote,
    ImpactSummaryLine,
    Money,
    OrderIntent,
    OrderSide,
    OrderType,
    PlacedOrder,
    Quote,
    TimeInForce,
    normalize_order_status,
)


class HttpBrokerageGateway:
    """Brokerage gateway backed by the dashboard's trading API.

    Order placement is never retried: a commit whose outcome cannot be
    confirmed raises ``CommitFailedError`` and the caller must check the order
    history instead of resubmitting.
    """

    def __init__(
        self, config: OrderDeskConfig, http_client: httpx.AsyncClient | None = None
    ) -> None:
        """Initialize the gateway.

        Args:
            config: Order desk configuration
            http_client: Optional injected client (primarily for testing)
        """
        self.config = config
        self.max_attempts = config.max_retries
        self.backoff_base = config.retry_backoff
        self._http_client = http_client
        self._owns_client = http_client is None
        self._preview_intents: dict[str, OrderIntent] = {}

    async def connect(self) -> None:
        """Create the underlying HTTP client."""
        if self._http_client is not None:
            return
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.config.api_token:
            headers["Authorization"] = f"Bearer {self.config.api_token}"
        self._http_client = httpx.AsyncClient(
            base_url=self.config.gateway_url,
            timeout=httpx.Timeout(self.config.request_timeout),
            headers=headers,
        )
        self._owns_client = True
        logger.info(f"Brokerage gateway client ready for {self.config.gateway_url}")

    async def disconnect(self) -> None:
        """Close the HTTP client if this gateway created it."""
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None
            logger.info("Brokerage gateway client closed")

    async def __aenter__(self) -> HttpBrokerageGateway:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.disconnect()

    @property
    def _http(self) -> httpx.AsyncClient:
        if self._http_client is None:
            raise RuntimeError("Gateway client is not connected. Call connect() first.")
        return self._http_client

    # ------------------------------------------------------------------
    # Quote provider
    # ------------------------------------------------------------------
    async def get_quote(self, symbol: str) -> Quote:
        symbol = symbol.upper().strip()
        try:
            data = await self._get(f"/api/quotes/{quote(symbol, safe='')}")
        except httpx.HTTPError as exc:
            raise _gateway_error(f"Quote request for {symbol}", exc) from exc
        return _parse_quote(symbol, _json_object(data, f"Quote request for {symbol}"))

    # ------------------------------------------------------------------
    # Impact calculator
    # ------------------------------------------------------------------
    async def compute_impact(self, intent: OrderIntent) -> ImpactQuote:
        logger.info(
            f"Requesting impact: {intent.side.value} {intent.quantity} "
            f"{intent.symbol} @ {intent.kind.value}"
        )
        try:
            data = await self._post("/api/trades/impact", intent.to_payload())
        except httpx.HTTPError as exc:
            raise _gateway_error(f"Impact request for {intent.symbol}", exc) from exc

        data = _json_object(data, f"Impact request for {intent.symbol}")
        try:
            impact = self._parse_impact(intent, data)
        except (ValueError, TypeError, AttributeError) as exc:
            logger.warning(f"Unreadable impact response for {intent.symbol}: {exc}")
            raise GatewayError(
                f"Impact request for {intent.symbol} returned an unreadable quote",
                status_code=502,
            ) from exc
        self._preview_intents[impact.preview_id] = intent
        logger.info(
            "Impact received: preview_id={}, accepted={}, total={}",
            impact.preview_id,
            impact.accepted,
            impact.estimated_total,
        )
        return impact

    # ------------------------------------------------------------------
    # Order committer
    # ------------------------------------------------------------------
    async def commit(self, preview_id: str) -> PlacedOrder:
        """Place the order authorised by ``preview_id`` exactly once."""
        logger.info(f"Placing order for preview {preview_id}")
        try:
            response = await self._http.post("/api/trades/place", json={"impactId": preview_id})
        except httpx.HTTPError as exc:
            logger.error(f"Order placement for preview {preview_id} unconfirmed: {exc}")
            raise CommitFailedError(preview_id, str(exc)) from exc

        status_code = response.status_code
        if status_code == 408 or status_code >= 500:
            logger.error(
                f"Order placement for preview {preview_id} unconfirmed: HTTP {status_code}"
            )
            raise CommitFailedError(preview_id, f"HTTP {status_code}")
        if status_code >= 400:
            reason = _error_message(response)
            logger.warning(f"Order placement for preview {preview_id} rejected: {reason}")
            raise CommitRejectedError(preview_id, reason)

        intent = self._preview_intents.pop(preview_id, None)
        try:
            order = _parse_order(response.json(), fallback=intent)
        except ValueError as exc:
            logger.error(f"Unreadable placement response for preview {preview_id}: {exc}")
            raise CommitFailedError(preview_id, str(exc)) from exc

        logger.info(f"Order submitted with ID: {order.order_id}")
        return order

    # ------------------------------------------------------------------
    # Lifecycle backend
    # ------------------------------------------------------------------
    async def list_orders(self, account_id: str, *, since: datetime) -> list[PlacedOrder]:
        # One minute of slack keeps an exact N-day window from rounding up to N + 1
        elapsed = datetime.now(UTC) - since - timedelta(minutes=1)
        days = max(1, math.ceil(elapsed / timedelta(days=1)))
        try:
            data = await self._get("/api/orders", params={"accountId": account_id, "days": days})
        except httpx.HTTPError as exc:
            raise _gateway_error(f"Order list for account {account_id}", exc) from exc

        raw_orders = (data.get("orders") or []) if isinstance(data, dict) else data
        if not isinstance(raw_orders, list):
            raise GatewayError(
                f"Order list for account {account_id} returned an unexpected payload",
                status_code=502,
            )
        orders: list[PlacedOrder] = []
        for raw in raw_orders:
            try:
                order = _parse_order(raw, account_id=account_id)
            except ValueError as exc:
                logger.warning(f"Skipping unreadable order in listing: {exc}")
                continue
            if order.placed_at >= since:
                orders.append(order)
        orders.sort(key=lambda item: item.placed_at, reverse=True)
        return orders

    async def get_order(self, order_id: str, *, account_id: str | None = None) -> PlacedOrder:
        params = {"accountId": account_id} if account_id else None
        try:
            data = await self._get(f"/api/orders/{quote(order_id, safe='')}", params=params)
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == 404:
                raise OrderNotFoundError(order_id) from exc
            raise _gateway_error(f"Status request for order {order_id}", exc) from exc
        except httpx.HTTPError as exc:
            raise _gateway_error(f"Status request for order {order_id}", exc) from exc
        try:
            return _parse_order(data, account_id=account_id)
        except ValueError as exc:
            raise LifecycleError(f"Unreadable order status: {exc}", order_id=order_id) from exc

    async def cancel_order(self, order_id: str, *, account_id: str | None = None) -> None:
        logger.info(f"Cancelling order {order_id}")
        try:
            await self._delete(f"/api/orders/{quote(order_id, safe='')}", {"accountId": account_id})
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            if status_code == 409:
                raise AlreadyFinalizedError(order_id) from exc
            if status_code == 404:
                raise OrderNotFoundError(order_id) from exc
            if status_code == 501:
                raise CancelNotSupportedError(order_id) from exc
            raise _gateway_error(f"Cancel request for order {order_id}", exc) from exc
        except httpx.HTTPError as exc:
            raise _gateway_error(f"Cancel request for order {order_id}", exc) from exc

    # ------------------------------------------------------------------
    # Transport helpers
    # ------------------------------------------------------------------
    @with_retry(method="GET")
    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        response = await self._http.get(path, params=params)
        response.raise_for_status()
        return _json_body(response)

    @with_retry(method="POST")
    async def _post(self, path: str, body: dict[str, Any]) -> Any:
        response = await self._http.post(path, json=body)
        response.raise_for_status()
        return _json_body(response)

    @with_retry(method="DELETE")
    async def _delete(self, path: str, body: dict[str, Any]) -> None:
        response = await self._http.request("DELETE", path, json=body)
        response.raise_for_status()

    def _parse_impact(self, intent: OrderIntent, data: dict[str, Any]) -> ImpactQuote:
        preview_id = data.get("impactId") or data.get("previewId")
        if not preview_id:
            raise GatewayError("Impact response did not include an impactId", status_code=502)

        total = _money(data.get("estimatedTotal") or data.get("estCost"))
        cost = _money(data.get("estimatedCost")) or total
        currency = total.currency if total else DEFAULT_CURRENCY
        if total is None:
            total = Money(amount=Decimal("0"), currency=currency)
        if cost is None:
            cost = total
        fees = _money(data.get("estimatedFees")) or Money(amount=Decimal("0"), currency=currency)

        accepted = bool(data.get("accepted", False))
        reason = data.get("reason") or data.get("rejectionReason")
        if accepted:
            reason = None
        elif not reason:
            reason = DEFAULT_REJECTION_REASON

        generated_at = _parse_timestamp(data.get("generatedAt")) or datetime.now(UTC)
        expires_at = _parse_timestamp(data.get("expiresAt")) or generated_at + timedelta(
            seconds=self.config.preview_ttl_seconds
        )

        return ImpactQuote(
            preview_id=str(preview_id),
            intent=intent,
            accepted=accepted,
            rejection_reason=reason,
            estimated_cost=cost,
            estimated_fees=fees,
            estimated_total=total,
            warnings=tuple(_warning_text(item) for item in data.get("warnings") or []),
            lines=tuple(
                ImpactSummaryLine(
                    label=str(line.get("label", "")), value=str(line.get("value", ""))
                )
                for line in data.get("lines") or []
            ),
            generated_at=generated_at,
            expires_at=expires_at,
        )


def _gateway_error(action: str, exc: httpx.HTTPError) -> GatewayError:
    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        message = _error_message(response)
        logger.warning(f"{action} failed with HTTP {response.status_code}: {message}")
        return GatewayError(
            f"{action} failed: {message}",
            status_code=response.status_code,
            code=_error_code(response),
        )
    logger.warning(f"{action} failed: {exc}")
    return GatewayError(f"{action} failed: {exc}")


def _json_body(response: httpx.Response) -> dict[str, Any] | list[Any]:
    """Decode a successful response, treating anything but an object or array as a bad gateway."""
    path = response.request.url.path
    try:
        body = response.json()
    except ValueError as exc:
        logger.warning(f"Unreadable response body from {path}: {exc}")
        raise GatewayError(f"Unreadable response from {path}", status_code=502) from exc
    if not isinstance(body, dict | list):
        logger.warning(f"Unexpected {type(body).__name__} response body from {path}")
        raise GatewayError(f"Unexpected response from {path}", status_code=502)
    return body


def _json_object(data: object, action: str) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise GatewayError(f"{action} returned an unexpected payload", status_code=502)
    return data


def _error_body(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _error_message(response: httpx.Response) -> str:
    body = _error_body(response)
    error = body.get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if body.get("message"):
        return str(body["message"])
    if isinstance(error, str) and error:
        return error
    return response.text or f"HTTP {response.status_code}"


def _error_code(response: httpx.Response) -> str | None:
    body = _error_body(response)
    error = body.get("error")
    if isinstance(error, dict) and error.get("code"):
        return str(error["code"])
    code = body.get("code") or body.get("error_code")
    return str(code) if code else None


def _decimal(value: object) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def _money(value: object) -> Money | None:
    if value is None:
        return None
    if isinstance(value, dict):
        amount = _decimal(value.get("amount"))
        if amount is None:
            return None
        return Money(amount=amount, currency=value.get("currency") or DEFAULT_CURRENCY)
    amount = _decimal(value)
    return Money(amount=amount) if amount is not None else None


def _parse_timestamp(value: object) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _warning_text(item: object) -> str:
    if isinstance(item, dict):
        return str(item.get("description") or item.get("message") or item)
    return str(item)


def _order_type(value: object) -> OrderType | None:
    if value is None:
        return None
    if isinstance(value, OrderType):
        return value
    key = re.sub(r"[^A-Z]", "", str(value).upper())
    return {
        "MARKET": OrderType.MARKET,
        "MKT": OrderType.MARKET,
        "LIMIT": OrderType.LIMIT,
        "LMT": OrderType.LIMIT,
        "STOP": OrderType.STOP,
        "STP": OrderType.STOP,
        "STOPLIMIT": OrderType.STOP_LIMIT,
        "STPLMT": OrderType.STOP_LIMIT,
    }.get(key)


def _parse_quote(symbol: str, data: dict[str, Any]) -> Quote:
    price = _decimal(data.get("price", data.get("lastPrice")))
    if price is None:
        raise GatewayError(f"Quote for {symbol} did not include a price", status_code=502)
    return Quote(
        symbol=data.get("symbol") or symbol,
        price=price,
        bid=_decimal(data.get("bid")),
        ask=_decimal(data.get("ask")),
        change_percent=_decimal(data.get("changePercent")),
        as_of=_parse_timestamp(data.get("asOf") or data.get("timestamp")) or datetime.now(UTC),
    )


def _parse_order(
    data: object,
    *,
    fallback: OrderIntent | None = None,
    account_id: str | None = None,
) -> PlacedOrder:
    """Build a PlacedOrder from a gateway payload, completing gaps from the intent."""
    if not isinstance(data, dict):
        raise ValueError("order payload is not an object")
    payload = data.get("order") if isinstance(data.get("order"), dict) else data

    order_id = payload.get("orderId") or payload.get("id") or payload.get("brokerage_order_id")
    if not order_id:
        raise ValueError("order payload is missing an order id")

    symbol = (
        payload.get("symbol") or payload.get("ticker") or (fallback.symbol if fallback else None)
    )
    side = payload.get("side") or payload.get("action") or (fallback.side if fallback else None)
    quantity = _decimal(payload.get("quantity", payload.get("units")))
    if quantity is None and fallback is not None:
        quantity = fallback.quantity
    order_type = _order_type(payload.get("type") or payload.get("orderType"))
    if order_type is None and fallback is not None:
        order_type = fallback.kind
    if symbol is None or side is None or quantity is None or order_type is None:
        raise ValueError(f"order {order_id} is missing symbol, side, quantity or type")

    placed_at = (
        _parse_timestamp(payload.get("placedAt") or payload.get("submittedAt"))
        or datetime.now(UTC)
    )
    tif = payload.get("timeInForce") or (fallback.time_in_force if fallback else None)

    return PlacedOrder(
        order_id=str(order_id),
        account_id=(
            payload.get("accountId") or account_id or (fallback.account_id if fallback else None)
        ),
        symbol=str(symbol),
        side=OrderSide(str(side.value if isinstance(side, OrderSide) else side).upper()),
        quantity=quantity,
        filled_quantity=_decimal(payload.get("filledQuantity")) or Decimal("0"),
        order_type=order_type,
        limit_price=_decimal(payload.get("limitPrice")) or getattr(fallback, "limit_price", None),
        stop_price=_decimal(payload.get("stopPrice")) or getattr(fallback, "stop_price", None),
        time_in_force=TimeInForce(str(tif.value if isinstance(tif, TimeInForce) else tif).upper())
        if tif
        else TimeInForce.DAY,
        status=normalize_order_status(payload.get("status")),
        avg_fill_price=_decimal(payload.get("avgFillPrice")),
        placed_at=placed_at,
        last_updated_at=_parse_timestamp(payload.get("updatedAt")) or placed_at,
    )
