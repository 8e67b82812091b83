"""Adapters to the external collaborators of the lifecycle engine.

- Refund Gateway: the payment processor, reached over HTTP with
  ``httpx``.  Calls are idempotent per cancellation record id.
- Loyalty: points/coupon restoration, requested through the outbox
  (topic ``loyalty``) inside the cancelling transaction.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional
from uuid import UUID

import httpx
import structlog
from django.conf import settings
from django.utils.module_loading import import_string

from modules.core.middleware import REQUEST_ID_HEADER, current_request_id
from modules.orders.emitter import OrderEventEmitter
from modules.orders.events import CouponRestoreRequested, PointsRestoreRequested
from modules.orders.exceptions import RefundGatewayFailure

logger = structlog.get_logger(__name__)

OUTCOME_COMPLETED = "completed"
OUTCOME_FAILED = "failed"
OUTCOME_ACCEPTED = "accepted"

_COMPLETED_STATES = {"completed", "succeeded", "success"}
_ACCEPTED_STATES = {"accepted", "pending", "processing"}
_RETRYABLE_STATUS_CODES = {408, 425, 429}


class RefundGatewayError(RefundGatewayFailure):
    """Transport-level refund failure.

    ``retryable`` errors (timeouts, 5xx, rate limits) may be retried with
    the same idempotency key; the others are final.
    """

    def __init__(self, message: str, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


@dataclass(frozen=True)
class RefundOutcome:
    """Synchronous answer of the processor.

    ``accepted`` means the final result arrives later via the callback.
    """

    status: str
    gateway_ref: str = ""
    reason: str = ""


# ---------------------------------------------------------------------------
# Refund gateway
# ---------------------------------------------------------------------------


class IRefundGateway(ABC):
    @abstractmethod
    def refund(
        self, payment_id: str, amount: Decimal, idempotency_key: str
    ) -> RefundOutcome:
        """Ask the processor to refund ``amount`` of ``payment_id``.

        Raises:
            RefundGatewayError: the request could not be completed.
        """


class HttpRefundGateway(IRefundGateway):
    """Refund gateway speaking JSON over HTTP."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._base_url = (base_url if base_url is not None else settings.REFUND_GATEWAY_URL).rstrip("/")
        self._api_key = api_key if api_key is not None else settings.REFUND_GATEWAY_API_KEY
        self._timeout = timeout if timeout is not None else settings.REFUND_GATEWAY_TIMEOUT_SECONDS
        self._transport = transport

    def refund(
        self, payment_id: str, amount: Decimal, idempotency_key: str
    ) -> RefundOutcome:
        if not self._base_url:
            raise RefundGatewayError("Refund gateway URL is not configured.", retryable=False)
        if not payment_id:
            raise RefundGatewayError("Order has no payment id to refund.", retryable=False)

        log = logger.bind(payment_id=payment_id, amount=str(amount), idempotency_key=idempotency_key)
        headers = {"Idempotency-Key": idempotency_key}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        request_id = current_request_id()
        if request_id:
            headers[REQUEST_ID_HEADER] = request_id

        try:
            with httpx.Client(
                base_url=self._base_url, timeout=self._timeout, transport=self._transport
            ) as client:
                response = client.post(
                    "/refunds",
                    json={
                        "payment_id": payment_id,
                        "amount": str(amount),
                        "idempotency_key": idempotency_key,
                    },
                    headers=headers,
                )
        except httpx.TimeoutException as exc:
            log.warning("refund_gateway.timeout")
            raise RefundGatewayError(f"Refund gateway timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            log.warning("refund_gateway.transport_error", error=str(exc))
            raise RefundGatewayError(f"Refund gateway unreachable: {exc}") from exc

        return self._to_outcome(response, log)

    @staticmethod
    def _to_outcome(response: httpx.Response, log) -> RefundOutcome:
        code = response.status_code
        if code >= 500 or code in _RETRYABLE_STATUS_CODES:
            log.warning("refund_gateway.retryable_status", status_code=code)
            raise RefundGatewayError(f"Refund gateway answered HTTP {code}.")

        try:
            body = response.json()
        except ValueError:
            body = {}
        gateway_ref = str(body.get("refund_id") or body.get("id") or "")
        reason = str(body.get("message") or body.get("error") or "")

        if code >= 400:
            log.warning("refund_gateway.rejected", status_code=code, reason=reason)
            return RefundOutcome(OUTCOME_FAILED, gateway_ref, reason or f"HTTP {code}")

        state = str(body.get("status", "")).lower()
        if code == 202 or state in _ACCEPTED_STATES:
            return RefundOutcome(OUTCOME_ACCEPTED, gateway_ref)
        if state in _COMPLETED_STATES:
            return RefundOutcome(OUTCOME_COMPLETED, gateway_ref)
        return RefundOutcome(OUTCOME_FAILED, gateway_ref, reason or f"Unexpected refund status '{state}'.")


def build_refund_gateway() -> IRefundGateway:
    """Instantiate the backend named by ``REFUND_GATEWAY_BACKEND``."""
    return import_string(settings.REFUND_GATEWAY_BACKEND)()


# ---------------------------------------------------------------------------
# Loyalty
# ---------------------------------------------------------------------------


class ILoyaltyGateway(ABC):
    @abstractmethod
    def restore_points(
        self, order_id: UUID, customer_id: UUID, amount: Decimal, cancellation_id: UUID
    ) -> None: ...

    @abstractmethod
    def restore_coupon(
        self, order_id: UUID, customer_id: UUID, coupon_id: str, cancellation_id: UUID
    ) -> None: ...


class OutboxLoyaltyGateway(ILoyaltyGateway):
    """Requests restoration by writing ``loyalty`` outbox events.

    Must run inside the cancelling transaction so a rolled-back
    cancellation never hands anything back.
    """

    def __init__(self, emitter: Optional[OrderEventEmitter] = None) -> None:
        self._emitter = emitter or OrderEventEmitter()

    def restore_points(
        self, order_id: UUID, customer_id: UUID, amount: Decimal, cancellation_id: UUID
    ) -> None:
        self._emitter.emit(
            PointsRestoreRequested(
                aggregate_id=order_id,
                customer_id=customer_id,
                amount=amount,
                cancellation_id=cancellation_id,
            )
        )

    def restore_coupon(
        self, order_id: UUID, customer_id: UUID, coupon_id: str, cancellation_id: UUID
    ) -> None:
        self._emitter.emit(
            CouponRestoreRequested(
                aggregate_id=order_id,
                customer_id=customer_id,
                coupon_id=coupon_id,
                cancellation_id=cancellation_id,
            )
        )
