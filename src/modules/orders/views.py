"""Order API views.

Exposes the ``OrderLifecycleService`` via HTTP using DRF ViewSets.
Every request is turned into an explicit ``ActorContext`` built from the
authenticated token claims.  Domain exceptions are caught and translated
into HTTP status codes; the view never swallows generic exceptions.
"""

from __future__ import annotations

import hmac
from typing import Any, Mapping

import structlog
from django.conf import settings
from django_filters.rest_framework import DjangoFilterBackend
from pydantic import ValidationError as PydanticValidationError
from rest_framework import status
from rest_framework.decorators import action
from rest_framework.filters import OrderingFilter
from rest_framework.permissions import AllowAny
from rest_framework.request import Request
from rest_framework.response import Response
from rest_framework.throttling import BaseThrottle
from rest_framework.views import APIView
from rest_framework.viewsets import GenericViewSet

from modules.core.exceptions import VALIDATION_ERROR, error_response
from modules.core.pagination import StandardResultsSetPagination
from modules.orders.constants import ActorRole
from modules.orders.dtos import (
    ActorContext,
    AdvanceStatusDTO,
    CancellationRequestDTO,
    PlaceOrderDTO,
    RefundCallbackDTO,
)
from modules.orders.exceptions import (
    AlreadyTerminal,
    CancellationNotFound,
    ConcurrentModification,
    InvalidCancellationReason,
    InvalidOrderData,
    InvalidTransition,
    NotEligibleForCancellation,
    OrderAccessDenied,
    OrderLifecycleError,
    OrderNotFound,
    PersistenceFailure,
    RefundGatewayFailure,
)
from modules.orders.filters import SettlementOrderFilter
from modules.orders.models import Order
from modules.orders.serializers import (
    AdvanceStatusResultSerializer,
    AdvanceStatusSerializer,
    CancelabilitySerializer,
    CancellationRecordSerializer,
    CancellationRequestSerializer,
    CancellationResultSerializer,
    OrderSerializer,
    PlaceOrderSerializer,
    RefundCallbackSerializer,
    SettlementOrderSerializer,
)
from modules.orders.services import OrderLifecycleService

logger = structlog.get_logger(__name__)

WEBHOOK_SECRET_HEADER = "X-Refund-Webhook-Secret"

ERROR_STATUS = {
    OrderNotFound: status.HTTP_404_NOT_FOUND,
    CancellationNotFound: status.HTTP_404_NOT_FOUND,
    OrderAccessDenied: status.HTTP_403_FORBIDDEN,
    InvalidOrderData: status.HTTP_400_BAD_REQUEST,
    InvalidCancellationReason: status.HTTP_400_BAD_REQUEST,
    NotEligibleForCancellation: status.HTTP_409_CONFLICT,
    InvalidTransition: status.HTTP_409_CONFLICT,
    AlreadyTerminal: status.HTTP_409_CONFLICT,
    ConcurrentModification: status.HTTP_409_CONFLICT,
    RefundGatewayFailure: status.HTTP_502_BAD_GATEWAY,
    PersistenceFailure: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def domain_error_response(exc: OrderLifecycleError) -> Response:
    status_code = next(
        (ERROR_STATUS[cls] for cls in type(exc).__mro__ if cls in ERROR_STATUS),
        status.HTTP_400_BAD_REQUEST,
    )
    logger.info(
        "api.domain_error",
        code=exc.code,
        category=exc.category,
        status_code=status_code,
        detail=str(exc),
    )
    return error_response(status_code, exc.code, str(exc), error_type=exc.category)


def actor_from_request(request: Request) -> ActorContext:
    """Build the actor from the token claims (``role``, ``sub``, ``restaurant_id``).

    Auth0 users carry the claims on ``request.user``; SimpleJWT tokens
    carry them on ``request.auth``.
    """
    claims = getattr(request.user, "payload", None)
    if claims is None:
        claims = getattr(request.auth, "payload", request.auth)
    if not isinstance(claims, Mapping):
        raise OrderAccessDenied("The credentials carry no actor claims.")
    try:
        return ActorContext.from_claims(claims)
    except PydanticValidationError as exc:
        raise OrderAccessDenied(f"Invalid actor claims: {exc.errors()[0]['msg']}") from exc


def _invalid_data(exc: PydanticValidationError) -> Response:
    first = exc.errors()[0]
    attr = ".".join(str(part) for part in first.get("loc", ())) or None
    return error_response(
        status.HTTP_400_BAD_REQUEST,
        InvalidOrderData.code,
        first["msg"],
        error_type=VALIDATION_ERROR,
        attr=attr,
    )


class OrderViewSet(GenericViewSet):
    """ViewSet for order lifecycle operations.

    Does **not** extend ``ModelViewSet``; all writes go through the
    service layer, which owns the versioned write and the retry rule.
    """

    queryset = Order.objects.all()
    filterset_class = SettlementOrderFilter
    ordering_fields = ["created_at", "delivered_at", "cancelled_at", "total_amount"]
    ordering = ["-created_at", "-id"]
    filter_backends = [DjangoFilterBackend, OrderingFilter]

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self._service = OrderLifecycleService()

    def get_throttles(self) -> list[BaseThrottle]:
        """Placement and reads get their own throttle scopes."""
        throttle_scope: str | None
        if self.action == "create":
            throttle_scope = "order_placement"
        elif self.action in {"list", "retrieve", "cancelability"}:
            throttle_scope = "order_reads"
        else:
            throttle_scope = None
        self.throttle_scope = throttle_scope
        return super().get_throttles()

    def get_queryset(self):
        return self._service.list_settlement_orders()

    # ------------------------------------------------------------------
    # Place
    # ------------------------------------------------------------------

    def create(self, request: Request) -> Response:
        """POST /api/v1/orders/

        Customers place orders for themselves; ``customer_id`` in the
        body is ignored for them.
        """
        serializer = PlaceOrderSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = dict(serializer.validated_data)

        try:
            actor = actor_from_request(request)
            if actor.role == ActorRole.CUSTOMER:
                data["customer_id"] = actor.actor_id
            elif actor.role not in (ActorRole.ADMIN, ActorRole.SYSTEM):
                raise OrderAccessDenied("Only customers place orders.")
            try:
                dto = PlaceOrderDTO(**data)
            except PydanticValidationError as exc:
                return _invalid_data(exc)
            order = self._service.place_order(dto)
        except OrderLifecycleError as exc:
            return domain_error_response(exc)

        return Response(OrderSerializer(order).data, status=status.HTTP_201_CREATED)

    # ------------------------------------------------------------------
    # Settlement listing / Retrieve
    # ------------------------------------------------------------------

    def list(self, request: Request) -> Response:
        """GET /api/v1/orders/

        Settlement readers only: terminal orders, filtered by restaurant,
        rider, status and completion date, paginated.
        """
        try:
            actor = actor_from_request(request)
            if actor.role not in (ActorRole.ADMIN, ActorRole.SYSTEM):
                raise OrderAccessDenied("Only settlement readers may list orders.")
        except OrderLifecycleError as exc:
            return domain_error_response(exc)

        queryset = self.filter_queryset(self.get_queryset())
        paginator = StandardResultsSetPagination()
        page = paginator.paginate_queryset(queryset, request)
        serializer = SettlementOrderSerializer(page, many=True)
        return paginator.get_paginated_response(serializer.data)

    def retrieve(self, request: Request, pk: str | None = None) -> Response:
        """GET /api/v1/orders/{pk}/"""
        try:
            order = self._service.get_order_for(pk, actor_from_request(request))
        except OrderLifecycleError as exc:
            return domain_error_response(exc)
        return Response(OrderSerializer(order).data)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    @action(detail=True, methods=["get"])
    def cancelability(self, request: Request, pk: str | None = None) -> Response:
        """GET /api/v1/orders/{pk}/cancelability/?refund_rate=0.8"""
        serializer = CancellationRequestSerializer(
            data={
                "reason_category": "other",
                "refund_rate": request.query_params.get("refund_rate"),
            }
        )
        serializer.is_valid(raise_exception=True)
        try:
            result = self._service.check_cancelability(
                pk,
                actor_from_request(request),
                refund_rate=serializer.validated_data["refund_rate"],
            )
        except OrderLifecycleError as exc:
            return domain_error_response(exc)
        return Response(CancelabilitySerializer(result).data)

    @action(detail=True, methods=["post"])
    def cancel(self, request: Request, pk: str | None = None) -> Response:
        """POST /api/v1/orders/{pk}/cancel/

        The refund is dispatched asynchronously after commit; the response
        carries the cancellation record id and the initial refund status.
        """
        serializer = CancellationRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            dto = CancellationRequestDTO(**serializer.validated_data)
            result = self._service.request_cancellation(pk, actor_from_request(request), dto)
        except PydanticValidationError as exc:
            return _invalid_data(exc)
        except OrderLifecycleError as exc:
            return domain_error_response(exc)
        return Response(CancellationResultSerializer(result).data, status=status.HTTP_201_CREATED)

    # ------------------------------------------------------------------
    # Other transitions
    # ------------------------------------------------------------------

    @action(detail=True, methods=["post"])
    def advance(self, request: Request, pk: str | None = None) -> Response:
        """POST /api/v1/orders/{pk}/advance/

        Cancellations are **not** allowed via this endpoint; use
        ``POST /orders/{id}/cancel/`` instead.
        """
        serializer = AdvanceStatusSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            dto = AdvanceStatusDTO(**serializer.validated_data)
            result = self._service.advance_status(pk, actor_from_request(request), dto)
        except PydanticValidationError as exc:
            return _invalid_data(exc)
        except OrderLifecycleError as exc:
            return domain_error_response(exc)
        return Response(AdvanceStatusResultSerializer(result).data)


class CancellationViewSet(GenericViewSet):
    """Read a cancellation record and let admins retry failed refunds."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self._service = OrderLifecycleService()

    def retrieve(self, request: Request, pk: str | None = None) -> Response:
        """GET /api/v1/cancellations/{pk}/"""
        try:
            record = self._service.get_cancellation_for(pk, actor_from_request(request))
        except OrderLifecycleError as exc:
            return domain_error_response(exc)
        return Response(CancellationRecordSerializer(record).data)

    @action(detail=True, methods=["post"], url_path="retry-refund")
    def retry_refund(self, request: Request, pk: str | None = None) -> Response:
        """POST /api/v1/cancellations/{pk}/retry-refund/"""
        try:
            record = self._service.retry_refund(pk, actor_from_request(request))
        except OrderLifecycleError as exc:
            return domain_error_response(exc)
        return Response(CancellationRecordSerializer(record).data, status=status.HTTP_202_ACCEPTED)


class RefundCallbackView(APIView):
    """POST /api/v1/refunds/callback/

    Webhook for the payment processor.  Authenticated by a shared secret
    header instead of a JWT; duplicate callbacks are acknowledged without
    changing state.
    """

    authentication_classes: list = []
    permission_classes = [AllowAny]

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self._service = OrderLifecycleService()

    def post(self, request: Request) -> Response:
        expected = settings.REFUND_WEBHOOK_SECRET
        provided = request.headers.get(WEBHOOK_SECRET_HEADER, "")
        if not expected or not hmac.compare_digest(provided.encode(), expected.encode()):
            logger.warning("refund.callback_rejected", reason="bad_secret")
            return error_response(
                status.HTTP_403_FORBIDDEN,
                "invalid_webhook_secret",
                "Webhook secret missing or invalid.",
            )

        serializer = RefundCallbackSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        dto = RefundCallbackDTO(**serializer.validated_data)
        try:
            record = self._service.handle_refund_callback(
                dto.cancellation_id,
                success=dto.success,
                gateway_ref=dto.gateway_ref,
                reason=dto.reason,
            )
        except OrderLifecycleError as exc:
            return domain_error_response(exc)

        body: dict[str, Any] = {
            "cancellation_id": str(record.id),
            "cancel_status": record.cancel_status,
            "refund_status": record.refund_status,
        }
        return Response(body)
