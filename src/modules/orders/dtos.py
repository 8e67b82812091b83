"""Order lifecycle DTOs for the Service Layer.

Framework-agnostic data transfer objects using Pydantic v2.
These are the contracts between the API layer (DRF Serializers)
and the Service layer.  DTOs are immutable (``frozen=True``).

- ``ActorContext``: the authenticated actor passed into every handler.
- ``PlaceOrderDTO``: input for order placement (monetary breakdown).
- ``CancellationRequestDTO`` / ``CancellationResultDTO``: cancel path.
- ``CancelabilityDTO``: read-only eligibility preview.
- ``AdvanceStatusDTO`` / ``AdvanceStatusResultDTO``: non-cancel actions.
- ``RefundCallbackDTO``: payment processor callback.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Mapping, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from modules.orders.constants import ActorRole, CancelReasonCategory, OrderAction

# ---------------------------------------------------------------------------
# Actor
# ---------------------------------------------------------------------------


class ActorContext(BaseModel):
    """Who is acting.  Built explicitly per request, never read from globals."""

    model_config = ConfigDict(frozen=True)

    role: ActorRole
    actor_id: Optional[UUID] = None
    restaurant_id: Optional[UUID] = None

    @model_validator(mode="after")
    def identity_required_for_parties(self) -> ActorContext:
        if self.role != ActorRole.SYSTEM and self.actor_id is None:
            raise ValueError(f"An actor id is required for role '{self.role}'.")
        if self.role == ActorRole.OWNER and self.restaurant_id is None:
            raise ValueError("Owners must act on behalf of a restaurant.")
        return self

    @classmethod
    def system(cls) -> ActorContext:
        return cls(role=ActorRole.SYSTEM)

    @classmethod
    def from_claims(cls, claims: Mapping[str, Any]) -> ActorContext:
        """Build the context from authenticated JWT claims.

        A token without a ``role`` claim is rejected; it never defaults
        to a customer.
        """
        return cls(
            role=claims.get("role"),
            actor_id=claims.get("sub") or claims.get("user_id"),
            restaurant_id=claims.get("restaurant_id"),
        )


# ---------------------------------------------------------------------------
# Input DTOs
# ---------------------------------------------------------------------------


class PlaceOrderDTO(BaseModel):
    """Immutable DTO for order placement.

    Validates that the breakdown reconciles:
    ``total = menu - discount - points + delivery_fee + platform_fee``.
    """

    model_config = ConfigDict(frozen=True)

    customer_id: UUID
    restaurant_id: UUID
    payment_id: str = ""
    menu_amount: Decimal = Field(ge=0)
    discount_amount: Decimal = Field(default=Decimal("0"), ge=0)
    points_used: Decimal = Field(default=Decimal("0"), ge=0)
    delivery_fee: Decimal = Field(default=Decimal("0"), ge=0)
    platform_fee: Decimal = Field(default=Decimal("0"), ge=0)
    total_amount: Decimal = Field(gt=0)
    coupon_id: Optional[str] = None

    @model_validator(mode="after")
    def amounts_reconcile(self) -> PlaceOrderDTO:
        expected = (
            self.menu_amount
            - self.discount_amount
            - self.points_used
            + self.delivery_fee
            + self.platform_fee
        )
        if expected != self.total_amount:
            raise ValueError(
                f"total_amount {self.total_amount} does not match the breakdown "
                f"({expected})."
            )
        return self


class CancellationRequestDTO(BaseModel):
    """Immutable DTO for a cancellation request."""

    model_config = ConfigDict(frozen=True)

    reason_category: CancelReasonCategory
    reason_detail: str = ""
    refund_rate: Optional[Decimal] = Field(default=None, ge=0, le=1)
    fees_refundable: bool = False

    @field_validator("reason_detail")
    @classmethod
    def strip_detail(cls, v: str) -> str:
        return v.strip()


class AdvanceStatusDTO(BaseModel):
    """Immutable DTO for a non-cancellation action on an order."""

    model_config = ConfigDict(frozen=True)

    action: OrderAction
    estimated_prep_minutes: Optional[int] = Field(default=None, gt=0, le=240)
    start_preparing: bool = True
    delivery_proof: str = ""
    reason: str = ""


class RefundCallbackDTO(BaseModel):
    """Immutable DTO for the payment processor's refund callback."""

    model_config = ConfigDict(frozen=True)

    cancellation_id: UUID
    success: bool
    gateway_ref: str = ""
    reason: str = ""


# ---------------------------------------------------------------------------
# Output DTOs
# ---------------------------------------------------------------------------


class CancelabilityDTO(BaseModel):
    model_config = ConfigDict(frozen=True)

    can_cancel: bool
    refund_rate: Decimal
    refund_amount: Decimal
    message: str


class CancellationResultDTO(BaseModel):
    model_config = ConfigDict(frozen=True)

    cancellation_id: UUID
    cancel_status: str
    refund_status: str
    refund_amount: Decimal
    refund_rate: Decimal


class AdvanceStatusResultDTO(BaseModel):
    model_config = ConfigDict(frozen=True)

    order_id: UUID
    new_status: str
    version: int
    updated_at: Optional[datetime] = None
