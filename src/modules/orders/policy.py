"""Configurable cancellation / refund policy.

The refund-rate table and the owner-response SLA are product decisions,
not a fixed contract, so every threshold is read from Django settings
(which in turn read the environment through ``python-decouple``).
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

from django.conf import settings
from pydantic import BaseModel, ConfigDict, Field


class CancellationPolicy(BaseModel):
    """Immutable snapshot of the policy values used by the pure evaluators."""

    model_config = ConfigDict(frozen=True)

    pending_sla_minutes: int = Field(default=10, gt=0)
    preparing_grace_minutes: int = Field(default=5, ge=0)
    preparing_refund_rate: Decimal = Field(default=Decimal("0.5"), ge=0, le=1)
    restore_loyalty_on_partial: bool = False

    @property
    def pending_sla(self) -> timedelta:
        return timedelta(minutes=self.pending_sla_minutes)

    @property
    def preparing_grace(self) -> timedelta:
        return timedelta(minutes=self.preparing_grace_minutes)

    @classmethod
    def from_settings(cls) -> CancellationPolicy:
        return cls(
            pending_sla_minutes=settings.ORDER_PENDING_SLA_MINUTES,
            preparing_grace_minutes=settings.ORDER_CANCEL_PREPARING_GRACE_MINUTES,
            preparing_refund_rate=Decimal(
                str(settings.ORDER_CANCEL_PREPARING_REFUND_RATE)
            ),
            restore_loyalty_on_partial=settings.ORDER_CANCEL_RESTORE_LOYALTY_ON_PARTIAL,
        )
