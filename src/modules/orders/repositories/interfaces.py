"""Order repository interface.

Declares the versioned persistence operations the lifecycle engine
needs: compare-and-swap status writes, the cancellation record table
and the status history audit trail.

The Service Layer depends exclusively on this contract (DIP).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Optional
from uuid import UUID

if TYPE_CHECKING:
    from django.db.models import QuerySet

    from modules.orders.dtos import ActorContext, PlaceOrderDTO
    from modules.orders.models import CancellationRecord, Order, OrderStatusHistory


class IOrderRepository(ABC):
    """Repository contract for the Order aggregate root.

    The Order aggregate includes OrderStatusHistory and
    CancellationRecord rows.  Mutations must be atomic.
    """

    @abstractmethod
    def create(self, dto: PlaceOrderDTO, now: Optional[datetime] = None) -> Order:
        """Persist a newly placed order at version 1 with its first history row."""

    @abstractmethod
    def get_by_id(self, id: str) -> Optional[Order]:
        """Return the order or ``None`` for unknown or malformed ids."""

    @abstractmethod
    def get_order(self, id: UUID | str) -> Order:
        """Return a fresh snapshot (order + version) or raise ``OrderNotFound``."""

    @abstractmethod
    def write_transition(
        self,
        order: Order,
        new_status: str,
        actor: ActorContext,
        changes: Optional[Dict[str, Any]] = None,
        notes: str = "",
        now: Optional[datetime] = None,
    ) -> Order:
        """Compare-and-swap on ``order.version``.

        Applies ``new_status`` plus ``changes``, stamps the status's phase
        timestamp if still unset, bumps the version by one and appends a
        history row.  Returns the updated snapshot.

        Raises:
            VersionConflict: the stored version no longer matches.
        """

    @abstractmethod
    def add_history(
        self,
        order_id: UUID,
        old_status: Optional[str],
        new_status: str,
        version: int,
        actor: ActorContext,
        notes: str = "",
    ) -> OrderStatusHistory:
        """Record a committed write in the order's audit trail."""

    @abstractmethod
    def insert_cancellation(self, record: CancellationRecord) -> CancellationRecord:
        """Insert a decided cancellation record."""

    @abstractmethod
    def update_cancellation(
        self,
        id: UUID,
        fields: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Update a cancellation record; ``expected`` guards the update (CAS)."""

    @abstractmethod
    def get_cancellation(self, id: UUID | str) -> CancellationRecord:
        """Return a cancellation record or raise ``CancellationNotFound``."""

    @abstractmethod
    def pending_older_than(self, cutoff: datetime) -> List[UUID]:
        """IDs of ``pending`` orders placed at or before ``cutoff``."""

    @abstractmethod
    def refunds_awaiting_dispatch(self, cutoff: datetime) -> List[UUID]:
        """Approved cancellations still ``pending`` refund, recorded at or before ``cutoff``."""

    @abstractmethod
    def list_terminal(self) -> QuerySet:
        """Terminal orders for settlement readers."""
