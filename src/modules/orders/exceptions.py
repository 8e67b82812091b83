"""Order lifecycle exceptions.

Raised by the Service Layer when business rules are violated or the
infrastructure misbehaves.  The API layer (Views) catches these and
translates them into appropriate HTTP responses.

Two families exist so callers can apply different UX:

- ``validation`` errors are pure-function outcomes.  Retrying does not
  change the result.
- ``infrastructure`` errors come from storage, concurrency or the
  payment processor.
"""

from __future__ import annotations

VALIDATION = "validation"
INFRASTRUCTURE = "infrastructure"


class OrderLifecycleError(Exception):
    """Base class for every error raised by the order lifecycle engine."""

    code = "order_error"
    category = VALIDATION


# ---------------------------------------------------------------------------
# Validation class
# ---------------------------------------------------------------------------


class OrderNotFound(OrderLifecycleError):
    """The requested order does not exist."""

    code = "order_not_found"


class InvalidOrderData(OrderLifecycleError):
    """Order placement data is inconsistent (amounts do not reconcile)."""

    code = "invalid_order_data"


class InvalidTransition(OrderLifecycleError):
    """The action is not legal from the current status for the requester."""

    code = "invalid_transition"


class AlreadyTerminal(OrderLifecycleError):
    """The order is already delivered or cancelled."""

    code = "already_terminal"


class NotEligibleForCancellation(OrderLifecycleError):
    """The eligibility evaluator denied the cancellation."""

    code = "not_eligible_for_cancellation"


class InvalidCancellationReason(OrderLifecycleError):
    """The reason category is not available to the requester's role."""

    code = "invalid_cancellation_reason"


class OrderAccessDenied(OrderLifecycleError):
    """The actor is not a party to this order."""

    code = "order_access_denied"


class CancellationNotFound(OrderLifecycleError):
    """The requested cancellation record does not exist."""

    code = "cancellation_not_found"


# ---------------------------------------------------------------------------
# Infrastructure class
# ---------------------------------------------------------------------------


class ConcurrentModification(OrderLifecycleError):
    """The order changed under the request twice in a row."""

    code = "concurrent_modification"
    category = INFRASTRUCTURE


class PersistenceFailure(OrderLifecycleError):
    """The order store is unreachable; nothing was committed."""

    code = "persistence_failure"
    category = INFRASTRUCTURE


class RefundGatewayFailure(OrderLifecycleError):
    """The payment processor rejected or could not process a refund."""

    code = "refund_gateway_failure"
    category = INFRASTRUCTURE


# ---------------------------------------------------------------------------
# Internal signals (never leave the service layer)
# ---------------------------------------------------------------------------


class VersionConflict(Exception):
    """Compare-and-swap on the order version matched no row."""

    def __init__(self, order_id: object, expected_version: int) -> None:
        super().__init__(
            f"Order {order_id} is no longer at version {expected_version}."
        )
        self.order_id = order_id
        self.expected_version = expected_version
