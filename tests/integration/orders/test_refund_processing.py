"""Integration tests for refund dispatch, gateway outcomes and callbacks."""

import pytest
from celery.exceptions import Retry

from modules.core.models import OutboxEvent
from modules.orders.constants import CancelReasonCategory, CancelStatus, RefundStatus
from modules.orders.dtos import CancellationRequestDTO
from modules.orders.exceptions import InvalidTransition, OrderAccessDenied
from modules.orders.gateways import (
    OUTCOME_ACCEPTED,
    OUTCOME_FAILED,
    RefundGatewayError,
    RefundOutcome,
)
from modules.orders.models import CancellationRecord
from modules.orders.tasks import process_refund

pytestmark = pytest.mark.integration

CHANGE_MIND = CancellationRequestDTO(reason_category=CancelReasonCategory.CUSTOMER_CHANGE_MIND)


@pytest.fixture()
def cancel(service, place_order, customer, django_capture_on_commit_callbacks):
    """Cancel a fresh pending order; post-commit callbacks run when ``dispatch``."""

    def _cancel(dispatch=True):
        order = place_order()
        with django_capture_on_commit_callbacks(execute=dispatch):
            result = service.request_cancellation(order.id, customer, CHANGE_MIND)
        return CancellationRecord.objects.get(pk=result.cancellation_id)

    return _cancel


def _events(record, event_type):
    return OutboxEvent.objects.filter(
        aggregate_id=str(record.order_id), event_type=event_type
    )


class TestDispatch:
    def test_successful_refund_completes_the_cancellation(self, cancel, refund_gateway):
        record = cancel()

        assert record.refund_status == RefundStatus.COMPLETED
        assert record.cancel_status == CancelStatus.COMPLETED
        assert record.refund_attempts == 1
        assert record.gateway_ref == "rf-1"
        assert _events(record, "CancellationCompleted").count() == 1

    def test_gateway_receives_payment_amount_and_record_key(self, cancel, refund_gateway):
        record = cancel()
        [call] = refund_gateway.calls
        assert call["payment_id"] == record.order.payment_id
        assert call["amount"] == record.refund_amount
        assert call["idempotency_key"] == str(record.id)

    def test_accepted_refund_waits_for_callback(self, cancel, refund_gateway, service):
        refund_gateway.queue(RefundOutcome(OUTCOME_ACCEPTED, gateway_ref="rf-async"))
        record = cancel()
        assert record.refund_status == RefundStatus.PROCESSING
        assert record.gateway_ref == "rf-async"

        updated = service.handle_refund_callback(record.id, success=True)
        assert updated.refund_status == RefundStatus.COMPLETED
        assert updated.cancel_status == CancelStatus.COMPLETED
        assert updated.gateway_ref == "rf-async"

    def test_declined_refund_fails_for_manual_follow_up(self, cancel, refund_gateway):
        refund_gateway.queue(RefundOutcome(OUTCOME_FAILED, reason="Card account closed"))
        record = cancel()

        assert record.refund_status == RefundStatus.FAILED
        assert record.cancel_status == CancelStatus.APPROVED
        assert record.failure_reason == "Card account closed"
        assert _events(record, "RefundFailed").count() == 1
        record.order.refresh_from_db()
        assert record.order.status == "cancelled"

    def test_final_transport_error_marks_failed(self, cancel, refund_gateway):
        refund_gateway.queue(RefundGatewayError("No payment id", retryable=False))
        record = cancel()
        assert record.refund_status == RefundStatus.FAILED
        assert record.failure_reason == "No payment id"

    def test_retryable_error_without_retries_left_marks_failed(
        self, cancel, refund_gateway, settings
    ):
        settings.REFUND_GATEWAY_MAX_RETRIES = 0
        refund_gateway.queue(RefundGatewayError("HTTP 503"))
        record = cancel()
        assert record.refund_status == RefundStatus.FAILED


class TestTaskRetry:
    def test_retryable_error_schedules_claimed_retry(
        self, cancel, refund_gateway, monkeypatch, settings
    ):
        settings.REFUND_GATEWAY_RETRY_BACKOFF_SECONDS = 5
        record = cancel(dispatch=False)
        refund_gateway.queue(RefundGatewayError("Refund gateway timed out"))
        scheduled = {}

        def fake_retry(**kwargs):
            scheduled.update(kwargs)
            return Retry("retry scheduled")

        monkeypatch.setattr(process_refund, "retry", fake_retry)
        with pytest.raises(Retry):
            process_refund.run(str(record.id))

        assert scheduled["countdown"] == 5
        assert scheduled["args"] == [str(record.id)]
        assert scheduled["kwargs"] == {"claimed": True}
        record.refresh_from_db()
        assert record.refund_status == RefundStatus.PROCESSING

    def test_claimed_retry_reuses_idempotency_key(self, cancel, refund_gateway, monkeypatch):
        record = cancel(dispatch=False)
        refund_gateway.queue(RefundGatewayError("HTTP 502"))
        monkeypatch.setattr(process_refund, "retry", lambda **kwargs: Retry("again"))
        with pytest.raises(Retry):
            process_refund.run(str(record.id))

        status = process_refund.run(str(record.id), claimed=True)

        assert status == RefundStatus.COMPLETED
        keys = {call["idempotency_key"] for call in refund_gateway.calls}
        assert keys == {str(record.id)}
        record.refresh_from_db()
        assert record.refund_attempts == 2

    def test_second_unclaimed_submission_is_skipped(self, cancel, refund_gateway):
        record = cancel()
        assert process_refund.run(str(record.id)) == RefundStatus.COMPLETED
        assert len(refund_gateway.calls) == 1


class TestCallbacks:
    def test_duplicate_callback_is_a_no_op(self, cancel, refund_gateway, service):
        refund_gateway.queue(RefundOutcome(OUTCOME_ACCEPTED, gateway_ref="rf-9"))
        record = cancel()
        service.handle_refund_callback(record.id, success=True)
        again = service.handle_refund_callback(record.id, success=False, reason="late")

        assert again.refund_status == RefundStatus.COMPLETED
        assert _events(record, "CancellationCompleted").count() == 1
        assert not _events(record, "RefundFailed").exists()

    def test_callback_before_dispatch_is_ignored(self, cancel, service):
        record = cancel(dispatch=False)
        result = service.handle_refund_callback(record.id, success=True)
        assert result.refund_status == RefundStatus.PENDING


class TestAdminRetry:
    def _failed(self, cancel, refund_gateway):
        refund_gateway.queue(RefundOutcome(OUTCOME_FAILED, reason="Processor down"))
        return cancel()

    def test_retry_moves_failed_to_completed(
        self, cancel, refund_gateway, service, admin, django_capture_on_commit_callbacks
    ):
        record = self._failed(cancel, refund_gateway)
        with django_capture_on_commit_callbacks(execute=True):
            retried = service.retry_refund(record.id, admin)
        assert retried.refund_status == RefundStatus.PROCESSING

        record.refresh_from_db()
        assert record.refund_status == RefundStatus.COMPLETED
        assert record.cancel_status == CancelStatus.COMPLETED
        assert [call["idempotency_key"] for call in refund_gateway.calls] == [str(record.id)] * 2

    def test_only_failed_refunds_can_be_retried(self, cancel, service, admin):
        record = cancel()
        with pytest.raises(InvalidTransition):
            service.retry_refund(record.id, admin)

    def test_only_admins_retry(self, cancel, refund_gateway, service, customer):
        record = self._failed(cancel, refund_gateway)
        with pytest.raises(OrderAccessDenied):
            service.retry_refund(record.id, customer)
