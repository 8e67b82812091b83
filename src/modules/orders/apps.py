from django.apps import AppConfig


class OrdersConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "modules.orders"
    label = "orders"

    def ready(self) -> None:
        from modules.orders.events import (
            CancellationCompleted,
            CouponRestoreRequested,
            OrderCancelled,
            OrderStatusChanged,
            PointsRestoreRequested,
            RefundFailed,
        )
        from modules.orders.handlers import (
            cancellation_completed_handler,
            coupon_restore_handler,
            order_cancelled_handler,
            points_restore_handler,
            refund_failed_handler,
            settlement_handler,
            status_notification_handler,
        )
        from shared.infrastructure.bus import event_bus

        event_bus.subscribe(OrderStatusChanged, status_notification_handler)
        event_bus.subscribe(OrderStatusChanged, settlement_handler)
        event_bus.subscribe(OrderCancelled, order_cancelled_handler)
        event_bus.subscribe(CancellationCompleted, cancellation_completed_handler)
        event_bus.subscribe(RefundFailed, refund_failed_handler)
        event_bus.subscribe(PointsRestoreRequested, points_restore_handler)
        event_bus.subscribe(CouponRestoreRequested, coupon_restore_handler)
