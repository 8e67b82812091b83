import django_filters
from django.db.models import Q

from modules.orders.constants import TERMINAL_STATES
from modules.orders.models import Order


class SettlementOrderFilter(django_filters.FilterSet):
    """Filters for the settlement listing of terminal orders."""

    status = django_filters.ChoiceFilter(
        field_name="status",
        choices=[(status, status) for status in sorted(TERMINAL_STATES)],
    )
    restaurant = django_filters.UUIDFilter(field_name="restaurant_id")
    rider = django_filters.UUIDFilter(field_name="rider_id")
    completed_after = django_filters.DateFilter(method="filter_completed_after")
    completed_before = django_filters.DateFilter(method="filter_completed_before")
    min_total = django_filters.NumberFilter(field_name="total_amount", lookup_expr="gte")
    max_total = django_filters.NumberFilter(field_name="total_amount", lookup_expr="lte")

    class Meta:
        model = Order
        fields = [
            "status",
            "restaurant",
            "rider",
            "completed_after",
            "completed_before",
            "min_total",
            "max_total",
        ]

    # An order completes either by delivery or by cancellation.
    def filter_completed_after(self, queryset, name, value):
        return queryset.filter(
            Q(delivered_at__date__gte=value)
            | Q(cancelled_at__date__gte=value)
        )

    def filter_completed_before(self, queryset, name, value):
        return queryset.filter(
            Q(delivered_at__date__lte=value)
            | Q(cancelled_at__date__lte=value)
        )
