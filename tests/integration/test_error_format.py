"""Integration tests for the standardized error body."""

from uuid import uuid4

import pytest
from django.contrib.auth import get_user_model
from rest_framework.test import APIClient

pytestmark = pytest.mark.integration

User = get_user_model()
ORDERS_URL = "/api/v1/orders/"


@pytest.fixture()
def customer_client(customer):
    client = APIClient()
    user = User.objects.create_user(username="customer-errors")
    client.force_authenticate(user=user, token={"role": "customer", "sub": str(customer.actor_id)})
    return client


def _assert_shape(body):
    assert set(body) == {"type", "errors"}
    assert body["errors"]
    for error in body["errors"]:
        assert set(error) == {"code", "detail", "attr"}


class TestErrorFormat:
    def test_unauthenticated(self, api_client):
        response = api_client.get(ORDERS_URL)
        body = response.json()
        _assert_shape(body)
        assert body["type"] == "client_error"
        assert body["errors"][0]["code"] == "not_authenticated"
        assert body["errors"][0]["attr"] is None

    def test_field_validation_lists_every_field(self, customer_client):
        response = customer_client.post(ORDERS_URL, {}, format="json")
        assert response.status_code == 400
        body = response.json()
        _assert_shape(body)
        assert body["type"] == "validation_error"
        attrs = {error["attr"] for error in body["errors"]}
        assert {"restaurant_id", "menu_amount", "total_amount"} <= attrs

    def test_malformed_json(self, customer_client):
        response = customer_client.post(
            ORDERS_URL, data="{not json", content_type="application/json"
        )
        assert response.status_code == 400
        body = response.json()
        _assert_shape(body)
        assert body["type"] == "client_error"
        assert body["errors"][0]["code"] == "parse_error"

    def test_domain_error_carries_its_category(self, customer_client):
        response = customer_client.get(f"{ORDERS_URL}{uuid4()}/")
        assert response.status_code == 404
        body = response.json()
        _assert_shape(body)
        assert body["type"] == "validation"
        assert body["errors"][0]["code"] == "order_not_found"

    def test_unbalanced_breakdown_points_at_the_model(self, customer_client):
        response = customer_client.post(
            ORDERS_URL,
            {
                "restaurant_id": str(uuid4()),
                "menu_amount": "24000",
                "delivery_fee": "2500",
                "total_amount": "99999",
            },
            format="json",
        )
        assert response.status_code == 400
        body = response.json()
        _assert_shape(body)
        assert body["type"] == "validation_error"
        assert body["errors"][0]["code"] == "invalid_order_data"
