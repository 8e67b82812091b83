"""Unit tests for the Auth0 bearer token backend."""

import jwt as pyjwt
import pytest
from rest_framework.exceptions import AuthenticationFailed
from rest_framework.test import APIRequestFactory

from modules.core import authentication
from modules.core.authentication import (
    Auth0JSONWebTokenAuthentication,
    Auth0Settings,
    Auth0User,
    flatten_actor_claims,
)

pytestmark = pytest.mark.unit

NS = "https://delivery/"
TENANT = Auth0Settings(
    domain="tenant.example.com",
    audience="orders-api",
    algorithm="RS256",
    claims_namespace=NS,
)


def _request(header=None):
    factory = APIRequestFactory()
    extra = {"HTTP_AUTHORIZATION": header} if header else {}
    return factory.get("/api/v1/me", **extra)


def _token(**claims):
    return pyjwt.encode(claims, "unit-test-signing-key-0123456789abcdef", algorithm="HS256")


class TestClaims:
    def test_namespaced_claims_are_flattened(self):
        claims = flatten_actor_claims(
            {"sub": "auth0|1", f"{NS}role": "owner", f"{NS}restaurant_id": "r-1"}, NS
        )
        assert claims["role"] == "owner"
        assert claims["restaurant_id"] == "r-1"
        assert claims["sub"] == "auth0|1"

    def test_missing_claims_stay_missing(self):
        assert "restaurant_id" not in flatten_actor_claims({f"{NS}role": "rider"}, NS)

    def test_user_exposes_role_and_sub(self):
        user = Auth0User({"sub": "auth0|9", f"{NS}role": "admin"}, namespace=NS)
        assert user.role == "admin"
        assert str(user) == "auth0|9"
        assert user.is_authenticated


class TestSettings:
    def test_issuer_and_enabled(self):
        assert TENANT.issuer == "https://tenant.example.com/"
        assert TENANT.enabled

    def test_disabled_without_domain(self):
        disabled = Auth0Settings(domain="", audience="x", algorithm="RS256", claims_namespace=NS)
        assert disabled.issuer == ""
        assert not disabled.enabled


class TestAuthenticate:
    def test_no_header_defers(self):
        assert Auth0JSONWebTokenAuthentication().authenticate(_request()) is None

    def test_malformed_header_is_rejected(self):
        with pytest.raises(AuthenticationFailed):
            Auth0JSONWebTokenAuthentication().authenticate(_request("Token abc def"))

    def test_disabled_tenant_defers(self, monkeypatch):
        monkeypatch.setattr(
            authentication,
            "AUTH0",
            Auth0Settings(domain="", audience="", algorithm="RS256", claims_namespace=NS),
        )
        request = _request(f"Bearer {_token(iss=TENANT.issuer)}")
        assert Auth0JSONWebTokenAuthentication().authenticate(request) is None

    def test_foreign_issuer_defers(self, monkeypatch):
        monkeypatch.setattr(authentication, "AUTH0", TENANT)
        request = _request(f"Bearer {_token(iss='https://someone-else/')}")
        assert Auth0JSONWebTokenAuthentication().authenticate(request) is None

    def test_tenant_token_is_verified(self, monkeypatch):
        monkeypatch.setattr(authentication, "AUTH0", TENANT)
        verified = {"sub": "auth0|7", f"{NS}role": "customer"}
        monkeypatch.setattr(
            Auth0JSONWebTokenAuthentication, "verify", staticmethod(lambda token: verified)
        )
        token = _token(iss=TENANT.issuer)

        user, raw = Auth0JSONWebTokenAuthentication().authenticate(_request(f"Bearer {token}"))

        assert raw == token
        assert user.payload["role"] == "customer"

    def test_bad_signature_is_rejected(self, monkeypatch):
        class Key:
            key = "another-signing-key-0123456789abcdef"

        class Client:
            def get_signing_key_from_jwt(self, token):
                return Key()

        monkeypatch.setattr(authentication, "jwks_client", lambda: Client())
        monkeypatch.setattr(
            authentication,
            "AUTH0",
            Auth0Settings(
                domain=TENANT.domain,
                audience=TENANT.audience,
                algorithm="HS256",
                claims_namespace=NS,
            ),
        )
        token = _token(iss=TENANT.issuer, aud=TENANT.audience)
        with pytest.raises(AuthenticationFailed):
            Auth0JSONWebTokenAuthentication.verify(token)

    def test_unconfigured_tenant_cannot_verify(self, monkeypatch):
        monkeypatch.setattr(authentication, "jwks_client", lambda: None)
        with pytest.raises(AuthenticationFailed):
            Auth0JSONWebTokenAuthentication.verify(_token(iss="x"))
