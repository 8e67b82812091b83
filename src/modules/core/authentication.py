"""Auth0 bearer tokens for the order lifecycle API.

Customers, restaurant owners, riders and admins sign in through the
Auth0 tenant.  Their tokens carry the actor claims the order views need
(``role`` and, for owners, ``restaurant_id``) under a namespace, e.g.
``https://delivery/role``.  This backend verifies the token (RS256 via
the tenant's JWKS) and flattens those claims onto ``Auth0User.payload``
so views read actor claims the same way for Auth0 and SimpleJWT.

Tokens from another issuer are left to the next backend.  Any token
that claims to be ours but fails verification is a 401.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

import jwt as pyjwt
import structlog
from decouple import config
from jwt import PyJWKClient
from jwt.exceptions import PyJWTError
from rest_framework.authentication import BaseAuthentication
from rest_framework.exceptions import AuthenticationFailed

logger = structlog.get_logger(__name__)

ACTOR_CLAIMS = ("role", "restaurant_id")
JWKS_CACHE_SECONDS = 300


@dataclass(frozen=True)
class Auth0Settings:
    domain: str
    audience: str
    algorithm: str
    claims_namespace: str

    @classmethod
    def from_env(cls) -> Auth0Settings:
        return cls(
            domain=config("AUTH0_DOMAIN", default=""),
            audience=config("AUTH0_AUDIENCE", default=""),
            algorithm=config("AUTH0_ALGORITHM", default="RS256"),
            claims_namespace=config("AUTH0_CLAIMS_NAMESPACE", default="https://delivery/"),
        )

    @property
    def issuer(self) -> str:
        return f"https://{self.domain}/" if self.domain else ""

    @property
    def enabled(self) -> bool:
        return bool(self.domain and self.audience)


AUTH0 = Auth0Settings.from_env()


@lru_cache(maxsize=1)
def jwks_client() -> Optional[PyJWKClient]:
    """Tenant key set, fetched once and cached by PyJWT."""
    if not AUTH0.domain:
        return None
    return PyJWKClient(
        f"{AUTH0.issuer}.well-known/jwks.json",
        cache_jwk_set=True,
        lifespan=JWKS_CACHE_SECONDS,
    )


def flatten_actor_claims(payload: dict, namespace: str) -> dict:
    """Copy namespaced actor claims to their bare names."""
    claims = dict(payload)
    for name in ACTOR_CLAIMS:
        value = payload.get(f"{namespace}{name}")
        if value is not None:
            claims[name] = value
    return claims


class Auth0User:
    """Request user for an Auth0 token; no local ``User`` row exists."""

    is_authenticated = True
    is_active = True

    def __init__(self, payload: dict, namespace: str = "") -> None:
        self.payload = flatten_actor_claims(payload, namespace or AUTH0.claims_namespace)
        self.sub: str = payload.get("sub", "")
        self.role: str = self.payload.get("role", "")

    def __str__(self) -> str:
        return self.sub


class Auth0JSONWebTokenAuthentication(BaseAuthentication):
    keyword = "Bearer"

    def authenticate(self, request):
        header = request.META.get("HTTP_AUTHORIZATION", "")
        if not header:
            return None

        token = self.extract_token(header)
        if not AUTH0.enabled or not self.issued_by_tenant(token):
            return None

        user = Auth0User(self.verify(token))
        logger.info("auth.token_verified", sub=user.sub, role=user.role)
        return (user, token)

    def authenticate_header(self, request):
        return f'{self.keyword} realm="api"'

    @staticmethod
    def extract_token(header: str) -> str:
        parts = header.split()
        if len(parts) != 2 or parts[0].lower() != "bearer":
            raise AuthenticationFailed("Invalid Authorization header format.")
        return parts[1]

    @staticmethod
    def issued_by_tenant(token: str) -> bool:
        """Unverified peek at ``iss``; verification happens in ``verify``."""
        try:
            unverified = pyjwt.decode(token, options={"verify_signature": False})
        except PyJWTError:
            return False
        return unverified.get("iss") == AUTH0.issuer

    @staticmethod
    def verify(token: str) -> dict:
        client = jwks_client()
        if client is None:
            raise AuthenticationFailed("Auth0 is not configured (AUTH0_DOMAIN missing).")
        try:
            signing_key = client.get_signing_key_from_jwt(token)
            # Algorithms come from configuration, never from the token header.
            return pyjwt.decode(
                token,
                signing_key.key,
                algorithms=[AUTH0.algorithm],
                audience=AUTH0.audience,
                issuer=AUTH0.issuer,
            )
        except PyJWTError as exc:
            logger.warning("auth.token_rejected", error=str(exc))
            raise AuthenticationFailed(f"Token validation failed: {exc}") from exc
