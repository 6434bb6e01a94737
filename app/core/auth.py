"""
Bearer JWT validation OR dev-mode bypass. Controlled by FF_USE_AUTH flag.

Identity itself is owned by the surrounding platform; this module only turns
a token into a user id and an admin bit.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Optional

import httpx
from jose import jwt, JWTError

from .config import get_settings
from .flags import get_flags

logger = logging.getLogger(__name__)

USER_ID_CLAIM = "https://policybot/user_id"
ROLES_CLAIM = "https://policybot/roles"


@dataclass
class AuthenticatedUser:
    user_id: int
    email: str = ""
    name: str = ""
    roles: list[str] = field(default_factory=list)

    @property
    def is_admin(self) -> bool:
        return get_settings().auth_admin_role in self.roles


# Dev-mode user, returned when FF_USE_AUTH=false
DEV_USER = AuthenticatedUser(
    user_id=1,
    email="dev@local",
    name="Dev User",
    roles=["admin"],
)


class JWKSClient:
    """Validates RS256 tokens against the provider's JWKS. Caches keys."""

    def __init__(self, ttl: int = 600):
        self._jwks: Optional[dict] = None
        self._fetched_at: float = 0
        self._ttl = ttl

    async def _get_jwks(self, domain: str) -> dict:
        now = time.time()
        if self._jwks and (now - self._fetched_at) < self._ttl:
            return self._jwks

        async with httpx.AsyncClient() as client:
            resp = await client.get(f"https://{domain}/.well-known/jwks.json", timeout=10)
            resp.raise_for_status()
            self._jwks = resp.json()
            self._fetched_at = now
            return self._jwks

    async def verify_token(self, token: str) -> AuthenticatedUser:
        settings = get_settings()
        jwks = await self._get_jwks(settings.auth_domain)
        kid = jwt.get_unverified_header(token).get("kid")

        key = next((k for k in jwks.get("keys", []) if k.get("kid") == kid), None)
        if key is None:
            raise JWTError("Unable to find matching key in JWKS")

        payload = jwt.decode(
            token,
            key,
            algorithms=[settings.auth_algorithm],
            audience=settings.auth_audience,
            issuer=f"https://{settings.auth_domain}/",
        )

        raw_id = payload.get(USER_ID_CLAIM)
        try:
            user_id = int(raw_id)
        except (TypeError, ValueError):
            raise JWTError(f"Token has no usable {USER_ID_CLAIM} claim")

        return AuthenticatedUser(
            user_id=user_id,
            email=payload.get("email", ""),
            name=payload.get("name", ""),
            roles=list(payload.get(ROLES_CLAIM, [])),
        )


# Singleton
_jwks_client = JWKSClient()


async def get_current_user(authorization: str = "") -> AuthenticatedUser:
    """
    Resolve the current user from the Authorization header.
    If FF_USE_AUTH is false, returns the dev user.
    """
    if not get_flags().use_auth:
        return DEV_USER

    if not authorization:
        raise PermissionError("Missing Authorization header")

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise PermissionError("Invalid Authorization header. Use: Bearer <token>")

    try:
        return await _jwks_client.verify_token(token)
    except JWTError as e:
        logger.info("Rejected token: %s", e)
        raise PermissionError(f"Invalid token: {e}")
