import logging
import time
from typing import Any

import httpx
from jose import JWTError, jwt

from intranet.exceptions import Unauthenticated
from intranet.schemas.auth import Identity

logger = logging.getLogger(__name__)

JWKS_CACHE_TTL = 3600


class JWKSCache:
    """Signing keys per issuer, fetched through OIDC discovery."""

    def __init__(self, ttl: float = JWKS_CACHE_TTL):
        self.ttl = ttl
        self._keys: dict[str, tuple[float, dict[str, Any]]] = {}

    def clear(self) -> None:
        self._keys.clear()

    async def get(self, issuer_url: str) -> dict[str, Any]:
        now = time.monotonic()
        cached = self._keys.get(issuer_url)
        if cached and now - cached[0] < self.ttl:
            return cached[1]

        discovery_url = f"{issuer_url.rstrip('/')}/.well-known/openid-configuration"
        async with httpx.AsyncClient(timeout=10) as client:
            discovery = await client.get(discovery_url)
            discovery.raise_for_status()
            jwks_resp = await client.get(discovery.json()["jwks_uri"])
            jwks_resp.raise_for_status()
            jwks = jwks_resp.json()

        self._keys[issuer_url] = (now, jwks)
        return jwks


jwks_cache = JWKSCache()


async def verify_id_token(id_token: str, issuer_url: str, client_id: str) -> Identity:
    """Validate a federated ID token and return the identity it asserts."""
    try:
        jwks = await jwks_cache.get(issuer_url)
    except (httpx.HTTPError, KeyError) as e:
        logger.error("Failed to fetch OIDC signing keys from %s: %s", issuer_url, e)
        raise Unauthenticated(f"Failed to contact identity provider: {e}") from None

    try:
        claims = jwt.decode(
            id_token,
            jwks,
            algorithms=["RS256", "ES256"],
            audience=client_id,
            issuer=issuer_url,
            options={"verify_exp": True, "verify_at_hash": False},
        )
    except JWTError as e:
        raise Unauthenticated(f"Invalid ID token: {e}") from None

    subject = claims.get("sub")
    if not subject:
        raise Unauthenticated("ID token has no subject")

    return Identity(
        subject_id=subject,
        email=claims.get("email"),
        display_name=claims.get("name"),
        avatar_url=claims.get("picture"),
    )
