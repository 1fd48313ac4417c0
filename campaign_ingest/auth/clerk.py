from __future__ import annotations

import logging
import threading
import time
from typing import Any, Dict, Optional

import httpx
from fastapi import HTTPException, status
from jose import jwt
from jose.exceptions import JWTError

from campaign_ingest.config import settings

logger = logging.getLogger("auth.clerk")

JWKS_TTL_SECONDS = 300


class _SigningKeys:
    """Clerk JWKS indexed by ``kid``, refreshed on expiry or on an unknown kid."""

    def __init__(self, ttl_seconds: int = JWKS_TTL_SECONDS) -> None:
        self.ttl_seconds = ttl_seconds
        self._keys: Dict[str, Dict[str, Any]] = {}
        self._fetched_at = 0.0
        self._lock = threading.Lock()

    def get(self, kid: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            fresh = time.monotonic() - self._fetched_at < self.ttl_seconds
            if fresh and kid in self._keys:
                return self._keys[kid]
            # Expired, or Clerk rotated its keys since the last fetch.
            self._refresh()
            return self._keys.get(kid)

    def clear(self) -> None:
        with self._lock:
            self._keys = {}
            self._fetched_at = 0.0

    def _refresh(self) -> None:
        try:
            resp = httpx.get(settings.CLERK_JWKS_URL, timeout=10)
            resp.raise_for_status()
            payload = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.exception("auth.jwks_fetch_failed", extra={"jwks_url": settings.CLERK_JWKS_URL})
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Unable to fetch signing keys",
            ) from exc
        self._keys = {key["kid"]: key for key in payload.get("keys", []) if key.get("kid")}
        self._fetched_at = time.monotonic()


signing_keys = _SigningKeys()


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def verify_session_token(token: str) -> Dict[str, Any]:
    """Verify a Clerk session JWT and return its claims."""
    try:
        kid = jwt.get_unverified_header(token).get("kid")
    except JWTError as exc:
        raise _unauthorized("Invalid token") from exc
    if not kid:
        raise _unauthorized("Missing kid in token")

    signing_key = signing_keys.get(kid)
    if signing_key is None:
        logger.warning("auth.signing_key_not_found", extra={"kid": kid})
        raise _unauthorized("Signing key not found")

    try:
        # Clerk session tokens usually omit aud; it is checked below only when present.
        claims = jwt.decode(
            token,
            signing_key,
            algorithms=[signing_key.get("alg", "RS256")],
            issuer=settings.CLERK_JWT_ISSUER,
            options={"verify_aud": False},
        )
    except JWTError as exc:
        logger.warning("auth.token_rejected", extra={"kid": kid, "reason": str(exc)})
        raise _unauthorized("Invalid token") from exc

    audience = claims.get("aud")
    if audience is not None:
        token_audiences = {audience} if isinstance(audience, str) else set(audience)
        if not token_audiences & set(settings.CLERK_AUDIENCE):
            logger.warning("auth.audience_mismatch", extra={"kid": kid, "aud": audience})
            raise _unauthorized("Invalid token audience")

    logger.debug("auth.token_verified", extra={"kid": kid, "sub": claims.get("sub")})
    return claims
