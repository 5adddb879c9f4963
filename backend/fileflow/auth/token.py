"""
JWT Token Verification: OIDC-Compatible
════════════════════════════════════════

Bearer tokens are RS256 JWTs from any OIDC provider (Cognito, Auth0, ...):

  Issuer:   settings.auth_issuer
  JWKS URI: <issuer>/.well-known/jwks.json
  Owner:    UUID in `sub`, or in an explicit `owner_id` claim when the
            provider's `sub` is not a UUID

The public JWKS is fetched once and cached (TTL: 1 hour). On an unknown
kid the cache is force-refreshed once, so key rotation is transparent.

Identity binding fails closed: a missing, expired or unverifiable token is
a 401 and the owner id is never defaulted. The SSE endpoint resolves the
owner without raising (resolve_owner_optional) and lets the streaming
gateway emit its terminal error event instead.
"""

from __future__ import annotations

import logging
import time
from typing import Annotated
from uuid import UUID

import httpx
from fastapi import Depends, HTTPException, Query, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwk, jwt
from pydantic import BaseModel

from fileflow.core.config import settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Verified token payload
# ---------------------------------------------------------------------------

class TokenPayload(BaseModel):
    """Parsed, validated JWT claims: passed to route handlers."""
    sub:      str          # provider user ID
    email:    str
    owner_id: UUID
    exp:      int
    iss:      str


# ---------------------------------------------------------------------------
# JWKS cache
# ---------------------------------------------------------------------------

class _JWKSCache:
    """
    In-memory JWKS cache keyed by issuer.

    All failures to reach the JWKS endpoint surface as 401: the client
    cannot fix a provider outage, but it must not be let in either.
    """

    _TTL: int = 3600   # 1 hour

    def __init__(self) -> None:
        self._store: dict[str, tuple[dict, float]] = {}   # issuer → (jwks, fetched_at)

    async def get_signing_key(self, token: str, issuer: str | None = None) -> object:
        """Resolve the RSA public key for the token's kid (python-jose key object)."""
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            raise HTTPException(
                status.HTTP_401_UNAUTHORIZED,
                detail="Malformed token header",
            ) from exc

        kid    = header.get("kid")
        issuer = issuer or settings.auth_issuer

        for attempt in range(2):
            if attempt == 1:
                self._store.pop(issuer, None)   # force refresh on second attempt

            jwks = await self._fetch(issuer)
            for key_data in jwks.get("keys", []):
                if key_data.get("kid") == kid:
                    return jwk.construct(key_data).public_key()

        raise HTTPException(
            status.HTTP_401_UNAUTHORIZED,
            detail=f"No signing key found for kid={kid!r}.",
        )

    async def _fetch(self, issuer: str) -> dict:
        now    = time.monotonic()
        cached = self._store.get(issuer)
        if cached and (now - cached[1]) < self._TTL:
            return cached[0]

        uri = f"{issuer.rstrip('/')}/.well-known/jwks.json"
        try:
            async with httpx.AsyncClient(timeout=10.0) as http:
                resp = await http.get(uri)
                resp.raise_for_status()
                jwks = resp.json()
        except httpx.HTTPStatusError as exc:
            logger.error("JWKS fetch failed | issuer=%s status=%d", issuer, exc.response.status_code)
            raise HTTPException(
                status.HTTP_401_UNAUTHORIZED,
                detail="Unable to retrieve token signing keys.",
            ) from exc
        except httpx.RequestError as exc:
            logger.error("JWKS fetch network error | issuer=%s error=%s", issuer, exc)
            raise HTTPException(
                status.HTTP_401_UNAUTHORIZED,
                detail="Unable to retrieve token signing keys (network error).",
            ) from exc

        self._store[issuer] = (jwks, now)
        logger.debug("JWKS refreshed | issuer=%s keys=%d", issuer, len(jwks.get("keys", [])))
        return jwks

    def prime(self, issuer: str, jwks: dict) -> None:
        """Install a key set directly (tests, offline deployments)."""
        self._store[issuer] = (jwks, time.monotonic())

    def clear(self) -> None:
        self._store.clear()

    def stats(self) -> dict:
        now = time.monotonic()
        return {
            issuer: {
                "age_seconds": round(now - fetched_at),
                "ttl_remaining": max(0, round(self._TTL - (now - fetched_at))),
                "key_count": len(jwks.get("keys", [])),
            }
            for issuer, (jwks, fetched_at) in self._store.items()
        }


# Module-level singleton: persists across requests
jwks_cache = _JWKSCache()


# ---------------------------------------------------------------------------
# Decoder
# ---------------------------------------------------------------------------

def _extract_owner_id(claims: dict) -> UUID:
    raw = claims.get("owner_id") or claims.get("sub")
    if not raw:
        raise HTTPException(
            status.HTTP_401_UNAUTHORIZED,
            detail="Token is missing the subject claim.",
        )
    try:
        return UUID(str(raw))
    except (ValueError, AttributeError):
        raise HTTPException(
            status.HTTP_401_UNAUTHORIZED,
            detail="Token subject is not a valid owner id.",
        )


class JWTDecoder:
    """
    Instantiate with explicit issuer/audience for test isolation:
        decoder = JWTDecoder(issuer="https://test.auth0.com/", audience="test-api")
    """

    def __init__(
        self,
        issuer:   str | None = None,
        audience: str | None = None,
        cache:    _JWKSCache | None = None,
    ) -> None:
        self._issuer   = issuer   or settings.auth_issuer
        self._audience = audience or settings.auth_audience
        self._cache    = cache    or jwks_cache

    async def verify(self, token: str, request_id: str = "-") -> TokenPayload:
        """
        1. Resolve signing key from the JWKS cache (by kid).
        2. Verify signature, expiry, issuer, audience.
        3. Extract the owner id.
        Raises HTTPException(401) on any failure.
        """
        signing_key = await self._cache.get_signing_key(token, issuer=self._issuer)

        try:
            claims = jwt.decode(
                token,
                signing_key,
                algorithms=["RS256"],
                audience=self._audience,
                issuer=self._issuer,
                options={"verify_exp": True},
            )
        except ExpiredSignatureError:
            logger.info("Expired token | request_id=%s", request_id)
            raise HTTPException(
                status.HTTP_401_UNAUTHORIZED,
                detail="Token has expired. Please re-authenticate.",
                headers={"WWW-Authenticate": "Bearer"},
            )
        except JWTError as exc:
            logger.warning("JWT decode error | request_id=%s error=%s", request_id, exc)
            raise HTTPException(
                status.HTTP_401_UNAUTHORIZED,
                detail=f"Invalid token: {exc}",
                headers={"WWW-Authenticate": "Bearer"},
            )

        return TokenPayload(
            sub=str(claims["sub"]),
            email=claims.get("email", ""),
            owner_id=_extract_owner_id(claims),
            exp=claims["exp"],
            iss=claims["iss"],
        )


default_decoder = JWTDecoder()


async def verify_token(token: str) -> TokenPayload:
    return await default_decoder.verify(token)


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------

bearer_scheme          = HTTPBearer(auto_error=True)
optional_bearer_scheme = HTTPBearer(auto_error=False)


def _decoder(request: Request) -> JWTDecoder:
    return getattr(request.app.state, "jwt_decoder", None) or default_decoder


async def get_current_user(
    request:     Request,
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(bearer_scheme)],
) -> TokenPayload:
    request_id = request.headers.get("X-Request-ID", "-")
    return await _decoder(request).verify(credentials.credentials, request_id)


async def get_current_owner(
    user: Annotated[TokenPayload, Depends(get_current_user)],
) -> UUID:
    return user.owner_id


async def resolve_owner_optional(
    request:      Request,
    credentials:  Annotated[HTTPAuthorizationCredentials | None, Depends(optional_bearer_scheme)],
    access_token: Annotated[str | None, Query(description="Bearer token for EventSource clients")] = None,
) -> UUID | None:
    """
    Never raises: returns None when no verified identity is available.
    EventSource cannot set headers, so `?access_token=` is accepted too.
    """
    token = credentials.credentials if credentials else access_token
    if not token:
        return None
    try:
        user = await _decoder(request).verify(token, request.headers.get("X-Request-ID", "-"))
    except HTTPException as exc:
        logger.info("Stream auth rejected | detail=%s", exc.detail)
        return None
    return user.owner_id
