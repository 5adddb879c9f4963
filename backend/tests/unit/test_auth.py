"""
Unit Tests: JWT Auth
═════════════════════
Tests for:
  • _JWKSCache              fetch, TTL, force-refresh, prime/clear, stats
  • JWTDecoder              valid token, expired, bad audience/issuer, tampered
  • _extract_owner_id       `sub` vs explicit `owner_id` claim, non-UUID subject
  • get_current_owner       owner id handed to route handlers
  • resolve_owner_optional  header or ?access_token=, never raises

All tests use the test RSA key pair from conftest.py.
Zero network calls: JWKS fetch is patched or the cache is primed.
"""

from __future__ import annotations

import time
import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from fileflow.auth.token import (
    JWTDecoder,
    _JWKSCache,
    get_current_owner,
    get_current_user,
    resolve_owner_optional,
)
from tests.conftest import TEST_AUDIENCE, TEST_ISSUER


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _make_request(decoder: JWTDecoder | None = None, request_id: str = "test-req-id"):
    """Build a minimal mock Request object carrying the decoder on app.state."""
    req = MagicMock()
    req.headers = {"X-Request-ID": request_id}
    req.app.state.jwt_decoder = decoder
    return req


def _make_credentials(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


@pytest.fixture
def decoder(test_jwks) -> JWTDecoder:
    """JWTDecoder with its own pre-populated cache, so no HTTP call is made."""
    cache = _JWKSCache()
    cache.prime(TEST_ISSUER, test_jwks)
    return JWTDecoder(issuer=TEST_ISSUER, audience=TEST_AUDIENCE, cache=cache)


# ─────────────────────────────────────────────────────────────────────────────
# _JWKSCache tests
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.auth
class TestJWKSCache:

    async def test_get_signing_key_returns_public_key(self, make_token, test_jwks):
        cache = _JWKSCache()
        with patch.object(cache, "_fetch", new=AsyncMock(return_value=test_jwks)):
            key = await cache.get_signing_key(make_token(), issuer=TEST_ISSUER)
        assert key is not None

    async def test_unknown_kid_triggers_force_refresh(self, make_token, test_jwks):
        """A rotated key is picked up by the second, forced fetch."""
        cache = _JWKSCache()
        fetch = AsyncMock(side_effect=[{"keys": []}, test_jwks])

        with patch.object(cache, "_fetch", new=fetch):
            key = await cache.get_signing_key(make_token(), issuer=TEST_ISSUER)

        assert fetch.await_count == 2
        assert key is not None

    async def test_unknown_kid_after_refresh_raises_401(self, make_token):
        cache = _JWKSCache()
        with patch.object(cache, "_fetch", new=AsyncMock(return_value={"keys": []})):
            with pytest.raises(HTTPException) as exc_info:
                await cache.get_signing_key(make_token(kid="rotated-away"), issuer=TEST_ISSUER)
        assert exc_info.value.status_code == 401

    async def test_malformed_token_raises_401(self):
        with pytest.raises(HTTPException) as exc_info:
            await _JWKSCache().get_signing_key("not.a.jwt")
        assert exc_info.value.status_code == 401

    async def test_fetch_served_from_cache_within_ttl(self, test_jwks):
        cache = _JWKSCache()
        cache.prime(TEST_ISSUER, test_jwks)

        with patch("fileflow.auth.token.httpx.AsyncClient") as client_cls:
            jwks = await cache._fetch(TEST_ISSUER)

        client_cls.assert_not_called()
        assert jwks == test_jwks

    async def test_provider_outage_raises_401(self):
        cache = _JWKSCache()
        http = MagicMock()
        http.get = AsyncMock(side_effect=httpx.ConnectError("unreachable"))
        http.__aenter__ = AsyncMock(return_value=http)
        http.__aexit__ = AsyncMock(return_value=False)

        with patch("fileflow.auth.token.httpx.AsyncClient", return_value=http):
            with pytest.raises(HTTPException) as exc_info:
                await cache._fetch(TEST_ISSUER)

        assert exc_info.value.status_code == 401
        http.get.assert_awaited_once_with(f"{TEST_ISSUER.rstrip('/')}/.well-known/jwks.json")

    def test_cache_stats_returns_diagnostics(self, test_jwks):
        cache = _JWKSCache()
        cache.prime(TEST_ISSUER, test_jwks)

        stats = cache.stats()
        assert stats[TEST_ISSUER]["key_count"] == 1
        assert stats[TEST_ISSUER]["ttl_remaining"] > 0

    def test_clear_empties_cache(self, test_jwks):
        cache = _JWKSCache()
        cache._store[TEST_ISSUER] = (test_jwks, time.monotonic())
        cache.clear()
        assert cache.stats() == {}


# ─────────────────────────────────────────────────────────────────────────────
# JWTDecoder tests
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.auth
class TestJWTDecoder:

    async def test_valid_token_returns_payload(self, decoder, make_token, owner_id):
        payload = await decoder.verify(make_token())

        assert payload.owner_id == owner_id
        assert payload.sub == str(owner_id)
        assert payload.email == "owner@example.com"
        assert payload.iss == TEST_ISSUER

    async def test_explicit_owner_claim_wins_over_sub(self, decoder, make_token):
        owner = uuid.uuid4()
        token = make_token(extra={"sub": "auth0|5f1e2d", "owner_id": str(owner)})

        payload = await decoder.verify(token)
        assert payload.owner_id == owner
        assert payload.sub == "auth0|5f1e2d"

    async def test_non_uuid_subject_raises_401(self, decoder, make_token):
        with pytest.raises(HTTPException) as exc_info:
            await decoder.verify(make_token(extra={"sub": "auth0|5f1e2d"}))
        assert exc_info.value.status_code == 401

    async def test_expired_token_raises_401(self, decoder, expired_token):
        with pytest.raises(HTTPException) as exc_info:
            await decoder.verify(expired_token)
        assert exc_info.value.status_code == 401
        assert "expired" in exc_info.value.detail.lower()

    async def test_wrong_audience_raises_401(self, decoder, make_token):
        with pytest.raises(HTTPException) as exc_info:
            await decoder.verify(make_token(audience="someone-else"))
        assert exc_info.value.status_code == 401

    async def test_wrong_issuer_raises_401(self, decoder, make_token):
        with pytest.raises(HTTPException) as exc_info:
            await decoder.verify(make_token(issuer="https://evil.example.com/"))
        assert exc_info.value.status_code == 401

    async def test_tampered_token_raises_401(self, decoder, make_token):
        header, payload, signature = make_token().split(".")
        tampered = ".".join([header, payload, signature[::-1]])

        with pytest.raises(HTTPException) as exc_info:
            await decoder.verify(tampered)
        assert exc_info.value.status_code == 401


# ─────────────────────────────────────────────────────────────────────────────
# FastAPI dependencies
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
@pytest.mark.auth
class TestDependencies:

    async def test_current_owner_from_bearer(self, decoder, make_token, owner_id):
        user = await get_current_user(_make_request(decoder), _make_credentials(make_token()))
        assert await get_current_owner(user) == owner_id

    async def test_current_user_rejects_expired(self, decoder, expired_token):
        with pytest.raises(HTTPException) as exc_info:
            await get_current_user(_make_request(decoder), _make_credentials(expired_token))
        assert exc_info.value.status_code == 401

    async def test_optional_owner_from_header(self, decoder, make_token, owner_id):
        owner = await resolve_owner_optional(_make_request(decoder), _make_credentials(make_token()))
        assert owner == owner_id

    async def test_optional_owner_from_query_param(self, decoder, make_token, owner_id):
        owner = await resolve_owner_optional(_make_request(decoder), None, access_token=make_token())
        assert owner == owner_id

    async def test_optional_owner_none_without_token(self, decoder):
        assert await resolve_owner_optional(_make_request(decoder), None) is None

    async def test_optional_owner_none_for_invalid_token(self, decoder, expired_token):
        owner = await resolve_owner_optional(_make_request(decoder), _make_credentials(expired_token))
        assert owner is None
