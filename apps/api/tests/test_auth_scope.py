from unittest.mock import patch

import pytest
from fastapi import HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials
from jose import jwt

from config import settings
from routers import rate_limit
from routers.auth_scope import AuthContext, ensure_account_scope, get_auth_context, require_admin
from services.session_token import create_session_token, decode_session_token


def test_session_token_round_trip_carries_account():
    token = create_session_token("acct-1", email="owner@example.com")["token"]
    payload = decode_session_token(token)
    assert payload["sub"] == "acct-1"
    assert payload["email"] == "owner@example.com"


def test_session_token_with_wrong_type_is_rejected():
    token = jwt.encode({"sub": "acct-1", "type": "other"}, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    with pytest.raises(ValueError, match="type"):
        decode_session_token(token)


def test_ensure_account_scope():
    owner = AuthContext(account_id="acct-1")
    admin = AuthContext(account_id="ops", is_admin=True)

    assert ensure_account_scope(owner, None) == "acct-1"
    assert ensure_account_scope(owner, "acct-1") == "acct-1"
    assert ensure_account_scope(admin, "acct-1") == "acct-1"
    with pytest.raises(HTTPException) as exc_info:
        ensure_account_scope(owner, "acct-2")
    assert exc_info.value.status_code == 403


@pytest.mark.asyncio
async def test_admin_flag_comes_from_settings():
    token = create_session_token("ops")["token"]
    credentials = HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)

    with patch.object(settings, "BILLING_ADMIN_ACCOUNT_IDS", ["ops"]):
        auth = await get_auth_context(credentials)
    assert auth.is_admin is True
    assert await require_admin(auth) is auth

    with pytest.raises(HTTPException) as exc_info:
        await require_admin(AuthContext(account_id="acct-1"))
    assert exc_info.value.status_code == 403


@pytest.mark.asyncio
async def test_local_quota_fallback_enforces_limit():
    key = "billing:rate:test:127.0.0.1"
    assert await rate_limit._consume_local_quota(key, limit=2, window_seconds=60) is True
    assert await rate_limit._consume_local_quota(key, limit=2, window_seconds=60) is True
    assert await rate_limit._consume_local_quota(key, limit=2, window_seconds=60) is False


def _request(client, forwarded_for=None):
    headers = [(b"x-forwarded-for", forwarded_for.encode())] if forwarded_for else []
    return Request({"type": "http", "method": "POST", "path": "/billing/sync", "headers": headers, "client": client})


def test_rate_limit_identity_ignores_forwarded_header_when_peer_is_known():
    first = rate_limit._client_identifier(_request(("10.0.0.5", 5000), forwarded_for="1.1.1.1"))
    rotated = rate_limit._client_identifier(_request(("10.0.0.5", 5001), forwarded_for="2.2.2.2, 10.0.0.1"))

    assert first == rotated == "10.0.0.5"
    assert rate_limit._client_identifier(_request(None, forwarded_for="3.3.3.3, 10.0.0.1")) == "3.3.3.3"
    assert rate_limit._client_identifier(_request(None)) == "unknown"
