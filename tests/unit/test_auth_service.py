import time

import httpx
import pytest

from brickai.core.exceptions import (
    InvalidGrantError,
    InvalidTokenError,
    ProviderUnreachableError,
    UnauthorizedError,
)
from brickai.engines.auth.session_tokens import SessionTokenService
from brickai.modules.users.models import User
from tests.conftest import SESSION_SECRET, count_rows


def expired_session_token(settings, subject: str) -> str:
    issued_long_ago = SessionTokenService(
        secret=SESSION_SECRET,
        issuer=settings.SESSION_ISSUER,
        ttl_seconds=settings.SESSION_TTL_SECONDS,
        clock=lambda: time.time() - 2 * settings.SESSION_TTL_SECONDS
    )
    return issued_long_ago.issue(subject)


# =============================================================================
# Exchange (first login)
# =============================================================================

async def test_exchange_creates_user_and_issues_session(container, upstream, make_identity_token):
    upstream.respond_with_tokens(make_identity_token("apple-sub-1", email="a@example.com"), refresh_token="r1")

    result = await container.auth_service.exchange("code-1")

    assert result.subject == "apple-sub-1"
    assert result.email == "a@example.com"
    assert container.session_tokens.verify(result.session_token) == "apple-sub-1"

    user = await container.users.get_by_subject("apple-sub-1")
    assert user.apple_refresh_token == "r1"
    assert user.email == "a@example.com"
    assert user.usage_credits == 0


async def test_exchange_updates_existing_user_and_keeps_credits(container, upstream, make_identity_token):
    await container.users.upsert_identity("apple-sub-1", refresh_token="old", email="old@example.com")
    await container.users.modify_credits("apple-sub-1", 5)
    upstream.respond_with_tokens(make_identity_token("apple-sub-1"), refresh_token="new")

    await container.auth_service.exchange("code-2")

    user = await container.users.get_by_subject("apple-sub-1")
    assert user.apple_refresh_token == "new"
    assert user.email == "old@example.com"
    assert user.usage_credits == 5
    assert await count_rows(container, User) == 1


async def test_exchange_with_consumed_code_writes_nothing(container, upstream):
    upstream.token_handler = lambda form: httpx.Response(400, json={"error": "invalid_grant"})

    with pytest.raises(InvalidGrantError):
        await container.auth_service.exchange("already-used")

    assert await count_rows(container, User) == 0


# =============================================================================
# Refresh
# =============================================================================

async def test_refresh_with_invalid_grant_clears_stored_token(container, settings, upstream):
    await container.users.upsert_identity("apple-sub-1", refresh_token="revoked")
    upstream.token_handler = lambda form: httpx.Response(400, json={"error": "invalid_grant"})

    with pytest.raises(UnauthorizedError):
        await container.auth_service.refresh(expired_session_token(settings, "apple-sub-1"))

    user = await container.users.get_by_subject("apple-sub-1")
    assert user.apple_refresh_token is None


async def test_refresh_persists_rotated_token(container, settings, upstream, make_identity_token):
    await container.users.upsert_identity("apple-sub-1", refresh_token="r1")
    upstream.respond_with_tokens(make_identity_token("apple-sub-1"), refresh_token="r2")

    result = await container.auth_service.refresh(expired_session_token(settings, "apple-sub-1"))

    assert container.session_tokens.verify(result.session_token) == "apple-sub-1"
    user = await container.users.get_by_subject("apple-sub-1")
    assert user.apple_refresh_token == "r2"


async def test_refresh_without_rotation_keeps_stored_token(container, settings, upstream, make_identity_token):
    await container.users.upsert_identity("apple-sub-1", refresh_token="r1")
    upstream.respond_with_tokens(make_identity_token("apple-sub-1"))

    await container.auth_service.refresh(expired_session_token(settings, "apple-sub-1"))

    user = await container.users.get_by_subject("apple-sub-1")
    assert user.apple_refresh_token == "r1"


async def test_refresh_accepts_unexpired_session(container, upstream, make_identity_token):
    await container.users.upsert_identity("apple-sub-1", refresh_token="r1")
    upstream.respond_with_tokens(make_identity_token("apple-sub-1"))

    result = await container.auth_service.refresh(container.session_tokens.issue("apple-sub-1"))

    assert result.session_token


async def test_refresh_for_unknown_subject_is_unauthorized(container, settings, upstream):
    with pytest.raises(UnauthorizedError):
        await container.auth_service.refresh(expired_session_token(settings, "nobody"))

    assert upstream.token_requests == []


async def test_refresh_after_revocation_does_not_call_provider(container, settings, upstream):
    await container.users.upsert_identity("apple-sub-1", refresh_token=None)

    with pytest.raises(UnauthorizedError):
        await container.auth_service.refresh(expired_session_token(settings, "apple-sub-1"))

    assert upstream.token_requests == []


async def test_refresh_with_forged_token_is_invalid(container):
    forged = SessionTokenService("wrong-secret-0123456789abcdef0123", "BrickAIBackend", 60).issue("apple-sub-1")

    with pytest.raises(InvalidTokenError):
        await container.auth_service.refresh(forged)


async def test_refresh_during_provider_outage_keeps_token(container, settings, upstream):
    await container.users.upsert_identity("apple-sub-1", refresh_token="r1")
    upstream.token_handler = lambda form: httpx.Response(502, text="Bad Gateway")

    with pytest.raises(ProviderUnreachableError):
        await container.auth_service.refresh(expired_session_token(settings, "apple-sub-1"))

    user = await container.users.get_by_subject("apple-sub-1")
    assert user.apple_refresh_token == "r1"


async def test_refresh_survives_failed_rotation_write(container, settings, upstream, make_identity_token, monkeypatch):
    await container.users.upsert_identity("apple-sub-1", refresh_token="r1")
    upstream.respond_with_tokens(make_identity_token("apple-sub-1"), refresh_token="r2")

    async def broken_write(subject, token):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(container.users, "set_refresh_token", broken_write)

    result = await container.auth_service.refresh(expired_session_token(settings, "apple-sub-1"))

    assert result.session_token
