import asyncio

import pytest

from conftest import TWITTER_TOKEN_URL
from services.connectors.types import SocialTokens, utc_from_timestamp


async def _store_account(services, clock, expires_in, refresh_token="refresh-1", platform="twitter"):
    return await services.credentials.upsert(
        "u1",
        platform,
        SocialTokens(
            access_token="old-access",
            refresh_token=refresh_token,
            expires_at=utc_from_timestamp(clock() + expires_in),
        ),
        platform_user_id="42",
        platform_username="creator",
    )


@pytest.mark.asyncio
async def test_valid_token_is_returned_without_refresh(services, upstream, clock):
    await _store_account(services, clock, expires_in=3600)

    tokens = await services.lifecycle.ensure_valid_tokens("u1", "twitter")

    assert tokens.access_token == "old-access"
    assert upstream.calls == []


@pytest.mark.asyncio
async def test_missing_account_returns_none(services):
    assert await services.lifecycle.ensure_valid_tokens("nobody", "twitter") is None


@pytest.mark.asyncio
async def test_expiring_token_is_refreshed_and_persisted_once(services, upstream, clock, monkeypatch):
    account = await _store_account(services, clock, expires_in=240)
    upstream.add(
        "POST",
        TWITTER_TOKEN_URL,
        json={"access_token": "new-access", "refresh_token": "refresh-2", "expires_in": 7200},
    )
    upserts = []
    original_upsert = services.credentials.upsert

    async def spy_upsert(*args, **kwargs):
        upserts.append(args)
        return await original_upsert(*args, **kwargs)

    monkeypatch.setattr(services.credentials, "upsert", spy_upsert)

    tokens = await services.lifecycle.ensure_valid_tokens("u1", "twitter")

    assert tokens.access_token == "new-access"
    assert upstream.count("POST", TWITTER_TOKEN_URL) == 1
    assert len(upserts) == 1

    stored = await services.credentials.get("u1", "twitter")
    assert stored.id == account.id
    assert stored.access_token == "new-access"
    assert stored.refresh_token == "refresh-2"
    assert stored.platform_user_id == "42"
    assert stored.expires_at.timestamp() == pytest.approx(clock() + 7200, abs=1)


@pytest.mark.asyncio
async def test_refresh_without_new_refresh_token_keeps_stored_one(services, upstream, clock):
    await _store_account(services, clock, expires_in=-60)
    upstream.add("POST", TWITTER_TOKEN_URL, json={"access_token": "new-access", "expires_in": 7200})

    await services.lifecycle.ensure_valid_tokens("u1", "twitter")

    stored = await services.credentials.get("u1", "twitter")
    assert stored.refresh_token == "refresh-1"


@pytest.mark.asyncio
async def test_expired_without_refresh_token_needs_reconnect(services, upstream, clock):
    await _store_account(services, clock, expires_in=-60, refresh_token=None)

    assert await services.lifecycle.ensure_valid_tokens("u1", "twitter") is None
    assert upstream.calls == []


@pytest.mark.asyncio
async def test_refresh_failure_returns_none_and_keeps_account(services, upstream, clock):
    await _store_account(services, clock, expires_in=-60)
    upstream.add("POST", TWITTER_TOKEN_URL, status=400, json={"error": "invalid_grant"})

    assert await services.lifecycle.ensure_valid_tokens("u1", "twitter") is None

    stored = await services.credentials.get("u1", "twitter")
    assert stored is not None
    assert stored.access_token == "old-access"


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_refresh(services, upstream, clock):
    await _store_account(services, clock, expires_in=-60)
    upstream.add(
        "POST",
        TWITTER_TOKEN_URL,
        json={"access_token": "new-access", "refresh_token": "refresh-2", "expires_in": 7200},
    )

    results = await asyncio.gather(
        *(services.lifecycle.ensure_valid_tokens("u1", "twitter") for _ in range(3))
    )

    assert [tokens.access_token for tokens in results] == ["new-access"] * 3
    assert upstream.count("POST", TWITTER_TOKEN_URL) == 1


@pytest.mark.asyncio
async def test_refresh_locks_are_released_after_use(services, upstream, clock):
    upstream.add("POST", TWITTER_TOKEN_URL, json={"access_token": "new-access", "expires_in": 7200})
    for user_id in ("u1", "u2", "u3"):
        await services.credentials.upsert(
            user_id,
            "twitter",
            SocialTokens(
                access_token="old-access",
                refresh_token="refresh-1",
                expires_at=utc_from_timestamp(clock() - 60),
            ),
        )

    await asyncio.gather(
        *(services.lifecycle.ensure_valid_tokens(user_id, "twitter") for user_id in ("u1", "u1", "u2", "u3"))
    )
    account = await services.credentials.get("u1", "twitter")
    await services.lifecycle.check_status(account)

    assert services.lifecycle._locks == {}
    assert services.lifecycle._lock_users == {}


@pytest.mark.asyncio
async def test_instagram_refresh_uses_current_access_token(services, upstream, clock):
    await _store_account(services, clock, expires_in=60, refresh_token=None, platform="instagram")
    upstream.add(
        "GET",
        "https://graph.instagram.com/refresh_access_token",
        json={"access_token": "ig-renewed", "expires_in": 5184000},
    )

    tokens = await services.lifecycle.ensure_valid_tokens("u1", "instagram")

    assert tokens.access_token == "ig-renewed"
    assert upstream.calls[-1].url.params["access_token"] == "old-access"


@pytest.mark.asyncio
async def test_check_status_persists_refreshed_tokens(services, upstream, clock):
    account = await _store_account(services, clock, expires_in=-60)
    upstream.add("POST", TWITTER_TOKEN_URL, json={"access_token": "status-access", "expires_in": 7200})

    status = await services.lifecycle.check_status(account)

    assert status == "connected"
    stored = await services.credentials.get("u1", "twitter")
    assert stored.access_token == "status-access"


@pytest.mark.asyncio
async def test_credentials_are_encrypted_in_the_database(services, session_maker, clock):
    from sqlalchemy.future import select

    from models.social_account import SocialAccount

    await _store_account(services, clock, expires_in=3600)

    async with session_maker() as db:
        row = (await db.execute(select(SocialAccount))).scalar_one()
    assert row.access_token_encrypted != "old-access"
    assert "old-access" not in row.access_token_encrypted
    assert row.refresh_token_encrypted != "refresh-1"


@pytest.mark.asyncio
async def test_upsert_updates_the_single_row_per_user_and_platform(services, clock):
    first = await _store_account(services, clock, expires_in=3600)
    second = await services.credentials.upsert(
        "u1",
        "twitter",
        SocialTokens(access_token="again"),
        metadata={"followers_count": 10},
    )

    assert second.id == first.id
    assert second.refresh_token == "refresh-1"
    assert second.metadata["followers_count"] == 10
    assert len(await services.credentials.list_for_user("u1")) == 1
