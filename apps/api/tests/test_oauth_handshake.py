from urllib.parse import parse_qs, urlparse

import pytest
from sqlalchemy.exc import OperationalError

from conftest import FRONTEND, TWITTER_TOKEN_URL, install_twitter
from services.connectors.types import ConfigurationError, UnsupportedPlatformError
from services.crypto import decrypt_cookie_payload
from services.oauth_handshake import (
    DatabaseHandshakeStore,
    HandshakeSession,
    HandshakeState,
    InMemoryHandshakeStore,
)


def _callback(start, **overrides):
    params = {"code": "auth-code", "state": start.session.state}
    params.update(overrides)
    return {key: value for key, value in params.items() if value is not None}


def _error_of(outcome):
    return parse_qs(urlparse(outcome.redirect_url).query).get("error", [None])[0]


@pytest.mark.asyncio
async def test_begin_saves_session_and_seals_cookie(services):
    start = await services.orchestrator.begin("twitter", "u1")

    assert start.authorization_url.startswith("https://twitter.com/i/oauth2/authorize?")
    assert start.session.state.endswith(f".{start.session.login_id}")
    stored = await services.handshake_store.load(start.session.login_id)
    assert stored == start.session
    payload = decrypt_cookie_payload(start.cookie_value)
    assert payload["state"] == start.session.state
    assert payload["codeVerifier"] == start.session.code_verifier
    assert payload["isReconnect"] is False


@pytest.mark.asyncio
async def test_begin_rejects_unknown_platform_and_missing_config(services, monkeypatch):
    from config import settings

    with pytest.raises(UnsupportedPlatformError):
        await services.orchestrator.begin("myspace", "u1")

    monkeypatch.setattr(settings, "YOUTUBE_CLIENT_ID", "")
    with pytest.raises(ConfigurationError):
        await services.orchestrator.begin("youtube", "u1")


@pytest.mark.asyncio
async def test_callback_with_cookie_stores_account(services, upstream):
    install_twitter(upstream)
    start = await services.orchestrator.begin("twitter", "u1")

    outcome = await services.orchestrator.complete("twitter", _callback(start), start.cookie_value, user_id="u1")

    assert outcome.ok
    assert outcome.state is HandshakeState.TOKEN_EXCHANGED
    assert outcome.redirect_url == f"{FRONTEND}/dashboard?connected=twitter"
    account = await services.credentials.get("u1", "twitter")
    assert account.id == outcome.account_id
    assert account.platform_user_id == "42"
    assert account.platform_username == "creator"
    assert account.access_token == "abc"
    assert account.metadata["followers_count"] == 1200
    body = parse_qs(upstream.calls[0].content.decode())
    assert body["code_verifier"] == [start.session.code_verifier]


@pytest.mark.asyncio
async def test_reconnect_redirects_with_reconnected_flag(services, upstream):
    install_twitter(upstream)
    start = await services.orchestrator.begin("twitter", "u1", reconnect=True)

    outcome = await services.orchestrator.complete("twitter", _callback(start), start.cookie_value, user_id="u1")

    assert outcome.redirect_url == f"{FRONTEND}/dashboard?reconnected=twitter"


@pytest.mark.asyncio
async def test_callback_without_cookie_recovers_from_server_store(services, upstream):
    install_twitter(upstream)
    start = await services.orchestrator.begin("twitter", "u1")

    outcome = await services.orchestrator.complete("twitter", _callback(start), None, user_id="u1")

    assert outcome.ok
    assert await services.handshake_store.load(start.session.login_id) is None


@pytest.mark.asyncio
async def test_unreadable_cookie_falls_back_to_server_store(services, upstream):
    install_twitter(upstream)
    start = await services.orchestrator.begin("twitter", "u1")

    outcome = await services.orchestrator.complete("twitter", _callback(start), "garbage:cookie", user_id="u1")

    assert outcome.ok


@pytest.mark.asyncio
async def test_tampered_state_is_rejected_without_exchange(services, upstream):
    install_twitter(upstream)
    start = await services.orchestrator.begin("twitter", "u1")
    state = start.session.state
    tampered = ("A" if state[0] != "A" else "B") + state[1:]

    outcome = await services.orchestrator.complete(
        "twitter", _callback(start, state=tampered), start.cookie_value, user_id="u1"
    )

    assert not outcome.ok
    assert _error_of(outcome) == "invalid_state"
    assert outcome.redirect_url.startswith(f"{FRONTEND}/accounts?")
    assert upstream.count("POST", TWITTER_TOKEN_URL) == 0
    assert await services.credentials.get("u1", "twitter") is None


@pytest.mark.asyncio
async def test_unknown_login_id_is_invalid_state(services, upstream):
    outcome = await services.orchestrator.complete(
        "twitter", {"code": "c", "state": "random.unknown-login"}, None, user_id="u1"
    )

    assert _error_of(outcome) == "invalid_state"
    assert upstream.calls == []


@pytest.mark.asyncio
async def test_replayed_callback_is_rejected(services, upstream):
    install_twitter(upstream)
    start = await services.orchestrator.begin("twitter", "u1")
    first = await services.orchestrator.complete("twitter", _callback(start), start.cookie_value, user_id="u1")
    assert first.ok

    replay = await services.orchestrator.complete("twitter", _callback(start), start.cookie_value, user_id="u1")
    replay_without_cookie = await services.orchestrator.complete("twitter", _callback(start), None, user_id="u1")

    assert _error_of(replay) == "session_expired"
    assert _error_of(replay_without_cookie) == "session_expired"
    assert upstream.count("POST", TWITTER_TOKEN_URL) == 1


@pytest.mark.asyncio
async def test_failed_callback_still_consumes_handshake(services, upstream):
    upstream.add("POST", TWITTER_TOKEN_URL, status=400, json={"error": "invalid_grant"})
    start = await services.orchestrator.begin("twitter", "u1")

    outcome = await services.orchestrator.complete("twitter", _callback(start), start.cookie_value, user_id="u1")

    assert _error_of(outcome) == "token_exchange_failed"
    assert "invalid_grant" not in outcome.redirect_url
    assert await services.handshake_store.is_consumed(start.session.login_id)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides, expected",
    [
        ({"error": "access_denied", "error_description": "User said no"}, "oauth_denied"),
        ({"code": None}, "missing_code"),
        ({"state": None}, "missing_state"),
    ],
)
async def test_incomplete_callbacks_map_to_error_codes(services, upstream, overrides, expected):
    start = await services.orchestrator.begin("twitter", "u1")

    outcome = await services.orchestrator.complete(
        "twitter", _callback(start, **overrides), start.cookie_value, user_id="u1"
    )

    assert _error_of(outcome) == expected
    assert "User said no" not in outcome.redirect_url
    assert upstream.calls == []


@pytest.mark.asyncio
async def test_callback_from_different_user_is_rejected(services, upstream):
    install_twitter(upstream)
    start = await services.orchestrator.begin("twitter", "u1")

    outcome = await services.orchestrator.complete("twitter", _callback(start), start.cookie_value, user_id="u2")

    assert _error_of(outcome) == "invalid_state"
    assert upstream.calls == []


@pytest.mark.asyncio
async def test_callback_on_other_platform_is_rejected(services, upstream):
    start = await services.orchestrator.begin("twitter", "u1")

    outcome = await services.orchestrator.complete("youtube", _callback(start), start.cookie_value, user_id="u1")

    assert _error_of(outcome) == "invalid_state"


@pytest.mark.asyncio
async def test_unsupported_platform_callback(services):
    outcome = await services.orchestrator.complete("myspace", {"code": "c", "state": "s.l"}, None)

    assert outcome.redirect_url == f"{FRONTEND}/accounts?error=unsupported_platform&platform=myspace"


@pytest.mark.asyncio
async def test_expired_cookie_is_session_expired(services, upstream, clock):
    start = await services.orchestrator.begin("twitter", "u1")
    clock.advance(601)

    outcome = await services.orchestrator.complete("twitter", _callback(start), start.cookie_value, user_id="u1")

    assert _error_of(outcome) == "session_expired"
    assert upstream.calls == []


@pytest.mark.asyncio
async def test_identity_failure_is_user_info_failed(services, upstream):
    install_twitter(upstream)
    upstream.add("GET", "https://api.twitter.com/2/users/me", status=500, json={"title": "boom"})
    start = await services.orchestrator.begin("twitter", "u1")

    outcome = await services.orchestrator.complete("twitter", _callback(start), start.cookie_value, user_id="u1")

    assert _error_of(outcome) == "user_info_failed"
    assert await services.credentials.get("u1", "twitter") is None


@pytest.mark.asyncio
async def test_storage_failure_is_token_storage_failed(services, upstream, monkeypatch):
    install_twitter(upstream)
    start = await services.orchestrator.begin("twitter", "u1")

    async def broken_upsert(*args, **kwargs):
        raise RuntimeError("database is read-only")

    monkeypatch.setattr(services.credentials, "upsert", broken_upsert)
    outcome = await services.orchestrator.complete("twitter", _callback(start), start.cookie_value, user_id="u1")

    assert _error_of(outcome) == "token_storage_failed"


@pytest.mark.asyncio
async def test_configuration_removed_mid_flight_is_not_configured(services, upstream, monkeypatch):
    from config import settings

    start = await services.orchestrator.begin("twitter", "u1")
    monkeypatch.setattr(settings, "TWITTER_CLIENT_SECRET", "")

    outcome = await services.orchestrator.complete("twitter", _callback(start), start.cookie_value, user_id="u1")

    assert _error_of(outcome) == "not_configured"


@pytest.mark.asyncio
async def test_instagram_flow_without_pkce(services, upstream):
    upstream.add("POST", "https://api.instagram.com/oauth/access_token", json={"access_token": "short"})
    upstream.add(
        "GET",
        "https://graph.instagram.com/access_token",
        json={"access_token": "long-lived", "expires_in": 5184000},
    )
    upstream.add(
        "GET",
        "https://graph.instagram.com/me",
        json={"id": "17841", "username": "insta_creator", "account_type": "PERSONAL", "media_count": 3},
    )
    start = await services.orchestrator.begin("instagram", "u1")
    assert start.session.code_verifier is None

    outcome = await services.orchestrator.complete("instagram", _callback(start), start.cookie_value, user_id="u1")

    assert outcome.ok
    account = await services.credentials.get("u1", "instagram")
    assert account.access_token == "long-lived"
    assert account.refresh_token is None
    assert account.metadata["account_type"] == "PERSONAL"


@pytest.mark.asyncio
async def test_in_memory_store_tombstones_expire(clock):
    store = InMemoryHandshakeStore(ttl_seconds=600, clock=clock)
    session = HandshakeSession("login-1", "twitter", "u1", "s.login-1", "v", False, clock())
    await store.save(session)
    await store.consume("login-1")

    assert await store.load("login-1") is None
    assert await store.is_consumed("login-1")

    clock.advance(601)
    await store.purge_expired()
    assert not await store.is_consumed("login-1")


@pytest.mark.asyncio
async def test_database_store_round_trip_and_consumption(session_maker, clock):
    store = DatabaseHandshakeStore(session_maker, ttl_seconds=600, clock=clock)
    session = HandshakeSession("login-db", "youtube", "u1", "s.login-db", "verifier", True, clock())
    await store.save(session)

    loaded = await store.load("login-db")
    assert loaded.state == "s.login-db"
    assert loaded.code_verifier == "verifier"
    assert loaded.is_reconnect is True
    assert loaded.created_at == pytest.approx(session.created_at, abs=1)

    await store.consume("login-db")
    assert await store.load("login-db") is None
    assert await store.is_consumed("login-db")


@pytest.mark.asyncio
async def test_database_store_expires_and_purges(session_maker, clock):
    store = DatabaseHandshakeStore(session_maker, ttl_seconds=600, clock=clock)
    await store.save(HandshakeSession("old", "twitter", "u1", "s.old", None, False, clock()))

    clock.advance(601)
    assert await store.load("old") is None
    assert await store.purge_expired() == 1


@pytest.mark.asyncio
async def test_orchestrator_works_with_database_store(make_services, session_maker, upstream, clock):
    install_twitter(upstream)
    services = make_services(handshake_store=DatabaseHandshakeStore(session_maker, ttl_seconds=600, clock=clock))
    start = await services.orchestrator.begin("twitter", "u1")

    outcome = await services.orchestrator.complete("twitter", _callback(start), None, user_id="u1")
    replay = await services.orchestrator.complete("twitter", _callback(start), start.cookie_value, user_id="u1")

    assert outcome.ok
    assert _error_of(replay) == "session_expired"


@pytest.mark.asyncio
async def test_handshake_store_outage_becomes_error_redirect(services, upstream, monkeypatch):
    install_twitter(upstream)
    start = await services.orchestrator.begin("twitter", "u1")

    async def db_down(login_id):
        raise OperationalError("SELECT oauth_sessions", {}, Exception("db down"))

    monkeypatch.setattr(services.handshake_store, "load", db_down)

    outcome = await services.orchestrator.complete("twitter", _callback(start), None, user_id="u1")

    assert outcome.state == HandshakeState.FAILED
    assert _error_of(outcome) == "callback_failed"
    assert "db down" not in outcome.redirect_url
    assert upstream.calls == []


@pytest.mark.asyncio
async def test_unknown_login_ids_leave_no_tombstones(services, clock):
    for i in range(50):
        outcome = await services.orchestrator.complete("twitter", {"code": "c", "state": f"x.{i}"}, None)
        assert _error_of(outcome) == "invalid_state"

    assert services.handshake_store._consumed == {}


@pytest.mark.asyncio
async def test_tombstones_are_purged_on_later_consumption(clock):
    store = InMemoryHandshakeStore(ttl_seconds=600, clock=clock)
    await store.save(HandshakeSession("first", "twitter", "u1", "s.first", None, False, clock()))
    await store.consume("first")

    clock.advance(601)
    await store.consume("never-issued")

    assert store._consumed == {}
