"""
OAuth handshake orchestration across the browser redirect round-trip.

Handshake state (CSRF state, PKCE verifier, reconnect flag) travels through
two channels: an AES-encrypted cookie set on the login redirect, and a
server-side store keyed by the login id embedded in the composite ``state``
parameter. Either channel is enough to finish the callback; both are cleared
after a single use.
"""

from __future__ import annotations

import hmac
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional
from urllib.parse import urlencode

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.future import select

from models.oauth_session import OAuthSession
from services.connectors.base import BasePlatformConnector
from services.connectors.pkce import generate_login_id, split_state
from services.connectors.types import (
    ConfigurationError,
    OAuthExchangeError,
    UnsupportedPlatformError,
    UpstreamAPIError,
    parse_datetime,
    utc_from_timestamp,
)
from services.credential_store import CredentialStore
from services.crypto import decrypt_cookie_payload, encrypt_cookie_payload

logger = logging.getLogger(__name__)


class HandshakeState(str, Enum):
    INITIATED = "initiated"
    REDIRECTED_TO_PROVIDER = "redirected_to_provider"
    CALLBACK_RECEIVED = "callback_received"
    TOKEN_EXCHANGED = "token_exchanged"
    FAILED = "failed"


def cookie_name(platform: str) -> str:
    return f"{platform}_oauth_data"


@dataclass
class HandshakeSession:
    login_id: str
    platform: str
    user_id: str
    state: str
    code_verifier: Optional[str]
    is_reconnect: bool
    created_at: float

    def is_expired(self, now: float, ttl_seconds: float) -> bool:
        return now - self.created_at > ttl_seconds

    def to_cookie_payload(self) -> Dict[str, Any]:
        return {
            "loginId": self.login_id,
            "platform": self.platform,
            "userId": self.user_id,
            "state": self.state,
            "codeVerifier": self.code_verifier,
            "isReconnect": self.is_reconnect,
            "createdAt": int(self.created_at * 1000),
        }

    @classmethod
    def from_cookie_payload(cls, payload: Mapping[str, Any]) -> Optional["HandshakeSession"]:
        try:
            return cls(
                login_id=str(payload["loginId"]),
                platform=str(payload["platform"]),
                user_id=str(payload["userId"]),
                state=str(payload["state"]),
                code_verifier=payload.get("codeVerifier"),
                is_reconnect=bool(payload.get("isReconnect")),
                created_at=float(payload["createdAt"]) / 1000,
            )
        except (KeyError, TypeError, ValueError):
            logger.warning("OAuth cookie payload is missing required fields")
            return None


class HandshakeStore(ABC):
    """Server-side handshake channel; consumed ids are remembered until the TTL passes."""

    def __init__(self, ttl_seconds: int = 600, clock: Callable[[], float] = time.time) -> None:
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    @abstractmethod
    async def save(self, session: HandshakeSession) -> None:
        raise NotImplementedError

    @abstractmethod
    async def load(self, login_id: str) -> Optional[HandshakeSession]:
        """Live (unconsumed, unexpired) session or None."""
        raise NotImplementedError

    @abstractmethod
    async def consume(self, login_id: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def is_consumed(self, login_id: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def purge_expired(self) -> int:
        raise NotImplementedError


class InMemoryHandshakeStore(HandshakeStore):
    def __init__(self, ttl_seconds: int = 600, clock: Callable[[], float] = time.time) -> None:
        super().__init__(ttl_seconds, clock)
        self._sessions: Dict[str, HandshakeSession] = {}
        self._consumed: Dict[str, float] = {}

    async def save(self, session: HandshakeSession) -> None:
        await self.purge_expired()
        self._sessions[session.login_id] = session
        self._consumed.pop(session.login_id, None)

    async def load(self, login_id: str) -> Optional[HandshakeSession]:
        session = self._sessions.get(login_id)
        if session is None:
            return None
        if session.is_expired(self.clock(), self.ttl_seconds):
            self._sessions.pop(login_id, None)
            return None
        return session

    async def consume(self, login_id: str) -> None:
        await self.purge_expired()
        # Only ids that were issued get a tombstone.
        if self._sessions.pop(login_id, None) is not None:
            self._consumed[login_id] = self.clock()

    async def is_consumed(self, login_id: str) -> bool:
        return login_id in self._consumed

    async def purge_expired(self) -> int:
        now = self.clock()
        expired = [key for key, s in self._sessions.items() if s.is_expired(now, self.ttl_seconds)]
        for key in expired:
            del self._sessions[key]
        stale = [key for key, ts in self._consumed.items() if now - ts > self.ttl_seconds]
        for key in stale:
            del self._consumed[key]
        return len(expired) + len(stale)

    def __len__(self) -> int:
        return len(self._sessions)


class DatabaseHandshakeStore(HandshakeStore):
    """Durable channel shared by every API instance."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        ttl_seconds: int = 600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(ttl_seconds, clock)
        self.session_factory = session_factory

    def _cutoff(self):
        return utc_from_timestamp(self.clock()) - timedelta(seconds=self.ttl_seconds)

    async def save(self, session: HandshakeSession) -> None:
        await self.purge_expired()
        async with self.session_factory() as db:
            await db.merge(
                OAuthSession(
                    login_id=session.login_id,
                    platform=session.platform,
                    user_id=session.user_id,
                    state=session.state,
                    code_verifier=session.code_verifier,
                    is_reconnect=session.is_reconnect,
                    created_at=utc_from_timestamp(session.created_at),
                    consumed_at=None,
                )
            )
            await db.commit()

    async def load(self, login_id: str) -> Optional[HandshakeSession]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(OAuthSession).where(
                    OAuthSession.login_id == login_id,
                    OAuthSession.consumed_at.is_(None),
                    OAuthSession.created_at >= self._cutoff(),
                )
            )
            row = result.scalar_one_or_none()
        if row is None:
            return None
        created = parse_datetime(row.created_at)
        return HandshakeSession(
            login_id=row.login_id,
            platform=row.platform,
            user_id=row.user_id,
            state=row.state,
            code_verifier=row.code_verifier,
            is_reconnect=bool(row.is_reconnect),
            created_at=created.timestamp() if created else self.clock(),
        )

    async def consume(self, login_id: str) -> None:
        async with self.session_factory() as db:
            row = await db.get(OAuthSession, login_id)
            if row is None:
                return
            row.consumed_at = utc_from_timestamp(self.clock())
            await db.commit()

    async def is_consumed(self, login_id: str) -> bool:
        async with self.session_factory() as db:
            row = await db.get(OAuthSession, login_id)
            return row is not None and row.consumed_at is not None

    async def purge_expired(self) -> int:
        async with self.session_factory() as db:
            result = await db.execute(delete(OAuthSession).where(OAuthSession.created_at < self._cutoff()))
            await db.commit()
            return result.rowcount or 0


@dataclass
class HandshakeStart:
    authorization_url: str
    cookie_value: str
    session: HandshakeSession


@dataclass
class HandshakeOutcome:
    state: HandshakeState
    redirect_url: str
    platform: str
    error: Optional[str] = None
    account_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.state == HandshakeState.TOKEN_EXCHANGED


class HandshakeFailure(Exception):
    """Internal signal carrying the browser-facing error code."""

    def __init__(self, code: str, detail: str = "") -> None:
        super().__init__(detail or code)
        self.code = code


class OAuthHandshakeOrchestrator:
    def __init__(
        self,
        store: HandshakeStore,
        credentials: CredentialStore,
        connector_factory: Callable[[str], BasePlatformConnector],
        *,
        frontend_base_url: str,
        ttl_seconds: int = 600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.connector_factory = connector_factory
        self.frontend_base_url = frontend_base_url.rstrip("/")
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    # ---- redirects ----

    def login_redirect(self) -> str:
        return f"{self.frontend_base_url}/login?{urlencode({'returnUrl': '/accounts'})}"

    def error_redirect(self, code: str, platform: Optional[str] = None) -> str:
        params = {"error": code}
        if platform and code == "unsupported_platform":
            params["platform"] = platform
        return f"{self.frontend_base_url}/accounts?{urlencode(params)}"

    def success_redirect(self, platform: str, is_reconnect: bool) -> str:
        flag = "reconnected" if is_reconnect else "connected"
        return f"{self.frontend_base_url}/dashboard?{urlencode({flag: platform})}"

    # ---- INITIATED -> REDIRECTED_TO_PROVIDER ----

    async def begin(self, platform: str, user_id: str, reconnect: bool = False) -> HandshakeStart:
        """
        Start a login attempt.

        Raises UnsupportedPlatformError or ConfigurationError; the router turns
        both into error redirects.
        """
        connector = self.connector_factory(platform)
        login_id = generate_login_id()
        auth_request = connector.prepare_auth_request(login_id=login_id)
        session = HandshakeSession(
            login_id=login_id,
            platform=platform,
            user_id=user_id,
            state=auth_request.state,
            code_verifier=auth_request.code_verifier,
            is_reconnect=reconnect,
            created_at=self.clock(),
        )
        await self.store.save(session)
        logger.info(
            "OAuth %s for %s user %s (login %s, reconnect=%s)",
            HandshakeState.REDIRECTED_TO_PROVIDER.value,
            platform,
            user_id,
            login_id,
            reconnect,
        )
        return HandshakeStart(
            authorization_url=auth_request.url,
            cookie_value=encrypt_cookie_payload(session.to_cookie_payload()),
            session=session,
        )

    # ---- CALLBACK_RECEIVED -> TOKEN_EXCHANGED | FAILED ----

    async def complete(
        self,
        platform: str,
        params: Mapping[str, str],
        cookie_value: Optional[str],
        user_id: Optional[str] = None,
    ) -> HandshakeOutcome:
        """Finish a callback; never raises, every failure becomes an error redirect."""
        state_param = params.get("state") or ""
        _random_part, login_id = split_state(state_param) if state_param else (None, None)
        try:
            session = await self._recover(platform, params, cookie_value, user_id, login_id)
            account_id = await self._exchange(platform, params["code"], session)
        except HandshakeFailure as failure:
            logger.warning("OAuth callback for %s failed: %s (%s)", platform, failure.code, failure)
            return self._failed(platform, failure.code)
        except Exception:
            logger.exception("OAuth callback for %s failed unexpectedly", platform)
            return self._failed(platform, "callback_failed")
        finally:
            if login_id:
                await self._consume_quietly(login_id)

        logger.info("OAuth %s for %s account %s", HandshakeState.TOKEN_EXCHANGED.value, platform, account_id)
        return HandshakeOutcome(
            state=HandshakeState.TOKEN_EXCHANGED,
            redirect_url=self.success_redirect(platform, session.is_reconnect),
            platform=platform,
            account_id=account_id,
        )

    def _failed(self, platform: str, code: str) -> HandshakeOutcome:
        return HandshakeOutcome(
            state=HandshakeState.FAILED,
            redirect_url=self.error_redirect(code, platform),
            platform=platform,
            error=code,
        )

    async def _recover(
        self,
        platform: str,
        params: Mapping[str, str],
        cookie_value: Optional[str],
        user_id: Optional[str],
        login_id: Optional[str],
    ) -> HandshakeSession:
        try:
            self.connector_factory(platform)
        except UnsupportedPlatformError as exc:
            raise HandshakeFailure("unsupported_platform", str(exc)) from exc

        if params.get("error"):
            # Provider-supplied text is logged, never echoed back.
            logger.info(
                "Provider returned error for %s: %s (%s)",
                platform,
                params.get("error"),
                params.get("error_description", ""),
            )
            raise HandshakeFailure("oauth_denied", str(params.get("error")))
        if not params.get("code"):
            raise HandshakeFailure("missing_code")
        state_param = params.get("state")
        if not state_param:
            raise HandshakeFailure("missing_state")

        session = None
        if cookie_value:
            payload = decrypt_cookie_payload(cookie_value)
            if payload is not None:
                session = HandshakeSession.from_cookie_payload(payload)
                if session is not None and session.is_expired(self.clock(), self.ttl_seconds):
                    raise HandshakeFailure("session_expired", "handshake cookie older than its TTL")
        if session is None and login_id:
            session = await self.store.load(login_id)
            if session is not None:
                logger.info("Recovered %s handshake %s from server-side store", platform, login_id)

        if session is None:
            if login_id and await self.store.is_consumed(login_id):
                raise HandshakeFailure("session_expired", "handshake already used")
            raise HandshakeFailure("invalid_state", "no handshake session found")

        if login_id and session.login_id != login_id:
            raise HandshakeFailure("invalid_state", "login id does not match handshake cookie")
        if await self.store.is_consumed(session.login_id):
            raise HandshakeFailure("session_expired", "handshake already used")
        if not hmac.compare_digest(session.state.encode(), state_param.encode()):
            raise HandshakeFailure("invalid_state", "state parameter mismatch")
        if session.platform != platform:
            raise HandshakeFailure("invalid_state", "platform mismatch")
        if user_id and session.user_id != user_id:
            raise HandshakeFailure("invalid_state", "callback user differs from the user who started login")

        logger.info("OAuth %s for %s (login %s)", HandshakeState.CALLBACK_RECEIVED.value, platform, session.login_id)
        return session

    async def _exchange(self, platform: str, code: str, session: HandshakeSession) -> str:
        connector = self.connector_factory(platform)
        try:
            tokens = await connector.exchange_code_for_tokens(code, session.code_verifier)
        except ConfigurationError as exc:
            logger.critical("OAuth exchange for %s blocked by configuration: %s", platform, exc)
            raise HandshakeFailure("not_configured", str(exc)) from exc
        except OAuthExchangeError as exc:
            logger.error(
                "%s token exchange failed (status=%s): %s",
                platform,
                exc.status_code,
                (exc.body or "")[:500],
            )
            raise HandshakeFailure("token_exchange_failed", str(exc)) from exc

        try:
            identity = await connector.fetch_identity(tokens)
        except (UpstreamAPIError, ValueError, KeyError, TypeError) as exc:
            logger.error("%s identity lookup after exchange failed: %s", platform, exc)
            raise HandshakeFailure("user_info_failed", str(exc)) from exc

        try:
            record = await self.credentials.upsert(
                session.user_id,
                platform,
                tokens,
                platform_user_id=identity.platform_user_id,
                platform_username=identity.username,
                metadata=identity.account_metadata(),
            )
        except Exception as exc:
            logger.exception("Storing %s credentials for user %s failed", platform, session.user_id)
            raise HandshakeFailure("token_storage_failed", str(exc)) from exc
        return record.id

    async def _consume_quietly(self, login_id: str) -> None:
        try:
            await self.store.consume(login_id)
        except Exception:
            logger.exception("Could not clear handshake session %s", login_id)
