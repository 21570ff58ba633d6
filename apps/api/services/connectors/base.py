"""Shared platform connector behaviour: OAuth plumbing, HTTP helpers and token expiry rules."""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple, Type
from urllib.parse import urlencode

import httpx

from config import require_platform_credentials, settings
from services.cache import CacheBackend, InMemoryCacheBackend, cache_key
from services.connectors.pkce import code_challenge_s256, compose_state, generate_code_verifier, generate_state
from services.connectors.types import (
    AuthRequest,
    PlatformIdentity,
    PlatformKey,
    SocialAccountRecord,
    SocialMetrics,
    SocialTokens,
    TokenStatus,
    UpstreamAPIError,
    _UpstreamHTTPError,
    parse_datetime,
    utc_from_timestamp,
)

logger = logging.getLogger(__name__)

RefreshCallback = Callable[[SocialTokens], Awaitable[Any]]


class BasePlatformConnector(ABC):
    """One OAuth + metrics integration; subclasses supply endpoints and payload mapping."""

    platform: PlatformKey
    authorize_url: str
    token_url: str
    scopes: str
    supports_pkce: bool = True
    metrics_period_days: int = 30

    EXPIRY_BUFFER_SECONDS = 5 * 60
    cache_ttls: Dict[str, int] = {
        "profile": 15 * 60,
        "items": 15 * 60,
        "metrics": 5 * 60,
        "historical": 15 * 60,
    }

    def __init__(
        self,
        *,
        cache: Optional[CacheBackend] = None,
        metrics_cache: Any = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.clock = clock
        self.cache = cache if cache is not None else InMemoryCacheBackend(clock=clock)
        self.transport = transport
        self.timeout = timeout if timeout is not None else settings.HTTP_TIMEOUT_SECONDS
        self._metrics_cache = metrics_cache

    # ---- configuration ----

    @property
    def credentials(self) -> Tuple[str, str, str]:
        """(client_id, client_secret, redirect_uri); raises ConfigurationError when unset."""
        return require_platform_credentials(self.platform)

    def now(self) -> datetime:
        return utc_from_timestamp(self.clock())

    # ---- OAuth ----

    def get_auth_url(self) -> str:
        return self.authorize_url

    def extra_authorize_params(self) -> Dict[str, str]:
        return {}

    def prepare_auth_request(self, login_id: Optional[str] = None) -> AuthRequest:
        """Build the provider authorization URL with CSRF state and, where supported, PKCE."""
        client_id, _secret, redirect_uri = self.credentials
        state = generate_state()
        if login_id:
            state = compose_state(state, login_id)

        params: Dict[str, str] = {
            "response_type": "code",
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "scope": self.scopes,
            "state": state,
        }
        code_verifier = None
        if self.supports_pkce:
            code_verifier = generate_code_verifier()
            params["code_challenge"] = code_challenge_s256(code_verifier)
            params["code_challenge_method"] = "S256"
        params.update(self.extra_authorize_params())

        logger.info(
            "Prepared %s authorization request (pkce=%s, redirect_uri=%s)",
            self.platform,
            self.supports_pkce,
            redirect_uri,
        )
        return AuthRequest(
            url=f"{self.get_auth_url()}?{urlencode(params)}",
            state=state,
            code_verifier=code_verifier,
        )

    @abstractmethod
    async def exchange_code_for_tokens(self, code: str, code_verifier: Optional[str] = None) -> SocialTokens:
        raise NotImplementedError

    @abstractmethod
    async def refresh_tokens(self, refresh_token: str) -> SocialTokens:
        raise NotImplementedError

    def refresh_credential(self, tokens: SocialTokens) -> Optional[str]:
        """Credential handed to refresh_tokens; most platforms use the refresh token."""
        return tokens.refresh_token or None

    @abstractmethod
    async def fetch_identity(self, tokens: SocialTokens) -> PlatformIdentity:
        raise NotImplementedError

    # ---- metrics ----

    @abstractmethod
    async def fetch_metrics(self, tokens: SocialTokens, scope: Optional[str] = None) -> SocialMetrics:
        """Assemble metrics from live upstream calls; ``scope`` keys per-kind sub-caches."""
        raise NotImplementedError

    @property
    def metrics_cache(self):
        if self._metrics_cache is None:
            from services.metrics_cache import MetricsCache

            self._metrics_cache = MetricsCache(self.cache, clock=self.clock)
        return self._metrics_cache

    @metrics_cache.setter
    def metrics_cache(self, value) -> None:
        self._metrics_cache = value

    async def get_metrics(
        self,
        tokens: SocialTokens,
        user_id: Optional[str] = None,
        cache_key: Optional[str] = None,
    ) -> SocialMetrics:
        """Read-through metrics with a ``_cache`` envelope (database, memory, then live API)."""
        return await self.metrics_cache.get_metrics(self, tokens, user_id=user_id, cache_key=cache_key)

    def metrics_period(self) -> Tuple[datetime, datetime]:
        end = self.now()
        return end - timedelta(days=self.metrics_period_days), end

    # ---- token state ----

    def is_token_expired(self, expires_at: Any, now: Optional[float] = None) -> bool:
        """Missing expiry counts as expired; otherwise expired within the 5 minute buffer."""
        expiry = parse_datetime(expires_at)
        if expiry is None:
            return True
        current = self.clock() if now is None else now
        return current + self.EXPIRY_BUFFER_SECONDS >= expiry.timestamp()

    async def check_token_status(
        self,
        account: SocialAccountRecord,
        on_refreshed: Optional[RefreshCallback] = None,
    ) -> TokenStatus:
        try:
            if not self.is_token_expired(account.expires_at):
                return "connected"
            credential = self.refresh_credential(account.to_tokens())
            if not credential:
                return "expired"
            try:
                new_tokens = await self.refresh_tokens(credential)
            except _UpstreamHTTPError as exc:
                logger.warning("%s token refresh during status check failed: %s", self.platform, exc)
                return "expired"
            if on_refreshed is not None:
                await on_refreshed(new_tokens)
            return "connected"
        except Exception:
            logger.exception("Token status check failed for %s account %s", self.platform, account.id)
            return "error"

    # ---- HTTP helpers ----

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    async def _token_request(
        self,
        error_cls: Type[_UpstreamHTTPError],
        *,
        method: str = "POST",
        url: Optional[str] = None,
        data: Optional[Mapping[str, str]] = None,
        params: Optional[Mapping[str, str]] = None,
        auth: Optional[Tuple[str, str]] = None,
    ) -> Dict[str, Any]:
        target = url or self.token_url
        try:
            async with self._client() as client:
                response = await client.request(
                    method,
                    target,
                    data=data,
                    params=params,
                    auth=auth,
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as exc:
            raise error_cls(f"{self.platform} token request failed: {exc}", None, str(exc)) from exc

        body = response.text
        if not response.is_success:
            logger.error(
                "%s token endpoint returned %s: %s",
                self.platform,
                response.status_code,
                body[:500],
            )
            raise error_cls(
                f"{self.platform} token request failed with status {response.status_code}",
                response.status_code,
                body,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise error_cls(
                f"{self.platform} token response could not be parsed",
                response.status_code,
                body,
            ) from exc
        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise error_cls(
                f"{self.platform} token response did not include an access token",
                response.status_code,
                body,
            )
        return payload

    def _tokens_from_response(
        self,
        payload: Mapping[str, Any],
        previous_refresh_token: Optional[str] = None,
        scopes: Optional[str] = None,
    ) -> SocialTokens:
        expires_in = payload.get("expires_in")
        expires_at = None
        if expires_in is not None:
            try:
                expires_at = utc_from_timestamp(self.clock() + float(expires_in))
            except (TypeError, ValueError):
                expires_at = None
        return SocialTokens(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token") or previous_refresh_token,
            expires_at=expires_at,
            scopes=payload.get("scope") or scopes or self.scopes,
            success=True,
        )

    async def _api_get(
        self,
        url: str,
        *,
        access_token: Optional[str] = None,
        params: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        headers = {"Accept": "application/json"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        try:
            async with self._client() as client:
                response = await client.get(url, params=params, headers=headers)
        except httpx.HTTPError as exc:
            raise UpstreamAPIError(f"{self.platform} API request failed: {exc!r}", None, str(exc)) from exc

        if not response.is_success:
            raise UpstreamAPIError(
                f"{self.platform} API returned {response.status_code} for {url}",
                response.status_code,
                response.text,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamAPIError(
                f"{self.platform} API returned an unparsable body for {url}",
                response.status_code,
                response.text,
            ) from exc
        if not isinstance(payload, dict):
            raise UpstreamAPIError(f"{self.platform} API returned unexpected payload", response.status_code, response.text)
        return payload

    async def _cached(self, scope: Optional[str], kind: str, loader: Callable[[], Awaitable[Any]]) -> Any:
        """Per-kind memory cache around one upstream call."""
        if not scope:
            return await loader()
        key = cache_key(self.platform, scope, kind)
        entry = await self.cache.get(key)
        if entry is not None and entry.is_fresh(self.cache_ttls[kind], self.clock()):
            logger.debug("%s %s served from cache (age %.0fs)", self.platform, kind, entry.age(self.clock()))
            return entry.data
        data = await loader()
        await self.cache.set(key, data)
        return data

    async def _optional(self, label: str, loader: Callable[[], Awaitable[Any]], warnings: list) -> Any:
        """Run a non-essential upstream call; failures are recorded, never raised."""
        try:
            return await loader()
        except (UpstreamAPIError, ValueError, KeyError, TypeError) as exc:
            logger.warning("%s optional %s call failed: %s", self.platform, label, exc)
            warnings.append(f"{label}_unavailable")
            return None
