"""
Token lifecycle: hand callers a usable access token, refreshing and persisting when needed.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, Optional, Tuple

from services.connectors.base import BasePlatformConnector
from services.connectors.types import (
    SocialAccountRecord,
    SocialTokens,
    TokenRefreshError,
    TokenStatus,
    preview_secret,
    token_summary,
)
from services.credential_store import CredentialStore

logger = logging.getLogger(__name__)


class TokenLifecycleManager:
    """
    Refresh policy for stored credentials.

    A failed refresh returns ``None`` and leaves the account in place; callers
    decide whether to prompt a reconnect. Refreshes for one (user, platform)
    are serialised inside the process so that providers rotating refresh
    tokens do not see the same refresh token used twice.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        connector_factory: Callable[[str], BasePlatformConnector],
    ) -> None:
        self.credentials = credentials
        self.connector_factory = connector_factory
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._lock_users: Dict[Tuple[str, str], int] = {}

    @asynccontextmanager
    async def _serialised(self, user_id: str, platform: str) -> AsyncIterator[None]:
        """Hold the (user, platform) lock; the entry is dropped once nobody holds or awaits it."""
        key = (user_id, platform)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    async def ensure_valid_tokens(self, user_id: str, platform: str) -> Optional[SocialTokens]:
        connector = self.connector_factory(platform)
        account = await self.credentials.get(user_id, platform)
        if account is None or not account.access_token:
            logger.info("No stored %s credentials for user %s", platform, user_id)
            return None
        if not connector.is_token_expired(account.expires_at):
            return account.to_tokens()

        async with self._serialised(user_id, platform):
            # Another request may have refreshed while this one waited.
            account = await self.credentials.get(user_id, platform)
            if account is None or not account.access_token:
                return None
            if not connector.is_token_expired(account.expires_at):
                return account.to_tokens()
            return await self._refresh(connector, account)

    async def _refresh(
        self,
        connector: BasePlatformConnector,
        account: SocialAccountRecord,
    ) -> Optional[SocialTokens]:
        credential = connector.refresh_credential(account.to_tokens())
        if not credential:
            logger.warning(
                "%s token for user %s expired and no refresh credential is stored; reconnect required",
                account.platform,
                account.user_id,
            )
            return None

        logger.info(
            "Refreshing %s token for user %s (credential %s)",
            account.platform,
            account.user_id,
            preview_secret(credential),
        )
        try:
            tokens = await connector.refresh_tokens(credential)
        except TokenRefreshError as exc:
            logger.error(
                "%s token refresh failed for user %s (status=%s): %s",
                account.platform,
                account.user_id,
                exc.status_code,
                exc.body[:500] if exc.body else exc,
            )
            return None

        await self.persist_refreshed(account, tokens)
        return tokens

    async def persist_refreshed(self, account: SocialAccountRecord, tokens: SocialTokens) -> None:
        await self.credentials.upsert(
            account.user_id,
            account.platform,
            tokens,
            platform_user_id=account.platform_user_id,
            platform_username=account.platform_username,
        )
        logger.info("Persisted refreshed %s tokens: %s", account.platform, token_summary(tokens))

    async def check_status(self, account: SocialAccountRecord) -> TokenStatus:
        connector = self.connector_factory(account.platform)

        async def on_refreshed(tokens: SocialTokens) -> None:
            await self.persist_refreshed(account, tokens)

        async with self._serialised(account.user_id, account.platform):
            return await connector.check_token_status(account, on_refreshed=on_refreshed)
