"""
Credential store: encrypted SocialAccount rows keyed by (user_id, platform).
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from models.social_account import SocialAccount
from services.connectors.types import SocialAccountRecord, SocialTokens, parse_datetime
from services.crypto import decrypt_token, encrypt_token

logger = logging.getLogger(__name__)


def _decrypt_optional(value: Optional[str]) -> Optional[str]:
    return decrypt_token(value) if value else None


def to_record(row: SocialAccount) -> SocialAccountRecord:
    return SocialAccountRecord(
        id=row.id,
        user_id=row.user_id,
        platform=row.platform,
        platform_user_id=row.platform_user_id,
        platform_username=row.platform_username,
        access_token=decrypt_token(row.access_token_encrypted),
        refresh_token=_decrypt_optional(row.refresh_token_encrypted),
        token_secret=_decrypt_optional(row.token_secret_encrypted),
        expires_at=parse_datetime(row.expires_at),
        scopes=row.scopes,
        metadata=dict(row.account_metadata or {}),
        last_metrics_refresh=parse_datetime(row.last_metrics_refresh),
        created_at=parse_datetime(row.created_at),
        updated_at=parse_datetime(row.updated_at),
    )


class CredentialStore:
    """Row-level CRUD over social_accounts; every call runs in its own session."""

    def __init__(self, session_factory: async_sessionmaker) -> None:
        self.session_factory = session_factory

    async def _find(self, db: AsyncSession, user_id: str, platform: str) -> Optional[SocialAccount]:
        result = await db.execute(
            select(SocialAccount).where(
                SocialAccount.user_id == user_id,
                SocialAccount.platform == platform,
            )
        )
        return result.scalar_one_or_none()

    async def get(self, user_id: str, platform: str) -> Optional[SocialAccountRecord]:
        async with self.session_factory() as db:
            row = await self._find(db, user_id, platform)
            return to_record(row) if row else None

    async def get_by_id(self, account_id: str) -> Optional[SocialAccountRecord]:
        async with self.session_factory() as db:
            row = await db.get(SocialAccount, account_id)
            return to_record(row) if row else None

    @staticmethod
    def _apply(
        row: SocialAccount,
        tokens: SocialTokens,
        platform_user_id: Optional[str],
        platform_username: Optional[str],
        metadata: Optional[Dict[str, Any]],
    ) -> None:
        row.access_token_encrypted = encrypt_token(tokens.access_token)
        # A refresh response without a refresh token keeps the stored one.
        if tokens.refresh_token:
            row.refresh_token_encrypted = encrypt_token(tokens.refresh_token)
        if tokens.token_secret:
            row.token_secret_encrypted = encrypt_token(tokens.token_secret)
        row.expires_at = tokens.expires_at
        if tokens.scopes:
            row.scopes = tokens.scopes
        if platform_user_id:
            row.platform_user_id = platform_user_id
        if platform_username:
            row.platform_username = platform_username
        if metadata:
            merged = dict(row.account_metadata or {})
            merged.update(metadata)
            row.account_metadata = merged
        row.updated_at = datetime.now(timezone.utc)

    async def upsert(
        self,
        user_id: str,
        platform: str,
        tokens: SocialTokens,
        *,
        platform_user_id: Optional[str] = None,
        platform_username: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> SocialAccountRecord:
        """Create or update the (user, platform) row with freshly obtained tokens."""
        if not tokens.access_token:
            raise ValueError("Cannot store a social account without an access token")

        try:
            return await self._write(user_id, platform, tokens, platform_user_id, platform_username, metadata)
        except IntegrityError:
            # Lost the insert race on (user_id, platform); the retry finds the row and updates it.
            logger.info("Concurrent insert for %s/%s; retrying as update", user_id, platform)
            return await self._write(user_id, platform, tokens, platform_user_id, platform_username, metadata)

    async def _write(
        self,
        user_id: str,
        platform: str,
        tokens: SocialTokens,
        platform_user_id: Optional[str],
        platform_username: Optional[str],
        metadata: Optional[Dict[str, Any]],
    ) -> SocialAccountRecord:
        async with self.session_factory() as db:
            row = await self._find(db, user_id, platform)
            if row is None:
                row = SocialAccount(
                    id=str(uuid.uuid4()),
                    user_id=user_id,
                    platform=platform,
                    account_metadata={},
                )
                db.add(row)
            self._apply(row, tokens, platform_user_id, platform_username, metadata)
            await db.commit()
            await db.refresh(row)
            logger.info(
                "Stored %s credentials for user %s (account %s, expires_at=%s)",
                platform,
                user_id,
                row.id,
                row.expires_at,
            )
            return to_record(row)

    async def delete(self, user_id: str, platform: str) -> bool:
        async with self.session_factory() as db:
            row = await self._find(db, user_id, platform)
            if row is None:
                return False
            await db.delete(row)
            await db.commit()
        logger.info("Disconnected %s account for user %s", platform, user_id)
        return True

    async def list_for_user(self, user_id: str) -> List[SocialAccountRecord]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(SocialAccount)
                .where(SocialAccount.user_id == user_id)
                .order_by(SocialAccount.platform)
            )
            return [to_record(row) for row in result.scalars().all()]

    async def list_all(self, platforms: Optional[Iterable[str]] = None) -> List[SocialAccountRecord]:
        query = select(SocialAccount).order_by(SocialAccount.created_at)
        if platforms is not None:
            query = query.where(SocialAccount.platform.in_(list(platforms)))
        async with self.session_factory() as db:
            result = await db.execute(query)
            return [to_record(row) for row in result.scalars().all()]

    async def update_metadata(self, account_id: str, patch: Dict[str, Any]) -> bool:
        async with self.session_factory() as db:
            row = await db.get(SocialAccount, account_id)
            if row is None:
                return False
            merged = dict(row.account_metadata or {})
            merged.update(patch)
            row.account_metadata = merged
            username = patch.get("username")
            if username:
                row.platform_username = username
            await db.commit()
        return True

    async def mark_metrics_refreshed(self, account_id: str, when: Optional[datetime] = None) -> None:
        async with self.session_factory() as db:
            row = await db.get(SocialAccount, account_id)
            if row is None:
                return
            row.last_metrics_refresh = when or datetime.now(timezone.utc)
            await db.commit()
