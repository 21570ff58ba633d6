"""Instagram Basic Display connector (no PKCE, long-lived tokens refreshed in place)."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from services.connectors.base import BasePlatformConnector
from services.connectors.types import (
    AccountInfo,
    OAuthExchangeError,
    PlatformIdentity,
    SocialMetrics,
    SocialPost,
    SocialTokens,
    TokenRefreshError,
    UpstreamAPIError,
    parse_datetime,
)

logger = logging.getLogger(__name__)

GRAPH_API = "https://graph.instagram.com"


class InstagramConnector(BasePlatformConnector):
    platform = "instagram"
    authorize_url = "https://api.instagram.com/oauth/authorize"
    token_url = "https://api.instagram.com/oauth/access_token"
    long_lived_token_url = f"{GRAPH_API}/access_token"
    refresh_url = f"{GRAPH_API}/refresh_access_token"
    scopes = "user_profile,user_media"
    supports_pkce = False

    async def exchange_code_for_tokens(self, code: str, code_verifier: Optional[str] = None) -> SocialTokens:
        if not code:
            raise OAuthExchangeError("Authorization code is missing")
        client_id, client_secret, redirect_uri = self.credentials

        short_lived = await self._token_request(
            OAuthExchangeError,
            data={
                "client_id": client_id,
                "client_secret": client_secret,
                "grant_type": "authorization_code",
                "redirect_uri": redirect_uri,
                "code": code,
            },
        )
        # Short-lived tokens last about an hour; swap for the 60-day token before storing.
        long_lived = await self._token_request(
            OAuthExchangeError,
            method="GET",
            url=self.long_lived_token_url,
            params={
                "grant_type": "ig_exchange_token",
                "client_secret": client_secret,
                "access_token": short_lived["access_token"],
            },
        )
        logger.info("Instagram long-lived token obtained (expires_in=%s)", long_lived.get("expires_in"))
        tokens = self._tokens_from_response(long_lived, scopes=self.scopes)
        tokens.refresh_token = None
        return tokens

    def refresh_credential(self, tokens: SocialTokens) -> Optional[str]:
        # Long-lived tokens refresh themselves; there is no separate refresh token.
        return tokens.access_token or None

    async def refresh_tokens(self, refresh_token: str) -> SocialTokens:
        if not refresh_token:
            raise TokenRefreshError("Access token is missing")
        payload = await self._token_request(
            TokenRefreshError,
            method="GET",
            url=self.refresh_url,
            params={"grant_type": "ig_refresh_token", "access_token": refresh_token},
        )
        tokens = self._tokens_from_response(payload, scopes=self.scopes)
        tokens.refresh_token = None
        return tokens

    async def _get_user(self, access_token: str) -> Dict[str, Any]:
        user = await self._api_get(
            f"{GRAPH_API}/me",
            params={"fields": "id,username,account_type,media_count", "access_token": access_token},
        )
        if not user.get("id"):
            raise UpstreamAPIError("Instagram user payload missing id", 200, str(user)[:500])
        return user

    async def _get_media(self, access_token: str) -> List[Dict[str, Any]]:
        payload = await self._api_get(
            f"{GRAPH_API}/me/media",
            params={
                "fields": "id,caption,media_type,media_url,permalink,thumbnail_url,timestamp,username",
                "access_token": access_token,
            },
        )
        return list(payload.get("data") or [])

    async def fetch_identity(self, tokens: SocialTokens) -> PlatformIdentity:
        user = await self._get_user(tokens.access_token)
        return PlatformIdentity(
            platform_user_id=str(user["id"]),
            username=user.get("username") or str(user["id"]),
            display_name=user.get("username"),
            metadata={
                "account_type": user.get("account_type"),
                "media_count": user.get("media_count"),
            },
        )

    async def fetch_metrics(self, tokens: SocialTokens, scope: Optional[str] = None) -> SocialMetrics:
        access_token = tokens.access_token
        user = await self._cached(scope, "profile", lambda: self._get_user(access_token))
        media = await self._cached(scope, "items", lambda: self._get_media(access_token))

        # Basic Display exposes neither follower counts nor engagement numbers.
        posts = [
            SocialPost(
                id=str(item.get("id")),
                text=item.get("caption") or "",
                image_url=item.get("media_url") or item.get("thumbnail_url"),
                created_at=parse_datetime(item.get("timestamp")),
                metrics={"likes": 0, "comments": 0, "shares": 0, "impressions": 0},
            )
            for item in media
        ]
        start, end = self.metrics_period()
        return SocialMetrics(
            account_info=AccountInfo(
                username=user.get("username") or "",
                display_name=user.get("username") or "",
                followers=0,
            ),
            posts=posts,
            period_start=start,
            period_end=end,
        )
