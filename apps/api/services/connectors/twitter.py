"""Twitter / X OAuth 2.0 (PKCE, confidential client) connector."""

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

API_BASE = "https://api.twitter.com/2"


class TwitterConnector(BasePlatformConnector):
    platform = "twitter"
    authorize_url = "https://twitter.com/i/oauth2/authorize"
    token_url = f"{API_BASE}/oauth2/token"
    scopes = "tweet.read users.read offline.access"
    metrics_period_days = 7
    cache_ttls = {"profile": 5 * 60, "items": 5 * 60, "metrics": 5 * 60, "historical": 5 * 60}

    async def exchange_code_for_tokens(self, code: str, code_verifier: Optional[str] = None) -> SocialTokens:
        if not code:
            raise OAuthExchangeError("Authorization code is missing")
        if not code_verifier:
            raise OAuthExchangeError("Twitter requires the PKCE code verifier")
        client_id, client_secret, redirect_uri = self.credentials

        payload = await self._token_request(
            OAuthExchangeError,
            data={
                "code": code,
                "grant_type": "authorization_code",
                "client_id": client_id,
                "redirect_uri": redirect_uri,
                "code_verifier": code_verifier,
            },
            auth=(client_id, client_secret),
        )
        logger.info("Twitter code exchange succeeded (refresh token issued: %s)", bool(payload.get("refresh_token")))
        return self._tokens_from_response(payload)

    async def refresh_tokens(self, refresh_token: str) -> SocialTokens:
        if not refresh_token:
            raise TokenRefreshError("Refresh token is missing")
        client_id, client_secret, _redirect_uri = self.credentials
        payload = await self._token_request(
            TokenRefreshError,
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": client_id,
            },
            auth=(client_id, client_secret),
        )
        return self._tokens_from_response(payload, previous_refresh_token=refresh_token)

    async def _get_user(self, access_token: str) -> Dict[str, Any]:
        payload = await self._api_get(
            f"{API_BASE}/users/me",
            access_token=access_token,
            params={"user.fields": "profile_image_url,public_metrics"},
        )
        user = payload.get("data")
        if not isinstance(user, dict) or not user.get("id"):
            raise UpstreamAPIError("Twitter user payload missing data", 200, str(payload)[:500])
        return user

    async def _get_tweets(self, access_token: str, twitter_user_id: str) -> List[Dict[str, Any]]:
        payload = await self._api_get(
            f"{API_BASE}/users/{twitter_user_id}/tweets",
            access_token=access_token,
            params={"tweet.fields": "created_at,public_metrics", "max_results": 10},
        )
        # Accounts without tweets return only ``meta``.
        return list(payload.get("data") or [])

    async def fetch_identity(self, tokens: SocialTokens) -> PlatformIdentity:
        user = await self._get_user(tokens.access_token)
        public_metrics = user.get("public_metrics") or {}
        return PlatformIdentity(
            platform_user_id=str(user["id"]),
            username=user.get("username") or str(user["id"]),
            display_name=user.get("name"),
            profile_image_url=user.get("profile_image_url"),
            followers=public_metrics.get("followers_count"),
        )

    async def fetch_metrics(self, tokens: SocialTokens, scope: Optional[str] = None) -> SocialMetrics:
        access_token = tokens.access_token
        user = await self._cached(scope, "profile", lambda: self._get_user(access_token))
        tweets = await self._cached(scope, "items", lambda: self._get_tweets(access_token, str(user["id"])))

        public_metrics = user.get("public_metrics") or {}
        posts = []
        for tweet in tweets:
            counts = tweet.get("public_metrics") or {}
            posts.append(
                SocialPost(
                    id=str(tweet.get("id")),
                    text=tweet.get("text"),
                    created_at=parse_datetime(tweet.get("created_at")),
                    metrics={
                        "impressions": counts.get("impression_count", 0),
                        "retweets": counts.get("retweet_count", 0),
                        "replies": counts.get("reply_count", 0),
                        "likes": counts.get("like_count", 0),
                        "quotes": counts.get("quote_count", 0),
                    },
                )
            )

        start, end = self.metrics_period()
        return SocialMetrics(
            account_info=AccountInfo(
                username=user.get("username") or "",
                display_name=user.get("name") or "",
                followers=int(public_metrics.get("followers_count") or 0),
                following=int(public_metrics.get("following_count") or 0),
                profile_image_url=user.get("profile_image_url"),
            ),
            posts=posts,
            period_start=start,
            period_end=end,
        )
