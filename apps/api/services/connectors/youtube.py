"""YouTube (Google OAuth 2.0 + PKCE) connector with Data API and Analytics API metrics."""

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

DATA_API = "https://www.googleapis.com/youtube/v3"
ANALYTICS_API = "https://youtubeanalytics.googleapis.com/v2/reports"


def _int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


class YouTubeConnector(BasePlatformConnector):
    platform = "youtube"
    authorize_url = "https://accounts.google.com/o/oauth2/v2/auth"
    token_url = "https://oauth2.googleapis.com/token"
    scopes = " ".join(
        [
            "https://www.googleapis.com/auth/youtube.readonly",
            "https://www.googleapis.com/auth/yt-analytics.readonly",
        ]
    )
    cache_ttls = {"profile": 15 * 60, "items": 15 * 60, "metrics": 15 * 60, "historical": 15 * 60}

    def extra_authorize_params(self) -> Dict[str, str]:
        # offline + consent so Google issues a refresh token on every connect.
        return {"access_type": "offline", "prompt": "consent", "include_granted_scopes": "true"}

    async def exchange_code_for_tokens(self, code: str, code_verifier: Optional[str] = None) -> SocialTokens:
        if not code:
            raise OAuthExchangeError("Authorization code is missing")
        client_id, client_secret, redirect_uri = self.credentials
        data = {
            "client_id": client_id,
            "client_secret": client_secret,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": redirect_uri,
        }
        if code_verifier:
            data["code_verifier"] = code_verifier
        payload = await self._token_request(OAuthExchangeError, data=data)
        return self._tokens_from_response(payload)

    async def refresh_tokens(self, refresh_token: str) -> SocialTokens:
        if not refresh_token:
            raise TokenRefreshError("Refresh token is missing")
        client_id, client_secret, _redirect_uri = self.credentials
        payload = await self._token_request(
            TokenRefreshError,
            data={
                "client_id": client_id,
                "client_secret": client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
        )
        # Google omits refresh_token on refresh responses.
        return self._tokens_from_response(payload, previous_refresh_token=refresh_token)

    async def _get_channel(self, access_token: str) -> Dict[str, Any]:
        payload = await self._api_get(
            f"{DATA_API}/channels",
            access_token=access_token,
            params={"part": "snippet,statistics,contentDetails", "mine": "true"},
        )
        items = payload.get("items") or []
        if not items:
            raise UpstreamAPIError("No YouTube channel found for this account", 200, "")
        return items[0]

    async def _get_recent_videos(self, access_token: str, channel: Dict[str, Any]) -> List[Dict[str, Any]]:
        uploads = ((channel.get("contentDetails") or {}).get("relatedPlaylists") or {}).get("uploads")
        if not uploads:
            return []
        playlist = await self._api_get(
            f"{DATA_API}/playlistItems",
            access_token=access_token,
            params={"part": "snippet,contentDetails", "playlistId": uploads, "maxResults": 10},
        )
        playlist_items = playlist.get("items") or []
        video_ids = [
            (item.get("contentDetails") or {}).get("videoId")
            for item in playlist_items
            if (item.get("contentDetails") or {}).get("videoId")
        ]
        if not video_ids:
            return []
        stats = await self._api_get(
            f"{DATA_API}/videos",
            access_token=access_token,
            params={"part": "statistics,snippet", "id": ",".join(video_ids)},
        )
        positions = {
            (item.get("contentDetails") or {}).get("videoId"): (item.get("snippet") or {}).get("position")
            for item in playlist_items
        }
        videos = []
        for video in stats.get("items") or []:
            video = dict(video)
            video["position"] = positions.get(video.get("id"))
            videos.append(video)
        return videos

    async def _get_daily_report(self, access_token: str) -> List[Dict[str, Any]]:
        start, end = self.metrics_period()
        payload = await self._api_get(
            ANALYTICS_API,
            access_token=access_token,
            params={
                "ids": "channel==MINE",
                "startDate": start.date().isoformat(),
                "endDate": end.date().isoformat(),
                "metrics": "views,likes,comments,subscribersGained,subscribersLost",
                "dimensions": "day",
                "sort": "day",
            },
        )
        headers = [column.get("name") for column in payload.get("columnHeaders") or []]
        history = []
        for row in payload.get("rows") or []:
            values = dict(zip(headers, row))
            day = values.pop("day", None)
            history.append({"date": day, "metrics": values})
        return history

    async def fetch_identity(self, tokens: SocialTokens) -> PlatformIdentity:
        channel = await self._get_channel(tokens.access_token)
        snippet = channel.get("snippet") or {}
        statistics = channel.get("statistics") or {}
        return PlatformIdentity(
            platform_user_id=str(channel.get("id")),
            username=snippet.get("customUrl") or snippet.get("title") or str(channel.get("id")),
            display_name=snippet.get("title"),
            profile_image_url=((snippet.get("thumbnails") or {}).get("default") or {}).get("url"),
            followers=_int(statistics.get("subscriberCount")),
        )

    async def fetch_metrics(self, tokens: SocialTokens, scope: Optional[str] = None) -> SocialMetrics:
        access_token = tokens.access_token
        channel = await self._cached(scope, "profile", lambda: self._get_channel(access_token))
        videos = await self._cached(scope, "items", lambda: self._get_recent_videos(access_token, channel))
        warnings: List[str] = []
        history = await self._optional(
            "historical_metrics",
            lambda: self._cached(scope, "historical", lambda: self._get_daily_report(access_token)),
            warnings,
        )

        snippet = channel.get("snippet") or {}
        statistics = channel.get("statistics") or {}
        posts = []
        for video in videos:
            video_snippet = video.get("snippet") or {}
            video_stats = video.get("statistics") or {}
            posts.append(
                SocialPost(
                    id=str(video.get("id")),
                    text=video_snippet.get("title"),
                    image_url=((video_snippet.get("thumbnails") or {}).get("medium") or {}).get("url"),
                    created_at=parse_datetime(video_snippet.get("publishedAt")),
                    metrics={
                        "views": _int(video_stats.get("viewCount")),
                        "likes": _int(video_stats.get("likeCount")),
                        "comments": _int(video_stats.get("commentCount")),
                        "position": video.get("position"),
                    },
                )
            )

        start, end = self.metrics_period()
        return SocialMetrics(
            account_info=AccountInfo(
                username=snippet.get("customUrl") or str(channel.get("id") or ""),
                display_name=snippet.get("title") or "",
                followers=_int(statistics.get("subscriberCount")),
                following=0,
                profile_image_url=((snippet.get("thumbnails") or {}).get("default") or {}).get("url"),
            ),
            posts=posts,
            period_start=start,
            period_end=end,
            history=history,
            warnings=warnings,
        )
