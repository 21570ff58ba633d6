"""Connector contracts: token, metrics and identity value objects plus the error taxonomy."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional


PlatformKey = Literal["twitter", "youtube", "instagram"]
SUPPORTED_PLATFORMS = ("twitter", "youtube", "instagram")

TokenStatus = Literal["connected", "expired", "error"]
CacheSource = Literal["memory", "database", "api"]


class ConnectorError(RuntimeError):
    """Base class for platform connector failures."""


class ConfigurationError(ConnectorError):
    """Raised when a platform's OAuth client settings are missing."""


class UnsupportedPlatformError(ConnectorError):
    """Raised for platform keys without a connector."""


class _UpstreamHTTPError(ConnectorError):
    def __init__(self, message: str, status_code: Optional[int] = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class OAuthExchangeError(_UpstreamHTTPError):
    """Authorization code exchange failed (non-2xx or unparsable body)."""


class TokenRefreshError(_UpstreamHTTPError):
    """Token refresh failed (non-2xx or unparsable body)."""


class UpstreamAPIError(_UpstreamHTTPError):
    """Platform data API call failed."""

    RATE_LIMIT_MARKERS = ("rate limit", "too many requests", "ratelimitexceeded", "quotaexceeded")

    @property
    def is_rate_limited(self) -> bool:
        if self.status_code == 429:
            return True
        text = f"{self}{self.body}".lower().replace(" ", "")
        return any(marker.replace(" ", "") in text for marker in self.RATE_LIMIT_MARKERS)


def utc_from_timestamp(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def parse_datetime(value: Any) -> Optional[datetime]:
    """Best-effort conversion of API/DB timestamp values to aware UTC datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        # Millisecond epochs are common in JS-produced rows.
        seconds = value / 1000 if value > 1e11 else value
        return utc_from_timestamp(seconds)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


@dataclass
class SocialTokens:
    access_token: str
    refresh_token: Optional[str] = None
    token_secret: Optional[str] = None
    expires_at: Optional[datetime] = None
    scopes: Optional[str] = None
    success: Optional[bool] = None


@dataclass(frozen=True)
class AuthRequest:
    url: str
    state: str
    code_verifier: Optional[str] = None


@dataclass(frozen=True)
class PlatformIdentity:
    platform_user_id: str
    username: str
    display_name: Optional[str] = None
    profile_image_url: Optional[str] = None
    followers: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def account_metadata(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.display_name or self.username,
            "profile_image_url": self.profile_image_url,
        }
        if self.followers is not None:
            data["followers_count"] = self.followers
        data.update(self.metadata)
        return data


@dataclass
class SocialAccountRecord:
    """Decrypted view of a persisted SocialAccount row."""

    id: str
    user_id: str
    platform: str
    platform_user_id: Optional[str]
    platform_username: Optional[str]
    access_token: str
    refresh_token: Optional[str] = None
    token_secret: Optional[str] = None
    expires_at: Optional[datetime] = None
    scopes: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    last_metrics_refresh: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_tokens(self) -> SocialTokens:
        return SocialTokens(
            access_token=self.access_token,
            refresh_token=self.refresh_token,
            token_secret=self.token_secret,
            expires_at=self.expires_at,
            scopes=self.scopes,
        )


@dataclass
class AccountInfo:
    username: str = ""
    display_name: str = ""
    followers: int = 0
    following: Optional[int] = None
    profile_image_url: Optional[str] = None


@dataclass
class SocialPost:
    id: str
    created_at: Optional[datetime]
    metrics: Dict[str, Any] = field(default_factory=dict)
    text: Optional[str] = None
    image_url: Optional[str] = None


@dataclass
class CacheInfo:
    from_cache: bool
    timestamp: Optional[float] = None
    expired: bool = False
    error: bool = False
    source: Optional[CacheSource] = None
    age: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "fromCache": self.from_cache,
            "timestamp": int(self.timestamp * 1000) if self.timestamp is not None else None,
            "expired": self.expired,
            "error": self.error,
        }
        if self.source is not None:
            data["source"] = self.source
        if self.age is not None:
            data["age"] = round(self.age, 3)
        return data


@dataclass
class SocialMetrics:
    account_info: AccountInfo
    posts: List[SocialPost]
    period_start: datetime
    period_end: datetime
    history: Optional[List[Dict[str, Any]]] = None
    warnings: List[str] = field(default_factory=list)
    cache: Optional[CacheInfo] = None

    @classmethod
    def empty(cls, now: datetime) -> "SocialMetrics":
        return cls(account_info=AccountInfo(), posts=[], period_start=now, period_end=now)

    @property
    def is_error(self) -> bool:
        return bool(self.cache and self.cache.error)

    def to_dict(self, include_cache: bool = True) -> Dict[str, Any]:
        info = self.account_info
        data: Dict[str, Any] = {
            "accountInfo": {
                "username": info.username,
                "displayName": info.display_name,
                "followers": info.followers,
                "following": info.following,
                "profileImageUrl": info.profile_image_url,
            },
            "posts": [
                {
                    "id": post.id,
                    "text": post.text,
                    "imageUrl": post.image_url,
                    "createdAt": _iso(post.created_at),
                    "metrics": dict(post.metrics),
                }
                for post in self.posts
            ],
            "period": {"start": _iso(self.period_start), "end": _iso(self.period_end)},
        }
        if self.history is not None:
            data["history"] = list(self.history)
        if self.warnings:
            data["warnings"] = list(self.warnings)
        if include_cache and self.cache is not None:
            data["_cache"] = self.cache.to_dict()
        return data

    @classmethod
    def from_dict(cls, payload: Dict[str, Any], now: Optional[datetime] = None) -> "SocialMetrics":
        info = payload.get("accountInfo") or {}
        period = payload.get("period") or {}
        now = now or datetime.now(timezone.utc)
        return cls(
            account_info=AccountInfo(
                username=info.get("username") or "",
                display_name=info.get("displayName") or "",
                followers=int(info.get("followers") or 0),
                following=info.get("following"),
                profile_image_url=info.get("profileImageUrl"),
            ),
            posts=[
                SocialPost(
                    id=str(post.get("id")),
                    text=post.get("text"),
                    image_url=post.get("imageUrl"),
                    created_at=parse_datetime(post.get("createdAt")),
                    metrics=dict(post.get("metrics") or {}),
                )
                for post in payload.get("posts") or []
            ],
            period_start=parse_datetime(period.get("start")) or now,
            period_end=parse_datetime(period.get("end")) or now,
            history=payload.get("history"),
            warnings=list(payload.get("warnings") or []),
        )


def token_summary(tokens: SocialTokens) -> Dict[str, Any]:
    """Log-safe description of a token set."""
    return {
        "has_access_token": bool(tokens.access_token),
        "has_refresh_token": bool(tokens.refresh_token),
        "expires_at": _iso(tokens.expires_at),
        "scopes": tokens.scopes,
    }


def preview_secret(value: Optional[str], length: int = 10) -> Optional[str]:
    if not value:
        return None
    return f"{value[:length]}..."
