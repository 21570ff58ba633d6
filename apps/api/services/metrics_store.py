"""
Daily metrics snapshots: the durable tier of the metrics read path and the
history behind the metrics trend endpoint.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.future import select

from models.social_metrics import SocialMetricsSnapshot
from services.connectors.types import (
    AccountInfo,
    SocialAccountRecord,
    SocialMetrics,
    parse_datetime,
)

logger = logging.getLogger(__name__)


def aggregate_metrics(metrics: SocialMetrics) -> Dict[str, Any]:
    """Collapse a metrics read into the columns stored per snapshot."""
    posts = metrics.posts
    followers = int(metrics.account_info.followers or 0)
    total_likes = sum(int(post.metrics.get("likes") or 0) for post in posts)
    total_comments = sum(
        int(post.metrics.get("comments") or post.metrics.get("replies") or 0) for post in posts
    )
    total_views = sum(
        int(post.metrics.get("views") or post.metrics.get("impressions") or 0) for post in posts
    )
    engagement_rate = ((total_likes + total_comments) / followers * 100) if followers > 0 else 0.0
    count = len(posts)
    return {
        "followers": followers,
        "engagement_rate": round(engagement_rate, 4),
        "total_posts": count,
        "total_views": total_views,
        "avg_likes": (total_likes / count) if count else 0.0,
        "avg_comments": (total_comments / count) if count else 0.0,
    }


def snapshot_to_dict(snapshot: SocialMetricsSnapshot) -> Dict[str, Any]:
    captured = parse_datetime(snapshot.captured_at)
    return {
        "id": snapshot.id,
        "platform": snapshot.platform,
        "followers": snapshot.followers or 0,
        "engagementRate": snapshot.engagement_rate or 0.0,
        "totalPosts": snapshot.total_posts or 0,
        "totalViews": snapshot.total_views or 0,
        "avgLikes": snapshot.avg_likes or 0.0,
        "avgComments": snapshot.avg_comments or 0.0,
        "capturedAt": captured.isoformat() if captured else None,
    }


class MetricsStore:
    def __init__(self, session_factory: async_sessionmaker) -> None:
        self.session_factory = session_factory

    async def store_snapshot(
        self,
        account: SocialAccountRecord,
        metrics: SocialMetrics,
        captured_at: Optional[datetime] = None,
    ) -> str:
        """Write today's snapshot for an account, replacing one already captured that UTC day."""
        captured_at = captured_at or datetime.now(timezone.utc)
        day_start = captured_at.replace(hour=0, minute=0, second=0, microsecond=0)
        values = aggregate_metrics(metrics)
        raw = metrics.to_dict(include_cache=False)

        async with self.session_factory() as db:
            result = await db.execute(
                select(SocialMetricsSnapshot)
                .where(
                    SocialMetricsSnapshot.account_id == account.id,
                    SocialMetricsSnapshot.captured_at >= day_start,
                    SocialMetricsSnapshot.captured_at < day_start + timedelta(days=1),
                )
                .order_by(SocialMetricsSnapshot.captured_at.desc())
                .limit(1)
            )
            snapshot = result.scalar_one_or_none()
            if snapshot is None:
                snapshot = SocialMetricsSnapshot(account_id=account.id, platform=account.platform)
                db.add(snapshot)
            for key, value in values.items():
                setattr(snapshot, key, value)
            snapshot.raw_data = raw
            snapshot.captured_at = captured_at
            await db.commit()
            await db.refresh(snapshot)
            logger.info(
                "Stored %s metrics snapshot %s for account %s (followers=%s)",
                account.platform,
                snapshot.id,
                account.id,
                values["followers"],
            )
            return snapshot.id

    async def get_latest(
        self,
        account_id: str,
        max_age_days: int = 1,
        now: Optional[datetime] = None,
    ) -> Optional[SocialMetricsSnapshot]:
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=max_age_days)
        async with self.session_factory() as db:
            result = await db.execute(
                select(SocialMetricsSnapshot)
                .where(
                    SocialMetricsSnapshot.account_id == account_id,
                    SocialMetricsSnapshot.captured_at >= cutoff,
                )
                .order_by(SocialMetricsSnapshot.captured_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def history(self, account_id: str, days: int = 30) -> List[SocialMetricsSnapshot]:
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        async with self.session_factory() as db:
            result = await db.execute(
                select(SocialMetricsSnapshot)
                .where(
                    SocialMetricsSnapshot.account_id == account_id,
                    SocialMetricsSnapshot.captured_at >= cutoff,
                )
                .order_by(SocialMetricsSnapshot.captured_at.desc())
            )
            return list(result.scalars().all())


class DatabaseMetricsTier:
    """Durable tier: serves a recent daily snapshot instead of calling the platform API."""

    def __init__(self, credentials, store: MetricsStore, max_age_days: int = 1) -> None:
        self.credentials = credentials
        self.store = store
        self.max_age_days = max_age_days

    async def load(
        self,
        user_id: str,
        platform: str,
        now: datetime,
        period_days: int,
    ) -> Optional[Tuple[SocialMetrics, float]]:
        account = await self.credentials.get(user_id, platform)
        if account is None:
            return None
        snapshot = await self.store.get_latest(account.id, self.max_age_days, now=now)
        if snapshot is None:
            return None

        metadata = account.metadata or {}
        username = account.platform_username or metadata.get("username") or ""
        following = (snapshot.raw_data or {}).get("accountInfo", {}).get("following")
        # Daily aggregates carry no per-post detail.
        metrics = SocialMetrics(
            account_info=AccountInfo(
                username=username,
                display_name=metadata.get("name") or username,
                followers=int(snapshot.followers or 0),
                following=following,
                profile_image_url=metadata.get("profile_image_url"),
            ),
            posts=[],
            period_start=now - timedelta(days=period_days),
            period_end=now,
        )
        captured = parse_datetime(snapshot.captured_at) or now
        return metrics, captured.timestamp()

    async def save(
        self,
        user_id: str,
        platform: str,
        metrics: SocialMetrics,
        captured_at: Optional[datetime] = None,
    ) -> None:
        account = await self.credentials.get(user_id, platform)
        if account is None:
            return
        await self.store.store_snapshot(account, metrics, captured_at=captured_at)
