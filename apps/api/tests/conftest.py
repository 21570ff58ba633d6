import time
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config import settings
from database import Base
from main import app
import models  # noqa: F401
from routers import rate_limit
from services.cache import InMemoryCacheBackend
from services.connectors.providers import build_services
from services.oauth_handshake import InMemoryHandshakeStore
from services.session_token import create_session_token


FRONTEND = "http://frontend.test"


class FakeClock:
    """Injectable ``time.time`` replacement."""

    def __init__(self, start: Optional[float] = None) -> None:
        self.now = float(start if start is not None else int(time.time()))

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


Handler = Union[Tuple[int, Any], Callable[[httpx.Request], httpx.Response]]


class FakeUpstream:
    """Routes outbound platform calls by method + URL (query ignored) and records them."""

    def __init__(self) -> None:
        self.routes: Dict[Tuple[str, str], Handler] = {}
        self.calls: List[httpx.Request] = []

    def add(self, method: str, url: str, status: int = 200, json: Any = None, handler=None) -> None:
        self.routes[(method.upper(), url)] = handler if handler is not None else (status, json)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        key = (request.method, f"{request.url.scheme}://{request.url.host}{request.url.path}")
        route = self.routes.get(key)
        if route is None:
            return httpx.Response(404, json={"error": f"unrouted {key}"})
        if callable(route):
            return route(request)
        status, body = route
        if isinstance(body, str):
            return httpx.Response(status, text=body)
        return httpx.Response(status, json=body)

    def count(self, method: str, url: str) -> int:
        return sum(
            1
            for request in self.calls
            if request.method == method.upper()
            and f"{request.url.scheme}://{request.url.host}{request.url.path}" == url
        )

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


def auth_headers(user_id: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_session_token(user_id)['token']}"}


def extract_cookie(response: httpx.Response, name: str) -> Optional[str]:
    for header in response.headers.get_list("set-cookie"):
        pair = header.split(";", 1)[0]
        key, _, value = pair.partition("=")
        if key.strip() == name:
            return value.strip().strip('"')
    return None


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture(autouse=True)
def platform_settings(monkeypatch):
    for platform in ("twitter", "youtube", "instagram"):
        prefix = platform.upper()
        monkeypatch.setattr(settings, f"{prefix}_CLIENT_ID", f"{platform}-client-id")
        monkeypatch.setattr(settings, f"{prefix}_CLIENT_SECRET", f"{platform}-client-secret")
        monkeypatch.setattr(settings, f"{prefix}_REDIRECT_URI", f"http://test/social/callback/{platform}")
    monkeypatch.setattr(settings, "FRONTEND_BASE_URL", FRONTEND)
    monkeypatch.setattr(settings, "OAUTH_SESSION_TTL_SECONDS", 600)
    monkeypatch.setattr(settings, "METRICS_DB_MAX_AGE_DAYS", 1)
    monkeypatch.setattr(settings, "CRON_SECRET", "cron-secret-for-tests")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'social.db'}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield maker
    await engine.dispose()


@pytest.fixture
def make_services(session_maker, upstream, clock):
    def _build(durable_metrics: bool = False, handshake_store=None):
        return build_services(
            session_maker,
            cache=InMemoryCacheBackend(clock=clock),
            handshake_store=handshake_store or InMemoryHandshakeStore(ttl_seconds=600, clock=clock),
            transport=upstream.transport,
            clock=clock,
            durable_metrics=durable_metrics,
        )

    return _build


@pytest.fixture
def services(make_services):
    return make_services()


@pytest_asyncio.fixture
async def api_client(services):
    from httpx import ASGITransport, AsyncClient
    from services.connectors.providers import get_services

    app.dependency_overrides[get_services] = lambda: services
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.pop(get_services, None)


# ---- canned platform payloads ----

TWITTER_TOKEN_URL = "https://api.twitter.com/2/oauth2/token"
TWITTER_ME_URL = "https://api.twitter.com/2/users/me"
TWITTER_TWEETS_URL = "https://api.twitter.com/2/users/42/tweets"


def install_twitter(upstream: FakeUpstream, followers: int = 1200) -> None:
    upstream.add(
        "POST",
        TWITTER_TOKEN_URL,
        json={
            "access_token": "abc",
            "refresh_token": "refresh-1",
            "expires_in": 7200,
            "scope": "tweet.read users.read offline.access",
            "token_type": "bearer",
        },
    )
    upstream.add(
        "GET",
        TWITTER_ME_URL,
        json={
            "data": {
                "id": "42",
                "username": "creator",
                "name": "Creator Name",
                "profile_image_url": "https://pbs.twimg.com/creator.jpg",
                "public_metrics": {"followers_count": followers, "following_count": 10},
            }
        },
    )
    upstream.add(
        "GET",
        TWITTER_TWEETS_URL,
        json={
            "data": [
                {
                    "id": "t1",
                    "text": "first",
                    "created_at": "2026-10-01T10:00:00.000Z",
                    "public_metrics": {
                        "impression_count": 900,
                        "retweet_count": 3,
                        "reply_count": 2,
                        "like_count": 40,
                        "quote_count": 1,
                    },
                }
            ],
            "meta": {"result_count": 1},
        },
    )
