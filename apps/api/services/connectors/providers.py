"""Connector registry and the wiring of stores, caches and orchestrators behind the routers."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Type

import httpx
from sqlalchemy.ext.asyncio import async_sessionmaker

from config import platform_configured, settings
from services.cache import CacheBackend, build_cache_backend
from services.connectors.base import BasePlatformConnector
from services.connectors.instagram import InstagramConnector
from services.connectors.twitter import TwitterConnector
from services.connectors.types import SUPPORTED_PLATFORMS, UnsupportedPlatformError
from services.connectors.youtube import YouTubeConnector
from services.credential_store import CredentialStore
from services.metrics_cache import MetricsCache
from services.metrics_store import DatabaseMetricsTier, MetricsStore
from services.oauth_handshake import (
    DatabaseHandshakeStore,
    HandshakeStore,
    InMemoryHandshakeStore,
    OAuthHandshakeOrchestrator,
)
from services.token_lifecycle import TokenLifecycleManager

logger = logging.getLogger(__name__)

CONNECTOR_CLASSES: Dict[str, Type[BasePlatformConnector]] = {
    "twitter": TwitterConnector,
    "youtube": YouTubeConnector,
    "instagram": InstagramConnector,
}


def get_connector_class(platform: str) -> Type[BasePlatformConnector]:
    try:
        return CONNECTOR_CLASSES[(platform or "").strip().lower()]
    except KeyError:
        raise UnsupportedPlatformError(f"Unsupported platform: {platform}") from None


def connector_capabilities() -> Dict[str, Dict[str, bool]]:
    return {
        platform: {
            "configured": platform_configured(platform),
            "pkce": CONNECTOR_CLASSES[platform].supports_pkce,
        }
        for platform in SUPPORTED_PLATFORMS
    }


@dataclass
class ConnectorServices:
    """One set of collaborators shared by every request of a process."""

    session_factory: async_sessionmaker
    cache: CacheBackend
    handshake_store: HandshakeStore
    transport: Optional[httpx.AsyncBaseTransport] = None
    clock: Callable[[], float] = time.time
    durable_metrics: bool = True
    _connectors: Dict[str, BasePlatformConnector] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        self.credentials = CredentialStore(self.session_factory)
        self.metrics_store = MetricsStore(self.session_factory)
        durable = (
            DatabaseMetricsTier(self.credentials, self.metrics_store, settings.METRICS_DB_MAX_AGE_DAYS)
            if self.durable_metrics
            else None
        )
        self.metrics_cache = MetricsCache(self.cache, durable=durable, clock=self.clock)
        self.lifecycle = TokenLifecycleManager(self.credentials, self.connector)
        self.orchestrator = OAuthHandshakeOrchestrator(
            self.handshake_store,
            self.credentials,
            self.connector,
            frontend_base_url=settings.FRONTEND_BASE_URL,
            ttl_seconds=settings.OAUTH_SESSION_TTL_SECONDS,
            clock=self.clock,
        )

    def connector(self, platform: str) -> BasePlatformConnector:
        key = (platform or "").strip().lower()
        connector = self._connectors.get(key)
        if connector is None:
            connector_cls = get_connector_class(key)
            connector = connector_cls(
                cache=self.cache,
                metrics_cache=self.metrics_cache,
                transport=self.transport,
                clock=self.clock,
            )
            self._connectors[key] = connector
        return connector

    async def aclose(self) -> None:
        close = getattr(self.cache, "aclose", None)
        if close is not None:
            await close()


def build_services(
    session_factory: Optional[async_sessionmaker] = None,
    *,
    cache: Optional[CacheBackend] = None,
    handshake_store: Optional[HandshakeStore] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    clock: Callable[[], float] = time.time,
    durable_metrics: Optional[bool] = None,
) -> ConnectorServices:
    if session_factory is None:
        from database import async_session_maker

        session_factory = async_session_maker

    if handshake_store is None:
        backend = (settings.OAUTH_SESSION_BACKEND or "database").strip().lower()
        ttl = settings.OAUTH_SESSION_TTL_SECONDS
        if backend == "memory":
            handshake_store = InMemoryHandshakeStore(ttl_seconds=ttl, clock=clock)
        else:
            handshake_store = DatabaseHandshakeStore(session_factory, ttl_seconds=ttl, clock=clock)

    return ConnectorServices(
        session_factory=session_factory,
        cache=cache if cache is not None else build_cache_backend(),
        handshake_store=handshake_store,
        transport=transport,
        clock=clock,
        durable_metrics=settings.METRICS_DURABLE_TIER_ENABLED if durable_metrics is None else durable_metrics,
    )


_services: Optional[ConnectorServices] = None


def get_services() -> ConnectorServices:
    """FastAPI dependency; tests replace it through ``app.dependency_overrides``."""
    global _services
    if _services is None:
        _services = build_services()
        logger.info(
            "Connector services ready (cache=%s, handshake store=%s)",
            type(_services.cache).__name__,
            type(_services.handshake_store).__name__,
        )
    return _services


async def reset_services() -> None:
    global _services
    if _services is not None:
        await _services.aclose()
    _services = None
