"""Platform connectors and their registry."""

from services.connectors.providers import (
    CONNECTOR_CLASSES,
    ConnectorServices,
    build_services,
    connector_capabilities,
    get_connector_class,
    get_services,
)
from services.connectors.types import (
    ConfigurationError,
    ConnectorError,
    OAuthExchangeError,
    PlatformKey,
    SocialMetrics,
    SocialTokens,
    TokenRefreshError,
    UnsupportedPlatformError,
    UpstreamAPIError,
)

__all__ = [
    "CONNECTOR_CLASSES",
    "ConfigurationError",
    "ConnectorError",
    "ConnectorServices",
    "OAuthExchangeError",
    "PlatformKey",
    "SocialMetrics",
    "SocialTokens",
    "TokenRefreshError",
    "UnsupportedPlatformError",
    "UpstreamAPIError",
    "build_services",
    "connector_capabilities",
    "get_connector_class",
    "get_services",
]
