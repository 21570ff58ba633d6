"""
Social account connection and metrics endpoints.

The login and callback routes are browser redirects and never return error
bodies; failures become ``?error=<code>`` on the frontend redirect. The JSON
routes return ``{"error": ...}`` with an HTTP status.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse

from config import settings
from routers.auth_scope import AuthContext, get_auth_context, get_optional_auth_context
from routers.rate_limit import rate_limit
from services.connectors.providers import ConnectorServices, get_services
from services.connectors.types import (
    ConfigurationError,
    SocialAccountRecord,
    UnsupportedPlatformError,
    preview_secret,
)
from services.metrics_store import snapshot_to_dict
from services.oauth_handshake import cookie_name

logger = logging.getLogger(__name__)

router = APIRouter()

ZERO_DATA_WARNING = (
    "The platform returned no followers and no posts. The account may be new, "
    "private, or missing permissions."
)


def _error(status_code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


def _redirect(url: str) -> RedirectResponse:
    return RedirectResponse(url, status_code=307)


def _clear_handshake_cookie(response: RedirectResponse, platform: str) -> None:
    response.delete_cookie(cookie_name(platform), path="/", secure=True, httponly=True, samesite="none")


def _secret_debug(value: Optional[str]) -> Dict[str, Any]:
    return {"present": bool(value), "length": len(value or ""), "preview": preview_secret(value)}


def _account_debug(services: ConnectorServices, account: SocialAccountRecord) -> Dict[str, Any]:
    connector = services.connector(account.platform)
    return {
        "id": account.id,
        "platform": account.platform,
        "platformUserId": account.platform_user_id,
        "platformUsername": account.platform_username,
        "expiresAt": account.expires_at.isoformat() if account.expires_at else None,
        "isExpired": connector.is_token_expired(account.expires_at),
        "scopes": account.scopes,
        "accessToken": _secret_debug(account.access_token),
        "refreshToken": _secret_debug(account.refresh_token),
        "metadataKeys": sorted(account.metadata.keys()),
        "lastMetricsRefresh": account.last_metrics_refresh.isoformat() if account.last_metrics_refresh else None,
    }


@router.get("/login/{platform}")
async def start_platform_login(
    platform: str,
    reconnect: bool = Query(False),
    auth: Optional[AuthContext] = Depends(get_optional_auth_context),
    services: ConnectorServices = Depends(get_services),
):
    """Begin the OAuth handshake and redirect the browser to the provider."""
    orchestrator = services.orchestrator
    if auth is None:
        return _redirect(orchestrator.login_redirect())

    try:
        start = await orchestrator.begin(platform, auth.user_id, reconnect=reconnect)
    except UnsupportedPlatformError:
        return _redirect(orchestrator.error_redirect("unsupported_platform", platform))
    except ConfigurationError as exc:
        logging.getLogger("config").critical("%s", exc)
        return _redirect(orchestrator.error_redirect("not_configured"))
    except Exception:
        logger.exception("Could not start %s login for user %s", platform, auth.user_id)
        return _redirect(orchestrator.error_redirect("login_failed"))

    response = _redirect(start.authorization_url)
    response.set_cookie(
        cookie_name(platform),
        start.cookie_value,
        max_age=settings.OAUTH_SESSION_TTL_SECONDS,
        path="/",
        secure=True,
        httponly=True,
        samesite="none",
    )
    return response


@router.get("/callback/{platform}")
async def complete_platform_login(
    platform: str,
    request: Request,
    auth: Optional[AuthContext] = Depends(get_optional_auth_context),
    services: ConnectorServices = Depends(get_services),
):
    """Provider redirect target; always answers with a redirect."""
    outcome = await services.orchestrator.complete(
        platform,
        dict(request.query_params),
        request.cookies.get(cookie_name(platform)),
        user_id=auth.user_id if auth else None,
    )
    response = _redirect(outcome.redirect_url)
    _clear_handshake_cookie(response, platform)
    return response


@router.get(
    "/metrics/{platform}",
    dependencies=[Depends(rate_limit("social_metrics", settings.METRICS_RATE_LIMIT_PER_MINUTE))],
)
async def get_platform_metrics(
    platform: str,
    debug: bool = Query(False),
    cache_key: Optional[str] = Query(None, alias="cacheKey", max_length=128),
    auth: AuthContext = Depends(get_auth_context),
    services: ConnectorServices = Depends(get_services),
):
    """Metrics for the caller's connected account, served through the cache tiers."""
    try:
        connector = services.connector(platform)
    except UnsupportedPlatformError as exc:
        return _error(400, str(exc))

    try:
        tokens = await services.lifecycle.ensure_valid_tokens(auth.user_id, connector.platform)
    except ConfigurationError as exc:
        logging.getLogger("config").critical("%s", exc)
        return _error(503, f"{connector.platform} is not configured on this server")
    if tokens is None:
        return _error(
            404,
            f"No connected {connector.platform} account with valid tokens. Please reconnect.",
            reconnect=True,
        )

    metrics = await services.metrics_cache.get_metrics(
        connector,
        tokens,
        user_id=auth.user_id,
        # Custom keys stay inside the caller's namespace.
        cache_key=f"{auth.user_id}:{cache_key}" if cache_key else None,
    )
    payload = metrics.to_dict()
    if not metrics.is_error and not metrics.account_info.followers and not metrics.posts:
        payload["_warning"] = ZERO_DATA_WARNING

    if debug:
        account = await services.credentials.get(auth.user_id, connector.platform)
        payload["debug"] = {"account": _account_debug(services, account) if account else None}
    return payload


@router.get("/metrics/{platform}/history")
async def get_platform_metrics_history(
    platform: str,
    days: int = Query(30, ge=1, le=365),
    auth: AuthContext = Depends(get_auth_context),
    services: ConnectorServices = Depends(get_services),
):
    """Stored daily snapshots, newest first."""
    try:
        connector = services.connector(platform)
    except UnsupportedPlatformError as exc:
        return _error(400, str(exc))

    account = await services.credentials.get(auth.user_id, connector.platform)
    if account is None:
        return _error(404, f"No connected {connector.platform} account")

    snapshots = await services.metrics_store.history(account.id, days=days)
    return {
        "platform": connector.platform,
        "accountId": account.id,
        "days": days,
        "snapshots": [snapshot_to_dict(snapshot) for snapshot in snapshots],
    }


@router.get("/accounts")
async def list_connected_accounts(
    include_status: bool = Query(False, alias="includeStatus"),
    auth: AuthContext = Depends(get_auth_context),
    services: ConnectorServices = Depends(get_services),
):
    """Connected accounts; ``includeStatus`` checks (and refreshes) tokens live."""
    accounts = await services.credentials.list_for_user(auth.user_id)
    items = []
    for account in accounts:
        if include_status:
            status = await services.lifecycle.check_status(account)
        else:
            try:
                connector = services.connector(account.platform)
            except UnsupportedPlatformError:
                status = "error"
            else:
                status = "expired" if connector.is_token_expired(account.expires_at) else "connected"
        last_updated = account.updated_at or account.created_at
        items.append(
            {
                "id": account.id,
                "platform": account.platform,
                "platformUserId": account.platform_user_id,
                "platformUsername": account.platform_username,
                "status": status,
                "lastUpdated": last_updated.isoformat() if last_updated else None,
            }
        )
    return {"accounts": items}


@router.delete("/accounts")
async def disconnect_account(
    platform: str = Query(...),
    auth: AuthContext = Depends(get_auth_context),
    services: ConnectorServices = Depends(get_services),
):
    try:
        connector = services.connector(platform)
    except UnsupportedPlatformError as exc:
        return _error(400, str(exc))

    deleted = await services.credentials.delete(auth.user_id, connector.platform)
    if not deleted:
        return _error(404, f"No connected {connector.platform} account")
    await services.metrics_cache.invalidate(connector.platform, auth.user_id)
    return {"success": True, "platform": connector.platform}
