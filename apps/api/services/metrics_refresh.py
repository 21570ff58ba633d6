"""
Batch metrics refresh across every stored account.

Each account is processed independently; one failing account is recorded
in the results and the batch moves on.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional

from services.connectors.providers import ConnectorServices
from services.connectors.types import ConnectorError, SocialAccountRecord

logger = logging.getLogger(__name__)


def batch_cache_key(account_id: str) -> str:
    return f"cron:{account_id}"


async def refresh_account(services: ConnectorServices, account: SocialAccountRecord) -> Dict[str, Any]:
    result: Dict[str, Any] = {"account_id": account.id, "platform": account.platform, "success": False}

    tokens = await services.lifecycle.ensure_valid_tokens(account.user_id, account.platform)
    if tokens is None:
        result["error"] = "reconnect_required"
        return result

    connector = services.connector(account.platform)
    metrics = await services.metrics_cache.get_metrics(
        connector,
        tokens,
        cache_key=batch_cache_key(account.id),
    )
    if metrics.is_error:
        result["error"] = "metrics_unavailable"
        return result
    if metrics.cache is not None and metrics.cache.expired:
        # Stale cache data is not worth a new snapshot.
        result["error"] = "upstream_unavailable"
        return result

    now = connector.now()
    snapshot_id = await services.metrics_store.store_snapshot(account, metrics, captured_at=now)
    info = metrics.account_info
    await services.credentials.update_metadata(
        account.id,
        {
            "username": info.username or account.platform_username,
            "name": info.display_name or info.username,
            "profile_image_url": info.profile_image_url,
            "followers_count": info.followers,
            "last_metrics_refresh": now.isoformat(),
        },
    )
    await services.credentials.mark_metrics_refreshed(account.id, now)

    result.update(success=True, metrics_stored=snapshot_id, followers=info.followers)
    return result


async def refresh_all_accounts(
    services: ConnectorServices,
    platforms: Optional[Iterable[str]] = None,
) -> Dict[str, Any]:
    accounts = await services.credentials.list_all(platforms=platforms)
    logger.info("[cron] Starting metrics refresh for %d accounts", len(accounts))

    results: List[Dict[str, Any]] = []
    for account in accounts:
        try:
            results.append(await refresh_account(services, account))
        except (ConnectorError, ValueError, KeyError, TypeError) as exc:
            logger.error("[cron] Account %s (%s) failed: %s", account.id, account.platform, exc)
            results.append(
                {
                    "account_id": account.id,
                    "platform": account.platform,
                    "success": False,
                    "error": str(exc) or type(exc).__name__,
                }
            )
        except Exception as exc:
            logger.exception("[cron] Unexpected failure for account %s", account.id)
            results.append(
                {
                    "account_id": account.id,
                    "platform": account.platform,
                    "success": False,
                    "error": type(exc).__name__,
                }
            )

    succeeded = sum(1 for item in results if item["success"])
    failed = len(results) - succeeded
    logger.info("[cron] Metrics refresh finished. Success: %d, Failed: %d", succeeded, failed)
    return {
        "processed": len(results),
        "succeeded": succeeded,
        "failed": failed,
        "results": results,
    }

