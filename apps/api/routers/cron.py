"""
Scheduled job endpoints, called by an external scheduler with the shared cron secret.
"""

import hmac
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.security import HTTPAuthorizationCredentials

from config import settings
from routers.auth_scope import auth_scheme
from services.connectors.providers import ConnectorServices, get_services
from services.metrics_refresh import refresh_all_accounts

router = APIRouter()


def require_cron_secret(
    key: Optional[str] = Query(None),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme),
) -> None:
    expected = (settings.CRON_SECRET or "").strip()
    if not expected:
        raise HTTPException(status_code=503, detail="CRON_SECRET is not configured.")
    supplied = credentials.credentials if credentials else key
    if not supplied or not hmac.compare_digest(supplied.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Invalid cron secret.")


@router.get("/refresh-metrics", dependencies=[Depends(require_cron_secret)])
async def refresh_metrics(
    platform: Optional[str] = Query(None),
    services: ConnectorServices = Depends(get_services),
):
    """Refresh and snapshot metrics for every connected account."""
    result = await refresh_all_accounts(services, platforms=[platform] if platform else None)
    return {
        "success": True,
        "message": (
            f"Processed {result['processed']} accounts. "
            f"Success: {result['succeeded']}, Failed: {result['failed']}"
        ),
        **result,
    }
