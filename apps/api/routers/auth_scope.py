"""Identity dependencies: the session system is external and hands us a signed session token."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from services.session_token import decode_session_token


SESSION_COOKIE_NAME = "spc_session"

auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None


def _context_from_token(token: str) -> AuthContext:
    claims = decode_session_token(token)
    return AuthContext(user_id=claims.user_id, email=claims.email)


def _session_token(request: Request, credentials: Optional[HTTPAuthorizationCredentials]) -> Optional[str]:
    if credentials and credentials.scheme.lower() == "bearer" and credentials.credentials:
        return credentials.credentials
    return request.cookies.get(SESSION_COOKIE_NAME) or None


async def get_auth_context(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve the authenticated user from a Bearer token or the session cookie."""
    token = _session_token(request, credentials)
    if not token:
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        return _context_from_token(token)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc


async def get_optional_auth_context(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> Optional[AuthContext]:
    """Browser redirect routes treat a missing or invalid session as anonymous."""
    token = _session_token(request, credentials)
    if not token:
        return None
    try:
        return _context_from_token(token)
    except ValueError:
        return None
