"""PKCE (RFC 7636) and CSRF state helpers."""

import base64
import hashlib
import secrets


def generate_code_verifier() -> str:
    """Return a 43+ char url-safe verifier."""
    return secrets.token_urlsafe(64)[:128]


def code_challenge_s256(code_verifier: str) -> str:
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def generate_state() -> str:
    return secrets.token_hex(16)


def generate_login_id() -> str:
    return secrets.token_hex(8)


def compose_state(state: str, login_id: str) -> str:
    return f"{state}.{login_id}"


def split_state(composite: str):
    """Return (random_part, login_id); login_id is None when the state has no suffix."""
    if not composite or "." not in composite:
        return composite, None
    random_part, login_id = composite.rsplit(".", 1)
    return random_part, login_id or None
