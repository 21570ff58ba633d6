"""
Token encryption at rest (Fernet) and handshake cookie sealing (AES-256-CBC).
"""

import base64
import binascii
import hashlib
import json
import logging
import os
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from config import settings

logger = logging.getLogger(__name__)


def _get_fernet() -> Fernet:
    """Get Fernet instance from encryption key."""
    key = settings.ENCRYPTION_KEY

    # If key is not 32 bytes, derive a key using PBKDF2
    if len(key) != 32:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=b"social_connect_token_salt",
            iterations=100000,
        )
        key = base64.urlsafe_b64encode(kdf.derive(key.encode()))
    else:
        key = base64.urlsafe_b64encode(key.encode())

    return Fernet(key)


def encrypt_token(token: str) -> str:
    """
    Encrypt a token for secure storage.

    Args:
        token: Plain text token

    Returns:
        Base64-encoded encrypted token
    """
    fernet = _get_fernet()
    encrypted = fernet.encrypt(token.encode())
    return encrypted.decode()


def decrypt_token(encrypted_token: str) -> str:
    """
    Decrypt an encrypted token.

    Args:
        encrypted_token: Base64-encoded encrypted token

    Returns:
        Plain text token
    """
    fernet = _get_fernet()
    decrypted = fernet.decrypt(encrypted_token.encode())
    return decrypted.decode()


def _cookie_key() -> bytes:
    # Any key material is stretched to exactly 32 bytes for AES-256.
    return hashlib.sha256(settings.COOKIE_ENCRYPTION_KEY.encode()).digest()


def encrypt_cookie_payload(data: Dict[str, Any]) -> str:
    """Seal a JSON payload as ``<iv base64>:<ciphertext base64>``."""
    iv = os.urandom(16)
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    plaintext = padder.update(json.dumps(data).encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(_cookie_key()), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(plaintext) + encryptor.finalize()
    return f"{base64.b64encode(iv).decode()}:{base64.b64encode(ciphertext).decode()}"


def decrypt_cookie_payload(value: Optional[str]) -> Optional[Dict[str, Any]]:
    """Open a sealed cookie; returns None for absent, malformed or tampered values."""
    if not value:
        return None
    iv_b64, _, ciphertext_b64 = value.partition(":")
    if not iv_b64 or not ciphertext_b64:
        return None
    try:
        iv = base64.b64decode(iv_b64, validate=True)
        ciphertext = base64.b64decode(ciphertext_b64, validate=True)
        decryptor = Cipher(algorithms.AES(_cookie_key()), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        plaintext = unpadder.update(padded) + unpadder.finalize()
        payload = json.loads(plaintext.decode("utf-8"))
    except (binascii.Error, ValueError, UnicodeDecodeError) as exc:
        logger.warning("Could not open OAuth cookie: %s", exc)
        return None
    return payload if isinstance(payload, dict) else None
