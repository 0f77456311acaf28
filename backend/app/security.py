"""Symmetric encryption for WooCommerce REST credentials.

WHAT:
    Fernet wrapper used to store consumer key/secret pairs encrypted at rest.

WHY:
    Store credentials grant read/write access to a merchant's catalog; they
    must never land in the database or logs in plaintext.

REFERENCES:
    - app/services/store_service.py (encrypts on create/update)
    - app/services/store_sync_service.py (decrypts before each sync)
"""

import base64
import logging

from cryptography.fernet import Fernet, InvalidToken

from app.utils.env import require_env

logger = logging.getLogger(__name__)


TOKEN_ENCRYPTION_KEY = require_env("TOKEN_ENCRYPTION_KEY")

try:
    # Validate key length by decoding without storing plaintext material.
    base64.urlsafe_b64decode(TOKEN_ENCRYPTION_KEY.encode("utf-8"))
    _cipher = Fernet(TOKEN_ENCRYPTION_KEY)
except (ValueError, TypeError) as exc:
    raise RuntimeError(
        "TOKEN_ENCRYPTION_KEY must be a URL-safe base64-encoded 32-byte string. "
        "Generate with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
    ) from exc


def encrypt_secret(plaintext: str, *, context: str) -> str:
    """Encrypt a store credential before persisting.

    Args:
        plaintext: Raw secret to encrypt (consumer key or secret).
        context:   Friendly label for logs (store/credential).

    Returns:
        URL-safe base64 ciphertext suitable for DB storage.
    """
    if not plaintext:
        raise ValueError("Cannot encrypt empty secret.")

    ciphertext = _cipher.encrypt(plaintext.encode("utf-8")).decode("utf-8")
    logger.info("[TOKEN_ENCRYPT] Secret encrypted for %s (length=%d)", context, len(plaintext))
    return ciphertext


def decrypt_secret(ciphertext: str, *, context: str) -> str:
    """Decrypt a stored credential before calling the storefront.

    Raises:
        ValueError: If the stored value cannot be decrypted.
    """
    if not ciphertext:
        raise ValueError("Cannot decrypt empty secret.")

    try:
        plaintext = _cipher.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        logger.debug("[TOKEN_DECRYPT] Secret decrypted for %s", context)
        return plaintext
    except InvalidToken as exc:
        logger.error("[TOKEN_DECRYPT] Invalid ciphertext for %s", context)
        raise ValueError("Unable to decrypt stored credentials.") from exc
