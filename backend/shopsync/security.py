"""Symmetric encryption for shop credentials.

WHAT:
    Fernet wrappers used to store TikTok Shop access and refresh tokens.

WHY:
    Keeps raw tokens out of the database and out of logs. Every token written
    by the OAuth flow or the token lifecycle manager passes through here.

REFERENCES:
    - shopsync/services/token_service.py (encrypt on refresh, decrypt before calls)
    - shopsync/models.py (TikTokShop.access_token_enc / refresh_token_enc)
"""

import base64
import logging
import os

from cryptography.fernet import Fernet, InvalidToken


TOKEN_ENCRYPTION_KEY = os.getenv("TOKEN_ENCRYPTION_KEY", "")

logger = logging.getLogger(__name__)


if not TOKEN_ENCRYPTION_KEY:
    # Attempt to load from local .env if running in dev
    from shopsync.utils.env import load_env_file
    load_env_file()
    TOKEN_ENCRYPTION_KEY = os.getenv("TOKEN_ENCRYPTION_KEY", "")

if not TOKEN_ENCRYPTION_KEY:
    raise RuntimeError(
        "TOKEN_ENCRYPTION_KEY is not set. Generate a 32-byte Fernet key and export it "
        "or add it to backend/.env."
    )

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
    """Encrypt a shop secret before persisting.

    Args:
        plaintext: Raw secret to encrypt (access or refresh token).
        context:   Friendly label for logs (shop/token kind).

    Returns:
        URL-safe base64 ciphertext suitable for DB storage.
    """
    if not plaintext:
        raise ValueError("Cannot encrypt empty secret.")

    ciphertext = _cipher.encrypt(plaintext.encode("utf-8")).decode("utf-8")
    logger.debug("[TOKEN_ENCRYPT] Secret encrypted for %s (length=%d)", context, len(plaintext))
    return ciphertext


def decrypt_secret(ciphertext: str, *, context: str) -> str:
    """Decrypt a stored shop secret for an API call.

    Raises:
        ValueError: If the stored value cannot be decrypted.
    """
    if not ciphertext:
        raise ValueError("Cannot decrypt empty secret.")

    try:
        plaintext = _cipher.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        logger.debug("[TOKEN_DECRYPT] Secret decrypted for %s (length=%d)", context, len(plaintext))
        return plaintext
    except InvalidToken as exc:
        logger.error("[TOKEN_DECRYPT] Invalid ciphertext for %s", context)
        raise ValueError("Unable to decrypt stored token.") from exc
