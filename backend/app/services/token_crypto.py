"""
Access-token encryption at rest.

AES-GCM with a 32-byte key from TOKEN_ENCRYPTION_KEY (base64).
Stored format: base64(nonce[12] + ciphertext_with_tag).
"""
from __future__ import annotations

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from app.services.errors import ConfigurationError
from app.settings import get_settings

KEY_LENGTH = 32
NONCE_LENGTH = 12
TAG_LENGTH = 16


def _load_key(key_b64: str | None = None) -> bytes:
    if key_b64 is None:
        key_b64 = get_settings().token_encryption_key
    if not key_b64:
        raise ConfigurationError("TOKEN_ENCRYPTION_KEY not configured")
    try:
        key = base64.b64decode(key_b64)
    except (binascii.Error, ValueError) as exc:
        raise ConfigurationError("TOKEN_ENCRYPTION_KEY is not valid base64") from exc
    if len(key) != KEY_LENGTH:
        raise ConfigurationError(
            f"Invalid TOKEN_ENCRYPTION_KEY length. Expected {KEY_LENGTH} bytes, got {len(key)}"
        )
    return key


def generate_key() -> str:
    """Return a fresh base64 key suitable for TOKEN_ENCRYPTION_KEY."""
    return base64.b64encode(AESGCM.generate_key(bit_length=256)).decode()


def encrypt_token(token: str, *, key: str | None = None) -> str:
    aesgcm = AESGCM(_load_key(key))
    nonce = os.urandom(NONCE_LENGTH)
    encrypted = aesgcm.encrypt(nonce, token.encode("utf-8"), None)
    return base64.b64encode(nonce + encrypted).decode()


def decrypt_token(encrypted_data: str, *, key: str | None = None) -> str:
    aesgcm = AESGCM(_load_key(key))
    try:
        raw = base64.b64decode(encrypted_data)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("Invalid encrypted data: not base64") from exc
    if len(raw) < NONCE_LENGTH + TAG_LENGTH:
        raise ValueError("Invalid encrypted data: too short")
    try:
        decrypted = aesgcm.decrypt(raw[:NONCE_LENGTH], raw[NONCE_LENGTH:], None)
    except InvalidTag as exc:
        raise ValueError("Decryption failed: invalid key or corrupted data") from exc
    return decrypted.decode("utf-8")
