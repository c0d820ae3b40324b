from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
from functools import lru_cache
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes


TOKEN_KEY_BYTES = 32
TOKEN_IV_BYTES = 16


@lru_cache(maxsize=4)
def _get_cipher(key: str) -> Fernet:
    return Fernet(key.encode("utf-8"))


def _token_key(key: str) -> bytes:
    # Keys shorter than 32 bytes are right-padded with "0"; stored tokens depend on this.
    if not key:
        raise ValueError("Token encryption key is not configured")
    return key[:TOKEN_KEY_BYTES].ljust(TOKEN_KEY_BYTES, "0").encode("utf-8")[:TOKEN_KEY_BYTES]


def encrypt_token(key: str, value: str) -> str:
    """Encrypt with AES-256-CBC and return ``<iv hex>:<ciphertext hex>``."""
    iv = os.urandom(TOKEN_IV_BYTES)
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(value.encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(_token_key(key)), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()
    return f"{iv.hex()}:{ciphertext.hex()}"


def decrypt_token(key: str, value: str) -> str:
    parts = value.split(":")
    if len(parts) != 2:
        raise ValueError("Invalid encrypted token format")
    try:
        iv = bytes.fromhex(parts[0])
        ciphertext = bytes.fromhex(parts[1])
    except ValueError as exc:
        raise ValueError("Invalid encrypted token format") from exc
    if len(iv) != TOKEN_IV_BYTES:
        raise ValueError("Invalid encrypted token format")

    decryptor = Cipher(algorithms.AES(_token_key(key)), modes.CBC(iv)).decryptor()
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    try:
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        plaintext = unpadder.update(padded) + unpadder.finalize()
        return plaintext.decode("utf-8")
    except ValueError as exc:
        raise ValueError("Invalid encrypted token payload") from exc


def compute_webhook_signature(raw_body: bytes, webhook_key: str) -> str:
    digest = hmac.new(webhook_key.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_webhook_signature(
    raw_body: bytes,
    signature: Optional[str],
    webhook_key: Optional[str],
) -> bool:
    """Check ``x-xero-signature`` against the HMAC of the exact request bytes."""
    if not signature or not webhook_key:
        return False
    expected = compute_webhook_signature(raw_body, webhook_key)
    return hmac.compare_digest(signature.encode("utf-8"), expected.encode("utf-8"))


def mask_secret(value: Optional[str], visible: int = 4) -> str:
    if not value:
        return "[redacted]"
    trimmed = value.strip()
    if len(trimmed) <= visible:
        return "*" * len(trimmed)
    return f"{trimmed[:visible]}***"


def encode_oauth_state(key: str, payload: dict[str, str]) -> str:
    cipher = _get_cipher(key)
    serialized = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    return cipher.encrypt(serialized).decode("utf-8")


def decode_oauth_state(key: str, token: str) -> dict[str, str]:
    cipher = _get_cipher(key)
    try:
        decrypted = cipher.decrypt(token.encode("utf-8"))
    except InvalidToken as exc:
        raise ValueError("Invalid OAuth state token") from exc
    data = json.loads(decrypted.decode("utf-8"))
    if not isinstance(data, dict):
        raise ValueError("Invalid OAuth state payload")
    return {str(k): str(v) for k, v in data.items()}
