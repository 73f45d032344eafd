"""Symmetric encryption for third-party account tokens at rest."""

from __future__ import annotations

import base64
from functools import lru_cache
import hashlib
import hmac
import os

from postflow.core.config import get_settings


_NONCE_BYTES = 16
_MAC_BYTES = 32


@lru_cache(maxsize=1)
def get_token_key() -> bytes:
    settings = get_settings()
    seed = settings.token_encryption_key.strip() or settings.secret_key or "postflow-dev-token-key"
    return hashlib.sha256(seed.encode("utf-8")).digest()


def _keystream(key: bytes, nonce: bytes, length: int) -> bytes:
    blocks = []
    produced = 0
    counter = 0
    while produced < length:
        block = hmac.new(key, nonce + counter.to_bytes(4, "big"), digestmod=hashlib.sha256).digest()
        blocks.append(block)
        produced += len(block)
        counter += 1
    return b"".join(blocks)[:length]


def encrypt_token(secret_value: str) -> str:
    key = get_token_key()
    nonce = os.urandom(_NONCE_BYTES)
    plaintext = secret_value.encode("utf-8")
    ciphertext = bytes(a ^ b for a, b in zip(plaintext, _keystream(key, nonce, len(plaintext))))
    mac = hmac.new(key, nonce + ciphertext, digestmod=hashlib.sha256).digest()
    return base64.urlsafe_b64encode(nonce + mac + ciphertext).decode("ascii")


def decrypt_token(ciphertext: str) -> str:
    """Reverse :func:`encrypt_token`; raises ValueError on tampered or foreign payloads."""

    key = get_token_key()
    try:
        blob = base64.urlsafe_b64decode(ciphertext.encode("ascii"))
    except Exception as exc:
        raise ValueError("Invalid encrypted token payload") from exc

    if len(blob) < _NONCE_BYTES + _MAC_BYTES:
        raise ValueError("Invalid encrypted token payload")
    nonce = blob[:_NONCE_BYTES]
    mac = blob[_NONCE_BYTES : _NONCE_BYTES + _MAC_BYTES]
    encrypted = blob[_NONCE_BYTES + _MAC_BYTES :]
    expected_mac = hmac.new(key, nonce + encrypted, digestmod=hashlib.sha256).digest()
    if not hmac.compare_digest(mac, expected_mac):
        raise ValueError("Invalid encrypted token payload")

    plaintext = bytes(a ^ b for a, b in zip(encrypted, _keystream(key, nonce, len(encrypted))))
    return plaintext.decode("utf-8")
