"""
Encryption at rest for stored OAuth tokens.

Tokens are sealed with AES-256-GCM under ENCRYPTION_KEY (64 hex characters)
and stored as "<iv hex>:<ciphertext hex>". An empty token stays empty so a
missing refresh token still reads as "".
"""

import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

import config

IV_BYTES = 12
KEY_BYTES = 32


class TokenCryptoError(Exception):
    pass


def _cipher() -> AESGCM:
    if not config.ENCRYPTION_KEY:
        raise TokenCryptoError("ENCRYPTION_KEY is not set")
    try:
        key = bytes.fromhex(config.ENCRYPTION_KEY)
    except ValueError as exc:
        raise TokenCryptoError("ENCRYPTION_KEY must be hex encoded") from exc
    if len(key) != KEY_BYTES:
        raise TokenCryptoError(f"ENCRYPTION_KEY must be {KEY_BYTES} bytes ({KEY_BYTES * 2} hex characters)")
    return AESGCM(key)


def encrypt_token(plaintext: str) -> str:
    if not plaintext:
        return ""
    iv = os.urandom(IV_BYTES)
    sealed = _cipher().encrypt(iv, plaintext.encode("utf-8"), None)
    return f"{iv.hex()}:{sealed.hex()}"


def decrypt_token(stored: str) -> str:
    if not stored:
        return ""
    iv_hex, sep, sealed_hex = stored.partition(":")
    if not sep:
        raise TokenCryptoError("Stored token is not in iv:ciphertext form")
    cipher = _cipher()
    try:
        plain = cipher.decrypt(bytes.fromhex(iv_hex), bytes.fromhex(sealed_hex), None)
    except (ValueError, InvalidTag) as exc:
        raise TokenCryptoError("Stored token could not be decrypted") from exc
    return plain.decode("utf-8")
