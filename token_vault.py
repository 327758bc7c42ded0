"""Encryption at rest for platform credentials.

OAuth access/refresh tokens and captured session blobs are encrypted with
AES-256-GCM before they are written to the connection store, and decrypted
only transiently for an upstream call.

The envelope mirrors what is persisted::

    {"ciphertext": <b64>, "iv": <b64>, "authTag": <b64>,
     "algorithm": "aes-256-gcm", "version": 1}

Environment
-----------
``TOKEN_ENCRYPTION_KEY`` - 64 hex characters (32 bytes).
"""

from __future__ import annotations

import base64
import os
import secrets
from dataclasses import dataclass
from typing import Any, Dict, Optional

from Crypto.Cipher import AES

ALGORITHM = "aes-256-gcm"
IV_LENGTH = 16
AUTH_TAG_LENGTH = 16
VERSION = 1
KEY_ENV_VAR = "TOKEN_ENCRYPTION_KEY"


class TokenVaultError(RuntimeError):
    """Raised when a token cannot be encrypted or decrypted."""


@dataclass
class EncryptedData:
    ciphertext: str
    iv: str
    auth_tag: str
    algorithm: str = ALGORITHM
    version: int = VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ciphertext": self.ciphertext,
            "iv": self.iv,
            "authTag": self.auth_tag,
            "algorithm": self.algorithm,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "EncryptedData":
        if not isinstance(raw, dict):
            raise TokenVaultError("encrypted token must be an object")
        try:
            return cls(
                ciphertext=str(raw["ciphertext"]),
                iv=str(raw["iv"]),
                auth_tag=str(raw["authTag"]),
                algorithm=str(raw.get("algorithm", ALGORITHM)),
                version=int(raw.get("version", VERSION)),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenVaultError(f"malformed encrypted token: {exc}") from exc


def _get_encryption_key(key_hex: Optional[str] = None) -> bytes:
    raw = key_hex if key_hex is not None else os.getenv(KEY_ENV_VAR)
    raw = (raw or "").strip()
    if not raw:
        raise TokenVaultError(f"{KEY_ENV_VAR} environment variable is required")
    if len(raw) != 64:
        raise TokenVaultError(f"{KEY_ENV_VAR} must be 64 hex characters (32 bytes)")
    try:
        return bytes.fromhex(raw)
    except ValueError as exc:
        raise TokenVaultError(f"{KEY_ENV_VAR} is not valid hex") from exc


def encrypt_token(plaintext: str, *, key_hex: Optional[str] = None) -> EncryptedData:
    key = _get_encryption_key(key_hex)
    iv = secrets.token_bytes(IV_LENGTH)
    cipher = AES.new(key, AES.MODE_GCM, nonce=iv, mac_len=AUTH_TAG_LENGTH)
    ciphertext, tag = cipher.encrypt_and_digest(plaintext.encode("utf-8"))
    return EncryptedData(
        ciphertext=base64.b64encode(ciphertext).decode("ascii"),
        iv=base64.b64encode(iv).decode("ascii"),
        auth_tag=base64.b64encode(tag).decode("ascii"),
    )


def decrypt_token(data: EncryptedData | Dict[str, Any], *, key_hex: Optional[str] = None) -> str:
    if not isinstance(data, EncryptedData):
        data = EncryptedData.from_dict(data)
    if data.version != VERSION:
        raise TokenVaultError(f"Unsupported encryption version: {data.version}")
    if data.algorithm != ALGORITHM:
        raise TokenVaultError(f"Unsupported encryption algorithm: {data.algorithm}")

    key = _get_encryption_key(key_hex)
    try:
        iv = base64.b64decode(data.iv)
        ciphertext = base64.b64decode(data.ciphertext)
        tag = base64.b64decode(data.auth_tag)
    except (ValueError, TypeError) as exc:
        raise TokenVaultError("encrypted token is not valid base64") from exc

    cipher = AES.new(key, AES.MODE_GCM, nonce=iv, mac_len=AUTH_TAG_LENGTH)
    try:
        plaintext = cipher.decrypt_and_verify(ciphertext, tag)
    except ValueError as exc:
        # GCM tag mismatch: wrong key or tampered payload
        raise TokenVaultError("token authentication failed") from exc
    return plaintext.decode("utf-8")


def generate_encryption_key() -> str:
    """Return a fresh value suitable for ``TOKEN_ENCRYPTION_KEY``."""
    return secrets.token_bytes(32).hex()


def is_encryption_configured() -> bool:
    try:
        _get_encryption_key()
    except TokenVaultError:
        return False
    return True


__all__ = [
    "ALGORITHM",
    "EncryptedData",
    "TokenVaultError",
    "decrypt_token",
    "encrypt_token",
    "generate_encryption_key",
    "is_encryption_configured",
]
