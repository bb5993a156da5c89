"""
Session credentials: the per-job token holder and the sealing of secrets at rest.
"""

import base64
import binascii
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import ConfigurationError

NONCE_SIZE = 12


@dataclass(frozen=True)
class SessionToken:
    value: str
    refreshed_at: datetime


class CredentialHolder:
    """
    Current session token of one job.

    Only the job's refresh loop calls `update`; readers take `snapshot()`, which
    returns an immutable value, so no lock is needed.
    """

    def __init__(self, token: str, max_age: float, refreshed_at: Optional[datetime] = None):
        self._max_age = timedelta(seconds=max_age)
        self._current = SessionToken(token, refreshed_at or datetime.now(timezone.utc))

    def snapshot(self) -> SessionToken:
        return self._current

    def update(self, token: str, now: Optional[datetime] = None) -> SessionToken:
        self._current = SessionToken(token, now or datetime.now(timezone.utc))
        return self._current

    def age(self, now: Optional[datetime] = None) -> timedelta:
        return (now or datetime.now(timezone.utc)) - self._current.refreshed_at

    def is_fresh(self, now: Optional[datetime] = None) -> bool:
        return self.age(now) < self._max_age


class SecretBox:
    """AES-256-GCM sealing for tokens and passwords stored on disk."""

    def __init__(self, key: str):
        try:
            raw = base64.b64decode(key, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ConfigurationError(f"Failed to decode encryption key: {exc}") from exc
        if len(raw) != 32:
            raise ConfigurationError("Encryption key must be 32 bytes (256 bits)")
        self._aead = AESGCM(raw)

    @staticmethod
    def generate_key() -> str:
        return base64.b64encode(AESGCM.generate_key(bit_length=256)).decode("ascii")

    def seal(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_SIZE)
        ciphertext = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(nonce + ciphertext).decode("ascii")

    def open(self, sealed: str) -> str:
        try:
            blob = base64.b64decode(sealed, validate=True)
            plaintext = self._aead.decrypt(blob[:NONCE_SIZE], blob[NONCE_SIZE:], None)
        except (binascii.Error, ValueError, InvalidTag) as exc:
            raise ConfigurationError("Sealed secret could not be opened") from exc
        return plaintext.decode("utf-8")
