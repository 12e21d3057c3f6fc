# backend/dbrest/passwords.py
from __future__ import annotations

import hmac
from hashlib import sha256


class PasswordHasher:
    """
    HMAC-SHA256 keyed with the configured salt, hex encoded.

    The salt is handed in by the application factory; nothing here reads
    configuration on its own.
    """

    def __init__(self, salt: str):
        if not isinstance(salt, str) or not salt:
            raise ValueError("PasswordHasher needs a non-empty salt.")
        self._key = salt.encode("utf-8")

    def hash(self, plaintext: str) -> str:
        return hmac.new(self._key, str(plaintext).encode("utf-8"), sha256).hexdigest()
