"""Fernet encryption for integration credentials and OAuth state."""

from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from bugsync.config import settings


class TokenCipher:
    """Encrypts credentials at rest and signs short-lived OAuth state values."""

    def __init__(self, key: str):
        if not key:
            raise RuntimeError("ENCRYPTION_KEY must be set to a Fernet key")
        self._fernet = Fernet(key.encode() if isinstance(key, str) else key)

    def encrypt(self, value: str) -> str:
        return self._fernet.encrypt(value.encode()).decode()

    def decrypt(self, encrypted: str) -> str:
        return self._fernet.decrypt(encrypted.encode()).decode()

    def encrypt_optional(self, value: Optional[str]) -> Optional[str]:
        return self.encrypt(value) if value else None

    def decrypt_optional(self, encrypted: Optional[str]) -> Optional[str]:
        return self.decrypt(encrypted) if encrypted else None

    def verify(self, token: str, ttl: int) -> Optional[str]:
        """Decrypt a value produced by encrypt() if it is younger than `ttl` seconds."""
        try:
            return self._fernet.decrypt(token.encode(), ttl=ttl).decode()
        except (InvalidToken, ValueError):
            return None


def get_cipher() -> TokenCipher:
    return TokenCipher(settings.encryption_key)
