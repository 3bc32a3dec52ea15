"""Fernet encryption for CRM tokens at rest."""

from __future__ import annotations

from cryptography.fernet import Fernet, InvalidToken


class TokenCipher:
    """Encrypts and decrypts provider access/refresh tokens.

    Args:
        key: urlsafe base64 Fernet key. Generate with
            ``python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"``.
    """

    def __init__(self, key: str) -> None:
        if not key:
            raise RuntimeError("TOKEN_ENCRYPTION_KEY not configured")
        self._fernet = Fernet(key.encode())

    def encrypt(self, token: str | None) -> str | None:
        if not token:
            return None
        return self._fernet.encrypt(token.encode()).decode()

    def decrypt(self, encrypted: str | None) -> str | None:
        if not encrypted:
            return None
        try:
            return self._fernet.decrypt(encrypted.encode()).decode()
        except InvalidToken:
            raise ValueError("Invalid or corrupted encrypted token")
