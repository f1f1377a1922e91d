"""Utility functions for encrypting and decrypting stored provider tokens."""

import os
from cryptography.fernet import Fernet, InvalidToken

_KEY_ENV_VAR = "CREDENTIALS_ENCRYPTION_KEY"


def _get_fernet() -> Fernet:
    """Return a :class:`Fernet` instance from the configured key.

    The key is sourced from the ``CREDENTIALS_ENCRYPTION_KEY`` environment
    variable so it can be managed outside of version control.
    """
    key = os.environ.get(_KEY_ENV_VAR)
    if not key:
        raise RuntimeError(f"{_KEY_ENV_VAR} is not set")
    return Fernet(key.encode())


def encrypt(data: str) -> str:
    """Encrypt the given data using Fernet symmetric encryption."""
    fernet = _get_fernet()
    return fernet.encrypt(data.encode()).decode()


def decrypt(data: str) -> str:
    """Decrypt the given data using Fernet symmetric encryption.

    Raises:
        ValueError: If the token was not produced with the configured key.
    """
    fernet = _get_fernet()
    try:
        return fernet.decrypt(data.encode()).decode()
    except InvalidToken as exc:
        raise ValueError("stored token cannot be decrypted with the configured key") from exc
