"""Shared security utilities for random secrets, secret files and secret hashing."""

import base64
import os
import secrets
from pathlib import Path

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerifyMismatchError

# Use Argon2id with secure defaults
_ph = PasswordHasher()

SECRET_FILE_MODE = 0o600


def generate_secret(num_bytes: int = 32) -> str:
    """
    Generate a random secret as unpadded base64url text.

    Used for store access secrets and one-time bundle passwords.
    """
    random_bytes = secrets.token_bytes(num_bytes)
    return base64.urlsafe_b64encode(random_bytes).decode("ascii").rstrip("=")


def hash_secret(secret: str) -> str:
    """Hash a secret using Argon2id."""
    return _ph.hash(secret)


def verify_secret(secret: str, secret_hash: str) -> bool:
    """Verify a secret against a stored Argon2id hash."""
    try:
        _ph.verify(secret_hash, secret)
        return True
    except (VerifyMismatchError, InvalidHashError):
        return False


def read_secret_file(path: Path) -> str:
    """Read a secret file, stripping the trailing newline."""
    return path.read_text(encoding="utf-8").strip()


def ensure_secret_file(path: Path) -> tuple[str, bool]:
    """
    Return the secret stored at ``path``, generating it first if absent.

    The file is created with O_EXCL and mode 0600 so the secret is never
    readable by other users, even briefly.

    Returns:
        (secret, created)
    """
    if path.is_file() and path.stat().st_size > 0:
        return read_secret_file(path), False

    path.parent.mkdir(parents=True, exist_ok=True)
    secret = generate_secret()
    if path.exists():
        # Empty leftover from an interrupted write
        path.unlink()
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, SECRET_FILE_MODE)
    with os.fdopen(fd, "w", encoding="utf-8") as fh:
        fh.write(secret + "\n")
    return secret, True
