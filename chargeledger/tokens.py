"""Resume credentials.

A resume secret is handed to the client exactly once. Only its SHA-256 hash
is persisted, so a leaked database cannot be used to resume a session.
"""

import base64
import hashlib
import hmac
import secrets
from typing import Tuple

SECRET_BYTES = 32  # 256 bits


def generate_secret() -> str:
    raw = secrets.token_bytes(SECRET_BYTES)
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def hash_secret(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def issue() -> Tuple[str, str]:
    """Return a fresh ``(secret, hash)`` pair."""
    secret = generate_secret()
    return secret, hash_secret(secret)


def verify(secret: str, stored_hash: str) -> bool:
    if not secret or not stored_hash:
        return False
    return hmac.compare_digest(hash_secret(secret), stored_hash)
