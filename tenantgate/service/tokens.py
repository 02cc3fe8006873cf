from __future__ import annotations

import base64
import hashlib
import hmac
import secrets

TOKEN_BYTES = 32


def generate_token() -> str:
    """Opaque session token: 32 random bytes, unpadded base64url."""
    return base64.urlsafe_b64encode(secrets.token_bytes(TOKEN_BYTES)).decode("ascii").rstrip("=")


def hash_token(token: str, secret: str) -> str:
    """Keyed digest stored in place of the token; useless without ``secret``."""
    return hmac.new(secret.encode("utf-8"), token.encode("utf-8"), hashlib.sha256).hexdigest()
