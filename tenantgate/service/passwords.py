from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
import hmac
import secrets
import threading
from typing import Optional, Tuple

from tenantgate.config import (
    PASSWORD_ITERATIONS_MAX,
    PASSWORD_ITERATIONS_MIN,
    normalize_password_iterations,
)
from tenantgate.logging import get_logger

logger = get_logger(__name__)

PASSWORD_ALGORITHM = "pbkdf2_sha256"
SALT_BYTES = 16
DIGEST_BYTES = 32


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


def _derive(password: str, pepper: str, salt: bytes, iterations: int) -> bytes:
    material = f"{password}:{pepper}".encode("utf-8")
    return hashlib.pbkdf2_hmac("sha256", material, salt, iterations, dklen=DIGEST_BYTES)


def hash_password(password: str, pepper: str, iterations: Optional[int] = None) -> str:
    """Derive a self-describing ``pbkdf2_sha256$iterations$salt$digest`` hash."""
    rounds = normalize_password_iterations(iterations)
    salt = secrets.token_bytes(SALT_BYTES)
    digest = _derive(password, pepper, salt, rounds)
    return f"{PASSWORD_ALGORITHM}${rounds}${_b64url_encode(salt)}${_b64url_encode(digest)}"


def parse_password_hash(stored_hash: Optional[str]) -> Optional[Tuple[int, bytes, bytes]]:
    """Split a stored hash into ``(iterations, salt, digest)``, or None if it is unusable."""
    if not stored_hash or not isinstance(stored_hash, str):
        return None
    parts = stored_hash.split("$")
    if len(parts) != 4 or parts[0] != PASSWORD_ALGORITHM:
        return None
    try:
        iterations = int(parts[1])
        salt = _b64url_decode(parts[2])
        expected = _b64url_decode(parts[3])
    except (ValueError, binascii.Error):
        return None
    if iterations < PASSWORD_ITERATIONS_MIN or iterations > PASSWORD_ITERATIONS_MAX:
        return None
    if not salt or len(expected) != DIGEST_BYTES:
        return None
    return iterations, salt, expected


def verify_password(password: str, pepper: str, stored_hash: Optional[str]) -> bool:
    """Check ``password`` against ``stored_hash``; malformed hashes are a plain mismatch."""
    parsed = parse_password_hash(stored_hash)
    if parsed is None:
        return False
    iterations, salt, expected = parsed
    candidate = _derive(password, pepper, salt, iterations)
    return hmac.compare_digest(candidate, expected)


class PasswordService:
    """Pepper- and cost-bound password hashing.

    The async helpers push the KDF onto a worker thread so a login never
    stalls the event loop.
    """

    def __init__(self, pepper: str, iterations: Optional[int] = None) -> None:
        self.pepper = pepper
        self.iterations = normalize_password_iterations(iterations)
        self._dummy_hash: Optional[str] = None
        self._dummy_lock = threading.Lock()

    def hash(self, password: str) -> str:
        return hash_password(password, self.pepper, self.iterations)

    def verify(self, password: str, stored_hash: Optional[str]) -> bool:
        if parse_password_hash(stored_hash) is None:
            # Unusable hashes still cost one derivation
            logger.warning("password_hash_unusable")
            return self.dummy_verify(password)
        return verify_password(password, self.pepper, stored_hash)

    def warm_up(self) -> None:
        """Build the dummy hash ahead of the first unknown-account login."""
        self._get_dummy_hash()

    def _get_dummy_hash(self) -> str:
        with self._dummy_lock:
            if self._dummy_hash is None:
                self._dummy_hash = self.hash(secrets.token_urlsafe(24))
            return self._dummy_hash

    def dummy_verify(self, password: str) -> bool:
        """Spend one verification's worth of work for an unknown account."""
        verify_password(password, self.pepper, self._get_dummy_hash())
        return False

    async def hash_async(self, password: str) -> str:
        return await asyncio.to_thread(self.hash, password)

    async def verify_async(self, password: str, stored_hash: Optional[str]) -> bool:
        return await asyncio.to_thread(self.verify, password, stored_hash)

    async def dummy_verify_async(self, password: str) -> bool:
        return await asyncio.to_thread(self.dummy_verify, password)

    async def warm_up_async(self) -> None:
        await asyncio.to_thread(self.warm_up)

    def needs_rehash(self, stored_hash: Optional[str]) -> bool:
        if not stored_hash:
            return True
        parts = stored_hash.split("$")
        if len(parts) != 4 or parts[0] != PASSWORD_ALGORITHM:
            return True
        try:
            return int(parts[1]) != self.iterations
        except ValueError:
            return True
