"""
deferline.core.identity - Owner Key Hashing
=============================================

Request Records are keyed by (owner, request-id). The owner half of the key
is never the raw identity of the authenticated caller: it is an HMAC-SHA256
digest using a deployment secret, so a leaked state store dump cannot be
joined back to user accounts.

    owner_id ("user-123") ──HMAC-SHA256(salt)──> owner_key ("9f86d08...")

Without a salt (``dev`` only, enforced by DeferlineConfig) a plain SHA-256
digest is used so that local runs need no secret.
"""

from __future__ import annotations

import hashlib
import hmac
from typing import Optional

import structlog

logger = structlog.get_logger()


class OwnerHasher:
    """Derives stable state-store key material from owner identities.

    Example:
        >>> hasher = OwnerHasher(salt="s3cret")
        >>> hasher.hash("user-123") == hasher.hash("user-123")
        True
        >>> hasher.hash("user-123") == OwnerHasher(salt="other").hash("user-123")
        False
    """

    def __init__(self, salt: Optional[str] = None) -> None:
        self._salt: Optional[bytes] = salt.encode("utf-8") if salt else None
        if self._salt is None:
            logger.warning("owner_hash_unsalted", component="identity")

    @property
    def is_salted(self) -> bool:
        return self._salt is not None

    def hash(self, owner_id: str) -> str:
        """Return the hex digest used as the owner half of a record key.

        Raises:
            ValueError: If ``owner_id`` is empty.
        """
        if not owner_id:
            raise ValueError("owner_id must be a non-empty string")
        message = owner_id.encode("utf-8")
        if self._salt is None:
            return hashlib.sha256(message).hexdigest()
        return hmac.new(self._salt, message, hashlib.sha256).hexdigest()
