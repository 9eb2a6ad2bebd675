"""API key authentication.

Keys are shown once at creation and stored only as sha256 hex digests. A
request authenticates with `Authorization: Bearer <key>`; the key resolves to
the owning account through its ApiKey record.

Usage:
    from mailrelay.auth.api_keys import ApiKeyAuthenticator, generate_api_key

    raw_key, key_hash = generate_api_key()
    authenticator = ApiKeyAuthenticator(store)
    api_key = await authenticator.authenticate(raw_key)
    print(api_key.user_id)
"""

from __future__ import annotations

import hashlib
import secrets

from mailrelay.core.errors import UnauthorizedError
from mailrelay.core.logging import get_logger
from mailrelay.db.store import ApiKey, DatabaseStore

logger = get_logger(__name__)

KEY_PREFIX = "mr_"


def hash_api_key(raw_key: str) -> str:
    """sha256 hex digest of a raw API key."""
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def generate_api_key() -> tuple[str, str]:
    """Create a new random API key.

    Returns:
        Tuple of (raw key to hand to the user, hash to store)
    """
    raw_key = KEY_PREFIX + secrets.token_urlsafe(32)
    return raw_key, hash_api_key(raw_key)


class ApiKeyAuthenticator:
    """Resolves bearer tokens to accounts."""

    def __init__(self, store: DatabaseStore):
        self.store = store

    async def authenticate(self, token: str | None) -> ApiKey:
        """Look up an active API key.

        Raises:
            UnauthorizedError: If the token is missing or unknown
        """
        if not token or not token.strip():
            raise UnauthorizedError("Missing API key")

        api_key = await self.store.get_api_key_by_hash(hash_api_key(token.strip()))
        if api_key is None:
            logger.warning("api_key_rejected")
            raise UnauthorizedError("Invalid API key")

        await self.store.touch_api_key(api_key.id)
        return api_key
