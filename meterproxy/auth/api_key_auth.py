"""
API Key Authentication
======================

Requests authenticate with an ``X-API-Key`` header. Keys have the form
``mpx_<secret>``; only HMAC-SHA256(key, METERPROXY_API_KEY_HMAC_SECRET)
is stored, in ``users.api_key_hash``. The raw key is shown once when the
user is created.

Validated keys are cached briefly (TTL) to spare a database round trip
per request.
"""

import asyncio
import hashlib
import hmac
import logging
import secrets
from typing import Optional, Tuple

from cachetools import TTLCache
from fastapi import Depends, Request
from pydantic import BaseModel

from meterproxy.core.errors import MeterProxyError
from meterproxy.core.structured_logging import bind_request_context
from meterproxy.services.user_store import UserStore

logger = logging.getLogger(__name__)

KEY_PREFIX = "mpx_"


class AuthenticatedUser(BaseModel):
    user_id: str
    email: str
    is_admin: bool = False


def hash_api_key(api_key: str, hmac_secret: str) -> str:
    """HMAC-SHA256 hash an API key using the configured HMAC secret."""
    return hmac.new(hmac_secret.encode(), api_key.encode(), hashlib.sha256).hexdigest()


def generate_api_key(hmac_secret: str) -> Tuple[str, str, str]:
    """Create a new key. Returns (raw_key, key_hash, display_prefix)."""
    raw_key = f"{KEY_PREFIX}{secrets.token_urlsafe(32)}"
    return raw_key, hash_api_key(raw_key, hmac_secret), raw_key[:12]


class ApiKeyAuthenticator:
    """Resolves API keys to users, with a small TTL cache."""

    def __init__(self, users: UserStore, hmac_secret: str, cache_ttl: int = 60) -> None:
        self.users = users
        self._hmac_secret = hmac_secret
        self._cache: TTLCache = TTLCache(maxsize=1000, ttl=cache_ttl)

    def authenticate(self, api_key: str) -> Optional[AuthenticatedUser]:
        key_hash = hash_api_key(api_key, self._hmac_secret)
        cached = self._cache.get(key_hash)
        if cached is not None:
            return cached

        user = self.users.get_by_api_key_hash(key_hash)
        if user is None or not hmac.compare_digest(user.api_key_hash or "", key_hash):
            return None

        authenticated = AuthenticatedUser(user_id=user.id, email=user.email, is_admin=user.is_admin)
        self._cache[key_hash] = authenticated
        return authenticated


async def get_current_user(request: Request) -> AuthenticatedUser:
    """Authenticate the request via the X-API-Key header."""
    api_key = request.headers.get("X-API-Key")
    if not api_key:
        raise MeterProxyError("MPX-AUTH-001", detail="X-API-Key header is missing")
    if not api_key.startswith(KEY_PREFIX):
        raise MeterProxyError("MPX-AUTH-001", detail="API key has an unknown prefix")

    authenticator: ApiKeyAuthenticator = request.app.state.authenticator
    user = await asyncio.to_thread(authenticator.authenticate, api_key)
    if user is None:
        logger.warning("Invalid API key received: %s...", api_key[:8])
        raise MeterProxyError("MPX-AUTH-001", detail="API key not recognised")

    request.state.user = user
    bind_request_context(user_id=user.user_id)
    return user


async def require_admin(user: AuthenticatedUser = Depends(get_current_user)) -> AuthenticatedUser:
    if not user.is_admin:
        raise MeterProxyError("MPX-AUTH-002", detail=f"user {user.user_id} is not an admin")
    return user
