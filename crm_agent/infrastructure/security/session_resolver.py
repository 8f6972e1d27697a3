"""
Session resolution.

Credentials (session cookie and/or Authorization header) are resolved to a
UserContext by a session backend. Results are cached briefly, keyed by a
SHA-256 hash of the credential material so raw tokens never sit in memory
as dictionary keys.
"""

from typing import Dict, Optional, Protocol, Callable
from collections import OrderedDict
import asyncio
import hashlib
import time

from pydantic import BaseModel
import structlog

from crm_agent.domain.errors import AuthError
from crm_agent.domain.models.agent_state import UserContext

logger = structlog.get_logger(__name__)


SESSION_COOKIE = "session"


class Credentials(BaseModel):
    """Raw credential material from a request"""
    cookie: Optional[str] = None
    authorization: Optional[str] = None

    def is_empty(self) -> bool:
        return not (self.cookie or self.authorization)

    def cache_key(self) -> str:
        material = f"{self.cookie or ''}\x00{self.authorization or ''}"
        return hashlib.sha256(material.encode("utf-8")).hexdigest()

    def token(self) -> Optional[str]:
        """Bearer token if present, otherwise the session cookie"""

        if self.authorization:
            scheme, _, value = self.authorization.partition(" ")
            if scheme.lower() == "bearer" and value.strip():
                return value.strip()
        return self.cookie or None


class SessionIdentity(BaseModel):
    user_id: str
    organization_id: str
    role: str = "member"


class SessionBackend(Protocol):
    async def lookup(self, credentials: Credentials) -> Optional[SessionIdentity]:
        ...


class StaticSessionBackend:
    """In-process token table, used for development and tests"""

    def __init__(self, sessions: Optional[Dict[str, SessionIdentity]] = None):
        self.sessions: Dict[str, SessionIdentity] = dict(sessions or {})
        self.lookups = 0

    def add_session(self, token: str, identity: SessionIdentity) -> None:
        self.sessions[token] = identity

    def revoke(self, token: str) -> None:
        self.sessions.pop(token, None)

    async def lookup(self, credentials: Credentials) -> Optional[SessionIdentity]:
        self.lookups += 1
        token = credentials.token()
        if not token:
            return None
        return self.sessions.get(token)


class SessionCache:
    """TTL cache with a hard entry cap; the oldest entry is evicted first"""

    def __init__(self, ttl_seconds: float = 5.0, max_entries: int = 1000, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.clock = clock
        self._entries: "OrderedDict[str, tuple]" = OrderedDict()

    def get(self, key: str) -> Optional[SessionIdentity]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        identity, expires_at = entry
        if self.clock() >= expires_at:
            del self._entries[key]
            return None
        return identity

    def set(self, key: str, identity: SessionIdentity) -> None:
        self._entries.pop(key, None)
        self._entries[key] = (identity, self.clock() + self.ttl_seconds)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Session cache eviction", key_prefix=evicted[:8])

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class SessionResolver:
    """Resolves request credentials to a caller identity"""

    def __init__(self, backend: SessionBackend, cache: Optional[SessionCache] = None):
        self.backend = backend
        self.cache = cache or SessionCache()
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiting: Dict[str, int] = {}

    async def resolve(
        self,
        credentials: Credentials,
        current_page: Optional[str] = None,
        active_entity_id: Optional[str] = None,
        active_entity_type: Optional[str] = None
    ) -> UserContext:
        """Return the caller's context or raise AuthError"""

        if credentials.is_empty():
            raise AuthError("Authentication required", suggestion="Sign in and retry")

        key = credentials.cache_key()
        identity = self.cache.get(key)
        if identity is None:
            identity = await self._lookup(key, credentials)

        return UserContext(
            user_id=identity.user_id,
            organization_id=identity.organization_id,
            role=identity.role,
            current_page=current_page,
            active_entity_id=active_entity_id,
            active_entity_type=active_entity_type
        )

    async def _lookup(self, key: str, credentials: Credentials) -> SessionIdentity:
        """One backend lookup per credential at a time; other credentials are never blocked"""

        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiting[key] = self._waiting.get(key, 0) + 1
        try:
            async with lock:
                identity = self.cache.get(key)
                if identity is not None:
                    return identity
                identity = await self.backend.lookup(credentials)
                if identity is None:
                    logger.warning("Session rejected", key_prefix=key[:8])
                    raise AuthError("Invalid or expired session", suggestion="Sign in again")
                self.cache.set(key, identity)
                return identity
        finally:
            self._waiting[key] -= 1
            if not self._waiting[key]:
                del self._waiting[key]
                del self._locks[key]
