from typing import Dict, Any, Optional
import asyncio
from collections import OrderedDict
from datetime import datetime, timedelta


class CacheMemoryStore:
    """In-memory cache store with TTL support and an optional entry cap"""

    def __init__(self, default_ttl: int = 3600, max_entries: Optional[int] = None):
        self.cache: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self._lock = asyncio.Lock()

    async def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """Set a value in cache with TTL"""

        async with self._lock:
            expires_at = datetime.utcnow() + timedelta(seconds=self.default_ttl if ttl is None else ttl)

            # Re-setting a key moves it to the newest position
            self.cache.pop(key, None)
            self.cache[key] = {
                "value": value,
                "expires_at": expires_at
            }

            if self.max_entries is not None:
                while len(self.cache) > self.max_entries:
                    self.cache.popitem(last=False)

    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache if not expired"""

        async with self._lock:
            if key not in self.cache:
                return None

            entry = self.cache[key]

            # Check if expired
            if datetime.utcnow() > entry["expires_at"]:
                del self.cache[key]
                return None

            return entry["value"]

    async def delete(self, key: str) -> bool:
        """Delete a key from cache"""

        async with self._lock:
            if key in self.cache:
                del self.cache[key]
                return True
            return False

    async def clear_expired(self) -> int:
        """Clear expired entries and return count"""

        async with self._lock:
            now = datetime.utcnow()
            expired_keys = [
                key for key, entry in self.cache.items()
                if now > entry["expires_at"]
            ]

            for key in expired_keys:
                del self.cache[key]

            return len(expired_keys)

    async def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics"""

        async with self._lock:
            now = datetime.utcnow()
            active_count = sum(
                1 for entry in self.cache.values()
                if now <= entry["expires_at"]
            )

            return {
                "total_keys": len(self.cache),
                "active_keys": active_count,
                "expired_keys": len(self.cache) - active_count,
                "max_entries": self.max_entries
            }
