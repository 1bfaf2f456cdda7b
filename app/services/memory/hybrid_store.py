import datetime
import logging
from typing import List

from app.schemas.memory import MemoryItem, MemoryQuery, MemoryWrite
from app.services.memory.base import MemoryStore, utcnow

logger = logging.getLogger(__name__)


class HybridMemoryStore(MemoryStore):
    """
    Cache tier (redis) in front of a durable store.

    Reads go to the cache first and fall back to the durable store, whose
    results repopulate the cache in the background. Queries carrying an
    embedding always bypass the cache.
    """

    provider = "hybrid"

    def __init__(self, durable: MemoryStore, cache: MemoryStore, runtime,
                 cache_ttl_seconds: int = 3600, write_through: bool = True):
        self.durable = durable
        self.cache = cache
        self.runtime = runtime
        self.cache_ttl_seconds = cache_ttl_seconds
        self.write_through = write_through

    async def _populate_cache(self, items: List[MemoryWrite]):
        try:
            await self.cache.put(items)
        except Exception as e:
            logger.warning("Memory cache population failed: %s", e)

    def _cache_copies(self, items) -> List[MemoryWrite]:
        """Copies for the cache tier; items read from the durable store keep their id and created_at."""
        default_expiry = utcnow() + datetime.timedelta(seconds=self.cache_ttl_seconds)
        return [
            item.model_copy(update={"embedding": None, "expires_at": item.expires_at or default_expiry}, deep=True)
            for item in items
        ]

    async def put(self, items: List[MemoryWrite]) -> None:
        if not items:
            return
        if self.write_through:
            await self.durable.put(items)
            await self.cache.put(self._cache_copies(items))
            return
        await self.durable.put(items)
        self.runtime.spawn_background(self._populate_cache(self._cache_copies(items)), name="memory-cache-write")

    async def query(self, query: MemoryQuery) -> List[MemoryItem]:
        if query.embedding:
            return await self.durable.query(query)
        try:
            cached = await self.cache.query(query)
        except Exception as e:
            logger.warning("Memory cache read failed, using durable store: %s", e)
            cached = []
        if cached:
            return cached
        items = await self.durable.query(query)
        if items:
            self.runtime.spawn_background(self._populate_cache(self._cache_copies(items)), name="memory-cache-fill")
        return items

    async def touch(self, ids: List[str]) -> None:
        await self.durable.touch(ids)

    async def delete_expired(self) -> int:
        removed = await self.durable.delete_expired()
        await self.cache.delete_expired()
        return removed

    async def close(self) -> None:
        await self.durable.close()
        await self.cache.close()
