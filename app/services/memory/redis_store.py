import json
import logging
from collections import defaultdict
from typing import List

from app.schemas.memory import MemoryItem, MemoryQuery, MemoryWrite
from app.services.memory.base import (
    MemoryStore,
    WRITE_FIELDS,
    hash_memory_content,
    is_expired,
    normalize_importance,
    partition_key,
    stored_identity,
    utcnow,
)

logger = logging.getLogger(__name__)

KEY_PREFIX = "flowmem"
MAX_ITEMS_PER_KEY = 500
DEFAULT_TTL_SECONDS = 7 * 24 * 3600


class RedisMemoryStore(MemoryStore):
    """
    One redis list per partition, newest first, bounded in length and
    expiring as a whole. No vector search; ``touch`` and ``delete_expired``
    are no-ops because expiry is filtered on read and bounded by the key TTL.
    """

    provider = "redis"

    def __init__(self, client, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        self.client = client
        self.ttl_seconds = ttl_seconds or DEFAULT_TTL_SECONDS

    @staticmethod
    def build_key(workspace_id: str, agent_id: str, scope: str, scope_key: str) -> str:
        return f"{KEY_PREFIX}:{workspace_id}:{agent_id}:{scope}:{scope_key}"

    @staticmethod
    def _decode(raw: str):
        try:
            return MemoryItem.model_validate_json(raw)
        except ValueError:
            logger.warning("Skipping malformed memory entry in redis")
            return None

    async def put(self, items: List[MemoryWrite]) -> None:
        grouped = defaultdict(list)
        for write in items:
            grouped[self.build_key(*partition_key(write))].append(write)

        now = utcnow()
        for key, writes in grouped.items():
            existing_raw = await self.client.lrange(key, 0, MAX_ITEMS_PER_KEY - 1)
            positions = {}
            existing = []
            for index, raw in enumerate(existing_raw):
                item = self._decode(raw)
                existing.append(item)
                if item is not None:
                    positions[(item.type.value, item.content_hash)] = index

            for write in writes:
                content_hash = hash_memory_content(write.type.value, write.content)
                index = positions.get((write.type.value, content_hash))
                if index is not None:
                    current = existing[index]
                    current.importance = max(current.importance, normalize_importance(write.importance))
                    current.tags = write.tags if write.tags is not None else current.tags
                    current.metadata = write.metadata if write.metadata is not None else current.metadata
                    current.expires_at = write.expires_at if write.expires_at is not None else current.expires_at
                    current.source = write.source or current.source
                    current.last_accessed_at = now
                    await self.client.lset(key, index, current.model_dump_json())
                    continue
                item_id, created_at = stored_identity(write, now)
                item = MemoryItem(
                    **write.model_dump(include=WRITE_FIELDS, exclude={"importance", "embedding"}),
                    id=item_id,
                    importance=normalize_importance(write.importance),
                    content_hash=content_hash,
                    created_at=created_at,
                    last_accessed_at=now,
                )
                await self.client.lpush(key, item.model_dump_json())
                # LPUSH shifts every known position by one.
                positions = {k: i + 1 for k, i in positions.items()}
                existing.insert(0, item)
                positions[(item.type.value, content_hash)] = 0

            await self.client.ltrim(key, 0, MAX_ITEMS_PER_KEY - 1)
            await self.client.expire(key, self.ttl_seconds)

    async def query(self, query: MemoryQuery) -> List[MemoryItem]:
        key = self.build_key(query.workspace_id, query.agent_id, query.scope.value, query.scope_key)
        raw_items = await self.client.lrange(key, 0, MAX_ITEMS_PER_KEY - 1)
        now = utcnow()
        types = {t.value for t in query.types} if query.types else None
        results = []
        for raw in raw_items:
            item = self._decode(raw)
            if item is None or is_expired(item, now):
                continue
            if types and item.type.value not in types:
                continue
            if query.min_importance is not None and item.importance < query.min_importance:
                continue
            results.append(item)
        # Cache fills can push older items after newer ones.
        results.sort(key=lambda item: item.created_at, reverse=True)
        return results[: query.limit]

    async def touch(self, ids: List[str]) -> None:
        return None

    async def delete_expired(self) -> int:
        return 0
