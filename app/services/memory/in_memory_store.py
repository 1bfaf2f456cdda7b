from typing import Dict, List

from app.schemas.memory import MemoryItem, MemoryQuery, MemoryWrite
from app.services.memory.base import (
    MemoryStore,
    WRITE_FIELDS,
    cosine_similarity,
    hash_memory_content,
    is_expired,
    normalize_importance,
    partition_key,
    stored_identity,
    utcnow,
)


class InMemoryMemoryStore(MemoryStore):
    """Process-local store for tests and as a zero-infrastructure fallback."""

    provider = "in-memory"

    def __init__(self):
        self._items: Dict[tuple, MemoryItem] = {}

    @staticmethod
    def _unique_key(item: MemoryItem) -> tuple:
        return partition_key(item) + (item.type.value, item.content_hash)

    async def put(self, items: List[MemoryWrite]) -> None:
        now = utcnow()
        for write in items:
            content_hash = hash_memory_content(write.type.value, write.content)
            item_id, created_at = stored_identity(write, now)
            candidate = MemoryItem(
                **write.model_dump(include=WRITE_FIELDS, exclude={"importance"}),
                id=item_id,
                importance=normalize_importance(write.importance),
                content_hash=content_hash,
                created_at=created_at,
                last_accessed_at=now,
            )
            key = self._unique_key(candidate)
            existing = self._items.get(key)
            if existing is None:
                self._items[key] = candidate
                continue
            existing.importance = max(existing.importance, candidate.importance)
            existing.tags = candidate.tags if candidate.tags is not None else existing.tags
            existing.metadata = candidate.metadata if candidate.metadata is not None else existing.metadata
            existing.expires_at = candidate.expires_at if candidate.expires_at is not None else existing.expires_at
            existing.source = candidate.source or existing.source
            existing.embedding = candidate.embedding if candidate.embedding is not None else existing.embedding
            existing.last_accessed_at = now

    async def query(self, query: MemoryQuery) -> List[MemoryItem]:
        now = utcnow()
        wanted = (query.workspace_id, query.agent_id, query.scope.value, query.scope_key)
        types = {t.value for t in query.types} if query.types else None
        matches = []
        for item in self._items.values():
            if partition_key(item) != wanted or is_expired(item, now):
                continue
            if types and item.type.value not in types:
                continue
            if query.min_importance is not None and item.importance < query.min_importance:
                continue
            matches.append(item)

        if query.embedding:
            scored = [(cosine_similarity(query.embedding, item.embedding), item) for item in matches if item.embedding]
            if query.similarity_threshold is not None:
                scored = [pair for pair in scored if pair[0] >= query.similarity_threshold]
            scored.sort(key=lambda pair: pair[0], reverse=True)
            matches = [item for _, item in scored]
        else:
            matches.sort(key=lambda item: item.created_at, reverse=True)
        return [item.model_copy(deep=True) for item in matches[: query.limit]]

    async def touch(self, ids: List[str]) -> None:
        wanted = set(ids or [])
        now = utcnow()
        for item in self._items.values():
            if item.id in wanted:
                item.last_accessed_at = now

    async def delete_expired(self) -> int:
        now = utcnow()
        expired = [key for key, item in self._items.items() if is_expired(item, now)]
        for key in expired:
            del self._items[key]
        return len(expired)
