import abc
import datetime
import hashlib
import uuid
from typing import List, Optional, Sequence

import numpy as np

from app.schemas.memory import MemoryItem, MemoryQuery, MemoryWrite


def utcnow() -> datetime.datetime:
    return datetime.datetime.utcnow()


def hash_memory_content(memory_type: str, content: str) -> str:
    memory_type = getattr(memory_type, "value", memory_type)
    return hashlib.sha256(f"{memory_type}|{content}".encode("utf-8")).hexdigest()


def normalize_importance(value: Optional[float]) -> float:
    if value is None:
        return 0.5
    try:
        value = float(value)
    except (TypeError, ValueError):
        return 0.5
    if value != value:  # NaN
        return 0.5
    return max(0.0, min(1.0, value))


def is_expired(item: MemoryItem, now: datetime.datetime = None) -> bool:
    if item.expires_at is None:
        return False
    expires_at = item.expires_at
    if expires_at.tzinfo is not None:
        expires_at = expires_at.astimezone(datetime.timezone.utc).replace(tzinfo=None)
    return expires_at <= (now or utcnow())


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if a is None or b is None or len(a) == 0 or len(a) != len(b):
        return 0.0
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    denominator = np.linalg.norm(va) * np.linalg.norm(vb)
    if denominator == 0:
        return 0.0
    return float(np.dot(va, vb) / denominator)


def partition_key(item) -> tuple:
    scope = getattr(item.scope, "value", item.scope)
    return (item.workspace_id, item.agent_id, scope, item.scope_key)


WRITE_FIELDS = set(MemoryWrite.model_fields)


def stored_identity(write, now: datetime.datetime) -> tuple:
    """Id and creation time for a new row; items copied from another store keep theirs."""
    return getattr(write, "id", None) or str(uuid.uuid4()), getattr(write, "created_at", None) or now


class MemoryStore(abc.ABC):
    """Contract shared by every memory provider."""

    provider: str = "abstract"

    @abc.abstractmethod
    async def put(self, items: List[MemoryWrite]) -> None:
        """Upserts items; a (partition, type, content hash) conflict keeps the higher importance."""

    @abc.abstractmethod
    async def query(self, query: MemoryQuery) -> List[MemoryItem]:
        """Returns unexpired items of one partition, filtered and ordered."""

    @abc.abstractmethod
    async def touch(self, ids: List[str]) -> None:
        """Bumps last_accessed_at."""

    @abc.abstractmethod
    async def delete_expired(self) -> int:
        """Purges expired items and returns how many were removed, when known."""

    async def close(self) -> None:
        return None
