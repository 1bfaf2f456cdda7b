import asyncio
import logging
import uuid
from typing import List, Optional

from sqlalchemy import (
    Column, DateTime, Float, Index, JSON, MetaData, String, Table, Text, UniqueConstraint,
    delete, func, or_, select, text, update,
)
from sqlalchemy.engine import Engine

from app.core.exceptions import MemoryConfigurationError
from app.schemas.memory import MemoryItem, MemoryQuery, MemoryWrite
from app.services.memory.base import MemoryStore, hash_memory_content, normalize_importance, utcnow

logger = logging.getLogger(__name__)

TABLE_NAME = "agent_memories"
UNIQUE_COLUMNS = ("workspace_id", "agent_id", "scope", "scope_key", "type", "content_hash")
COALESCED_COLUMNS = ("tags", "metadata", "expires_at", "source", "embedding")


def build_memory_table(metadata: MetaData, vector_dimensions: Optional[int] = None) -> Table:
    if vector_dimensions:
        from pgvector.sqlalchemy import Vector
        embedding_type = Vector(vector_dimensions)
    else:
        embedding_type = JSON(none_as_null=True)
    return Table(
        TABLE_NAME,
        metadata,
        Column("id", String(36), primary_key=True),
        Column("workspace_id", String(36), nullable=False),
        Column("agent_id", String(191), nullable=False),
        Column("scope", String(32), nullable=False),
        Column("scope_key", String(191), nullable=False),
        Column("type", String(32), nullable=False),
        Column("content", Text, nullable=False),
        Column("importance", Float, nullable=False, default=0.5),
        Column("tags", JSON(none_as_null=True), nullable=True),
        Column("metadata", JSON(none_as_null=True), nullable=True),
        Column("content_hash", String(64), nullable=False),
        Column("source", String(32), nullable=True),
        Column("embedding", embedding_type, nullable=True),
        Column("created_at", DateTime, nullable=False),
        Column("last_accessed_at", DateTime, nullable=True),
        Column("expires_at", DateTime, nullable=True),
        UniqueConstraint(*UNIQUE_COLUMNS, name="uq_agent_memories_content"),
        Index("ix_agent_memories_lookup", "workspace_id", "agent_id", "scope", "scope_key"),
        Index("ix_agent_memories_expires", "expires_at"),
    )


class SqlMemoryStore(MemoryStore):
    """
    Relational memory store on a SQLAlchemy engine.

    On PostgreSQL the pgvector extension is enabled when available and queries
    carrying an embedding are ranked by cosine similarity. Other dialects (and
    PostgreSQL without the extension) order by recency.
    """

    provider = "postgres"
    SUPPORTED_DIALECTS = ("postgresql", "sqlite", "mysql", "mariadb")

    def __init__(self, engine: Engine, vector_dimensions: Optional[int] = None):
        if engine.dialect.name not in self.SUPPORTED_DIALECTS:
            raise MemoryConfigurationError(f"Unsupported database dialect '{engine.dialect.name}' for memory store")
        self.engine = engine
        self.dialect = engine.dialect.name
        self.vector_dimensions = vector_dimensions
        self.supports_vector = False
        self.table: Optional[Table] = None
        self._schema_lock = asyncio.Lock()

    # -- schema ---------------------------------------------------------------

    def _create_schema(self):
        if self.dialect == "postgresql" and self.vector_dimensions:
            try:
                with self.engine.begin() as conn:
                    conn.execute(text("CREATE EXTENSION IF NOT EXISTS vector"))
                self.supports_vector = True
            except Exception as e:
                logger.warning("pgvector extension unavailable, memory falls back to recency ordering: %s", e)
        metadata = MetaData()
        table = build_memory_table(metadata, self.vector_dimensions if self.supports_vector else None)
        metadata.create_all(self.engine)
        self.table = table

    async def ensure_schema(self):
        if self.table is not None:
            return
        async with self._schema_lock:
            if self.table is None:
                await asyncio.to_thread(self._create_schema)

    # -- helpers --------------------------------------------------------------

    def _insert(self):
        if self.dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        elif self.dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        else:
            from sqlalchemy.dialects.mysql import insert
        return insert(self.table)

    def _upsert_statement(self, row: dict):
        table = self.table
        stmt = self._insert().values(**row)
        now = utcnow()
        if self.dialect in ("mysql", "mariadb"):
            incoming = stmt.inserted
            changes = {"importance": func.greatest(table.c.importance, incoming.importance), "last_accessed_at": now}
            for name in COALESCED_COLUMNS:
                changes[name] = func.coalesce(incoming[name], table.c[name])
            return stmt.on_duplicate_key_update(**changes)

        incoming = stmt.excluded
        greatest = func.greatest if self.dialect == "postgresql" else func.max
        changes = {"importance": greatest(table.c.importance, incoming.importance), "last_accessed_at": now}
        for name in COALESCED_COLUMNS:
            changes[name] = func.coalesce(incoming[name], table.c[name])
        return stmt.on_conflict_do_update(index_elements=list(UNIQUE_COLUMNS), set_=changes)

    def _row_for(self, write: MemoryWrite, now) -> dict:
        embedding = list(write.embedding) if write.embedding else None
        if embedding and self.supports_vector and len(embedding) != self.vector_dimensions:
            logger.warning("Dropping embedding with %s dimensions (column expects %s)", len(embedding), self.vector_dimensions)
            embedding = None
        return {
            "id": str(uuid.uuid4()),
            "workspace_id": write.workspace_id,
            "agent_id": write.agent_id,
            "scope": write.scope.value,
            "scope_key": write.scope_key,
            "type": write.type.value,
            "content": write.content,
            "importance": normalize_importance(write.importance),
            "tags": write.tags,
            "metadata": write.metadata,
            "content_hash": hash_memory_content(write.type.value, write.content),
            "source": write.source,
            "embedding": embedding,
            "created_at": now,
            "last_accessed_at": now,
            "expires_at": write.expires_at,
        }

    @staticmethod
    def _to_item(row) -> MemoryItem:
        data = dict(row._mapping)
        embedding = data.get("embedding")
        if embedding is not None:
            embedding = [float(v) for v in embedding]
        return MemoryItem(
            id=data["id"],
            workspace_id=data["workspace_id"],
            agent_id=data["agent_id"],
            scope=data["scope"],
            scope_key=data["scope_key"],
            type=data["type"],
            content=data["content"],
            importance=data["importance"],
            tags=data.get("tags"),
            metadata=data.get("metadata"),
            content_hash=data["content_hash"],
            source=data.get("source"),
            embedding=embedding,
            created_at=data["created_at"],
            last_accessed_at=data.get("last_accessed_at"),
            expires_at=data.get("expires_at"),
        )

    # -- contract -------------------------------------------------------------

    def _put_sync(self, items: List[MemoryWrite]):
        now = utcnow()
        with self.engine.begin() as conn:
            for write in items:
                conn.execute(self._upsert_statement(self._row_for(write, now)))

    async def put(self, items: List[MemoryWrite]) -> None:
        if not items:
            return
        await self.ensure_schema()
        await asyncio.to_thread(self._put_sync, items)

    def _query_sync(self, query: MemoryQuery) -> List[MemoryItem]:
        table = self.table
        now = utcnow()
        stmt = (
            select(table)
            .where(table.c.workspace_id == query.workspace_id)
            .where(table.c.agent_id == query.agent_id)
            .where(table.c.scope == query.scope.value)
            .where(table.c.scope_key == query.scope_key)
            .where(or_(table.c.expires_at.is_(None), table.c.expires_at > now))
        )
        if query.types:
            stmt = stmt.where(table.c.type.in_([t.value for t in query.types]))
        if query.min_importance is not None:
            stmt = stmt.where(table.c.importance >= query.min_importance)

        if query.embedding and self.supports_vector:
            distance = table.c.embedding.cosine_distance(query.embedding)
            stmt = stmt.where(table.c.embedding.is_not(None))
            if query.similarity_threshold is not None:
                stmt = stmt.where((1 - distance) >= query.similarity_threshold)
            stmt = stmt.order_by(distance.asc())
        else:
            stmt = stmt.order_by(table.c.created_at.desc())
        stmt = stmt.limit(query.limit)

        with self.engine.connect() as conn:
            return [self._to_item(row) for row in conn.execute(stmt)]

    async def query(self, query: MemoryQuery) -> List[MemoryItem]:
        await self.ensure_schema()
        return await asyncio.to_thread(self._query_sync, query)

    def _touch_sync(self, ids: List[str]):
        with self.engine.begin() as conn:
            conn.execute(update(self.table).where(self.table.c.id.in_(ids)).values(last_accessed_at=utcnow()))

    async def touch(self, ids: List[str]) -> None:
        if not ids:
            return
        await self.ensure_schema()
        await asyncio.to_thread(self._touch_sync, list(ids))

    def _delete_expired_sync(self) -> int:
        table = self.table
        with self.engine.begin() as conn:
            result = conn.execute(delete(table).where(table.c.expires_at.is_not(None)).where(table.c.expires_at <= utcnow()))
            return result.rowcount or 0

    async def delete_expired(self) -> int:
        await self.ensure_schema()
        return await asyncio.to_thread(self._delete_expired_sync)


class PostgresMemoryStore(SqlMemoryStore):
    provider = "postgres"


class MariaDbMemoryStore(SqlMemoryStore):
    provider = "mariadb"

    def __init__(self, engine: Engine):
        if engine.dialect.name not in ("mysql", "mariadb"):
            raise MemoryConfigurationError("MariaDB memory store requires a mysql:// or mariadb:// connection string")
        super().__init__(engine, vector_dimensions=None)
