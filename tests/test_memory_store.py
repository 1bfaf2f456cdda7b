import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from app.core.exceptions import MemoryConfigurationError
from app.schemas.memory import MemoryItem, MemoryQuery, MemoryScope, MemorySettings, MemoryType, MemoryWrite
from app.services.memory.base import cosine_similarity, normalize_importance, utcnow
from app.services.memory.factory import create_memory_store
from app.services.memory.hybrid_store import HybridMemoryStore
from app.services.memory.in_memory_store import InMemoryMemoryStore
from app.services.memory.redis_store import RedisMemoryStore
from app.services.memory.sql_store import MariaDbMemoryStore, PostgresMemoryStore


class FakeRedis:
    """The handful of list commands the redis store relies on."""

    def __init__(self):
        self.lists = {}
        self.ttls = {}

    async def lrange(self, key, start, stop):
        return list(self.lists.get(key, [])[start:stop + 1])

    async def lset(self, key, index, value):
        self.lists[key][index] = value

    async def lpush(self, key, value):
        self.lists.setdefault(key, []).insert(0, value)

    async def ltrim(self, key, start, stop):
        self.lists[key] = self.lists.get(key, [])[start:stop + 1]

    async def expire(self, key, seconds):
        self.ttls[key] = seconds


def write(content, importance=0.5, memory_type=MemoryType.SEMANTIC, scope_key="session-1", expires_at=None):
    return MemoryWrite(
        workspace_id="ws-1",
        agent_id="agent",
        scope=MemoryScope.SESSION,
        scope_key=scope_key,
        type=memory_type,
        content=content,
        importance=importance,
        expires_at=expires_at,
    )


def query(**overrides):
    values = {"workspace_id": "ws-1", "agent_id": "agent", "scope": MemoryScope.SESSION, "scope_key": "session-1"}
    values.update(overrides)
    return MemoryQuery(**values)


@pytest.fixture
def sqlite_store():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    yield PostgresMemoryStore(engine)
    engine.dispose()


@pytest.fixture(params=["in-memory", "sql", "redis"])
def store(request, sqlite_store):
    if request.param == "sql":
        return sqlite_store
    if request.param == "redis":
        return RedisMemoryStore(FakeRedis())
    return InMemoryMemoryStore()


@pytest.mark.asyncio
async def test_duplicate_content_keeps_highest_importance(store):
    await store.put([write("User name: Ana", 0.4)])
    await store.put([write("User name: Ana", 0.9)])
    await store.put([write("User name: Ana", 0.2)])

    items = await store.query(query())

    assert len(items) == 1
    assert items[0].importance == pytest.approx(0.9)


@pytest.mark.asyncio
async def test_expired_items_are_never_returned(store):
    past = utcnow() - datetime.timedelta(days=1)
    future = utcnow() + datetime.timedelta(days=1)
    await store.put([write("old fact", expires_at=past), write("fresh fact", expires_at=future)])

    items = await store.query(query())

    assert [item.content for item in items] == ["fresh fact"]


@pytest.mark.asyncio
async def test_query_filters_partition_type_and_importance(store):
    await store.put([
        write("fact", 0.8),
        write("episode", 0.8, memory_type=MemoryType.EPISODIC),
        write("minor fact", 0.1),
        write("other session", 0.8, scope_key="session-2"),
    ])

    items = await store.query(query(types=[MemoryType.SEMANTIC], min_importance=0.35))

    assert [item.content for item in items] == ["fact"]


@pytest.mark.asyncio
async def test_sql_store_purges_expired_rows(sqlite_store):
    await sqlite_store.put([write("old fact", expires_at=utcnow() - datetime.timedelta(minutes=1)), write("kept")])

    assert await sqlite_store.delete_expired() == 1
    assert [item.content for item in await sqlite_store.query(query())] == ["kept"]


@pytest.mark.asyncio
async def test_redis_store_refreshes_key_ttl():
    client = FakeRedis()
    store = RedisMemoryStore(client, ttl_seconds=60)

    await store.put([write("fact")])

    key = RedisMemoryStore.build_key("ws-1", "agent", "session", "session-1")
    assert client.ttls == {key: 60}
    assert len(client.lists[key]) == 1


@pytest.mark.asyncio
async def test_in_memory_store_ranks_by_similarity():
    store = InMemoryMemoryStore()
    near = write("near")
    near.embedding = [1.0, 0.0]
    far = write("far")
    far.embedding = [0.0, 1.0]
    await store.put([near, far])

    items = await store.query(query(embedding=[0.9, 0.1], similarity_threshold=0.5))

    assert [item.content for item in items] == ["near"]


@pytest.mark.asyncio
async def test_hybrid_store_falls_back_to_durable_and_fills_cache(runtime):
    durable = InMemoryMemoryStore()
    cache = InMemoryMemoryStore()
    store = HybridMemoryStore(durable, cache, runtime, write_through=False)
    await durable.put([write("durable fact")])

    items = await store.query(query())
    await runtime.drain()

    assert [item.content for item in items] == ["durable fact"]
    assert [item.content for item in await cache.query(query())] == ["durable fact"]


@pytest.mark.asyncio
async def test_hybrid_cache_fill_keeps_durable_ids_and_recency(runtime):
    now = utcnow()
    older = MemoryItem(**write("older fact").model_dump(), id="mem-1", created_at=now - datetime.timedelta(hours=1))
    newer = MemoryItem(**write("newer fact").model_dump(), id="mem-2", created_at=now)
    durable = InMemoryMemoryStore()
    await durable.put([older, newer])
    cache = RedisMemoryStore(FakeRedis())
    store = HybridMemoryStore(durable, cache, runtime, write_through=False)

    items = await store.query(query())
    await runtime.drain()
    cached = await cache.query(query())

    assert [item.id for item in items] == ["mem-2", "mem-1"]
    assert [item.id for item in cached] == ["mem-2", "mem-1"]
    assert cached[1].created_at == older.created_at
    assert cached[0].expires_at is not None


@pytest.mark.asyncio
async def test_factory_rejects_unknown_provider(runtime):
    with pytest.raises(MemoryConfigurationError):
        create_memory_store(MemorySettings(provider="cassandra"), runtime)


@pytest.mark.asyncio
async def test_factory_requires_redis_url(runtime):
    runtime.settings = runtime.settings.model_copy(update={"MEMORY_REDIS_URL": ""})
    with pytest.raises(MemoryConfigurationError):
        create_memory_store(MemorySettings(provider="redis"), runtime)


def test_mariadb_store_rejects_other_dialects(sqlite_store):
    with pytest.raises(MemoryConfigurationError):
        MariaDbMemoryStore(sqlite_store.engine)


def test_helpers():
    assert normalize_importance(None) == 0.5
    assert normalize_importance(float("nan")) == 0.5
    assert normalize_importance(3) == 1.0
    assert cosine_similarity([1, 0], [1, 0]) == pytest.approx(1.0)
    assert cosine_similarity([1, 0], [1, 0, 0]) == 0.0
