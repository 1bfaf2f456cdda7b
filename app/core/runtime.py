"""
Flow Runtime

Process-wide resources used while driving flows, owned by one explicit object
instead of module-level singletons. The FastAPI startup hook builds a single
FlowRuntime and stores it on ``app.state.runtime``; the shutdown hook closes it.

Owned resources:
- SQLAlchemy engines for memory stores, keyed by connection string
- redis clients, keyed by connection string
- memory store instances, keyed by their configuration
- the OpenAI-compatible LLM client
- per-session locks serializing webhook deliveries for one session key
- fire-and-forget background tasks (cache population, memory recording)
"""
import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Dict, Optional, Set

import redis.asyncio as redis
from openai import AsyncOpenAI
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from app.core.config import settings as default_settings
from app.core.database import SessionLocal, build_engine_kwargs

logger = logging.getLogger(__name__)


class FlowRuntime:
    def __init__(self, settings=None, session_factory=None):
        self.settings = settings or default_settings
        self.session_factory = session_factory or SessionLocal
        self._engines: Dict[str, Engine] = {}
        self._redis_clients: Dict[str, Any] = {}
        self._memory_stores: Dict[tuple, Any] = {}
        self._session_locks: Dict[str, asyncio.Lock] = {}
        self._lock_holders: Dict[str, int] = defaultdict(int)
        self._background_tasks: Set[asyncio.Task] = set()
        self._llm_client: Optional[AsyncOpenAI] = None
        self.closed = False

    # -- connection caches -------------------------------------------------

    def get_engine(self, url: str) -> Engine:
        engine = self._engines.get(url)
        if engine is None:
            engine = create_engine(url, **build_engine_kwargs(url, pool_size=self.settings.MEMORY_POOL_SIZE))
            self._engines[url] = engine
            logger.info("Created memory database engine for %s", engine.url.render_as_string(hide_password=True))
        return engine

    def get_redis(self, url: str):
        client = self._redis_clients.get(url)
        if client is None:
            client = redis.from_url(url, decode_responses=True)
            self._redis_clients[url] = client
        return client

    def get_llm_client(self) -> Optional[AsyncOpenAI]:
        if not self.settings.OPENAI_API_KEY:
            return None
        if self._llm_client is None:
            self._llm_client = AsyncOpenAI(
                api_key=self.settings.OPENAI_API_KEY,
                base_url=self.settings.OPENAI_BASE_URL or None,
                timeout=self.settings.AGENT_LLM_TIMEOUT_SECONDS,
            )
        return self._llm_client

    def get_memory_store(self, config):
        """Returns the cached store for a MemorySettings, building it on first use.

        Raises MemoryConfigurationError for an unusable configuration.
        """
        from app.services.memory.factory import create_memory_store

        key = config.cache_key()
        store = self._memory_stores.get(key)
        if store is None:
            store = create_memory_store(config, self)
            self._memory_stores[key] = store
        return store

    # -- per-session serialization ------------------------------------------

    @asynccontextmanager
    async def session_guard(self, session_key: str):
        """Holds the session's lock for the whole load → execute → persist cycle."""
        lock = self._session_locks.get(session_key)
        if lock is None:
            lock = self._session_locks[session_key] = asyncio.Lock()
        self._lock_holders[session_key] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_holders[session_key] -= 1
            if self._lock_holders[session_key] <= 0:
                self._lock_holders.pop(session_key, None)
                self._session_locks.pop(session_key, None)

    # -- background work ----------------------------------------------------

    def spawn_background(self, coro: Awaitable, name: str = "background") -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)

        def _done(t: asyncio.Task):
            self._background_tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.warning("Background task '%s' failed: %s", name, exc)

        task.add_done_callback(_done)
        return task

    async def drain(self):
        """Waits for outstanding background tasks."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def purge_expired_memories(self):
        for store in list(self._memory_stores.values()):
            try:
                await store.delete_expired()
            except Exception as e:
                logger.warning("Memory purge failed for provider '%s': %s", store.provider, e)

    async def close(self):
        if self.closed:
            return
        self.closed = True
        await self.drain()
        for store in self._memory_stores.values():
            try:
                await store.close()
            except Exception as e:
                logger.warning("Failed to close memory store '%s': %s", store.provider, e)
        self._memory_stores.clear()
        for client in self._redis_clients.values():
            await client.aclose()
        self._redis_clients.clear()
        for engine in self._engines.values():
            engine.dispose()
        self._engines.clear()
        if self._llm_client is not None:
            await self._llm_client.close()
            self._llm_client = None
        logger.info("[Shutdown] Flow runtime closed")
