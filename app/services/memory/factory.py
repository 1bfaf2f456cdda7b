import logging

from app.core.exceptions import MemoryConfigurationError
from app.schemas.memory import MemorySettings
from app.services.memory.base import MemoryStore
from app.services.memory.hybrid_store import HybridMemoryStore
from app.services.memory.in_memory_store import InMemoryMemoryStore
from app.services.memory.redis_store import RedisMemoryStore
from app.services.memory.sql_store import MariaDbMemoryStore, PostgresMemoryStore

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("postgres", "mariadb", "redis", "in-memory", "hybrid")


def create_memory_store(config: MemorySettings, runtime) -> MemoryStore:
    """
    Builds a memory store for the given configuration.

    Raises:
        MemoryConfigurationError: unknown provider or missing connection string.
    """
    settings = runtime.settings
    provider = (config.provider or settings.MEMORY_DEFAULT_PROVIDER).strip().lower()

    if provider == "postgres":
        url = config.connection_string or settings.DATABASE_URL
        return PostgresMemoryStore(runtime.get_engine(url), vector_dimensions=settings.MEMORY_EMBEDDING_DIMENSIONS)

    if provider == "mariadb":
        url = config.connection_string or settings.MEMORY_MARIADB_URL
        if not url:
            raise MemoryConfigurationError("MariaDB memory provider requires a connection string")
        return MariaDbMemoryStore(runtime.get_engine(url))

    if provider == "redis":
        url = config.connection_string or settings.MEMORY_REDIS_URL
        if not url:
            raise MemoryConfigurationError("Redis memory provider requires a connection string")
        return RedisMemoryStore(runtime.get_redis(url))

    if provider in ("in-memory", "memory"):
        return InMemoryMemoryStore()

    if provider == "hybrid":
        cache_url = config.cache_connection_string or settings.MEMORY_REDIS_URL
        if not cache_url:
            raise MemoryConfigurationError("Hybrid memory provider requires a cache (redis) connection string")
        durable_url = config.connection_string or settings.DATABASE_URL
        durable = PostgresMemoryStore(runtime.get_engine(durable_url), vector_dimensions=settings.MEMORY_EMBEDDING_DIMENSIONS)
        cache = RedisMemoryStore(runtime.get_redis(cache_url), ttl_seconds=config.cache_ttl_seconds)
        return HybridMemoryStore(
            durable, cache, runtime,
            cache_ttl_seconds=config.cache_ttl_seconds,
            write_through=config.write_through,
        )

    raise MemoryConfigurationError(
        f"Unknown memory provider '{provider}'. Supported: {', '.join(SUPPORTED_PROVIDERS)}"
    )
