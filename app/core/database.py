from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from app.core.config import settings


def build_engine_kwargs(url: str, pool_size: int = 20) -> dict:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}  # only for SQLite
    return {
        "pool_size": pool_size,
        "max_overflow": pool_size // 2,
        "pool_pre_ping": True,  # Test connections before using them to detect stale connections
        "pool_recycle": 3600,  # Recycle connections after 1 hour
        "pool_timeout": 30,
    }


engine = create_engine(settings.DATABASE_URL, **build_engine_kwargs(settings.DATABASE_URL))
# Flow sessions are mutated in place and must survive intermediate commits.
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

Base = declarative_base()
