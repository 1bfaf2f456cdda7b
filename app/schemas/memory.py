import enum
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field
from datetime import datetime


class MemoryScope(str, enum.Enum):
    SESSION = "session"
    USER = "user"
    WORKSPACE = "workspace"


class MemoryType(str, enum.Enum):
    SEMANTIC = "semantic"
    EPISODIC = "episodic"
    PROCEDURAL = "procedural"


class MemoryWrite(BaseModel):
    workspace_id: str
    agent_id: str
    scope: MemoryScope
    scope_key: str
    type: MemoryType
    content: str
    importance: Optional[float] = None
    tags: Optional[List[str]] = None
    metadata: Optional[Dict[str, Any]] = None
    embedding: Optional[List[float]] = None
    source: Optional[str] = None
    expires_at: Optional[datetime] = None


class MemoryItem(MemoryWrite):
    id: str
    importance: float = 0.5
    content_hash: Optional[str] = None
    created_at: Optional[datetime] = None
    last_accessed_at: Optional[datetime] = None


class MemoryQuery(BaseModel):
    workspace_id: str
    agent_id: str
    scope: MemoryScope
    scope_key: str
    types: Optional[List[MemoryType]] = None
    min_importance: Optional[float] = None
    limit: int = 200
    embedding: Optional[List[float]] = None
    similarity_threshold: Optional[float] = None


class MemorySettings(BaseModel):
    provider: str = "postgres"
    connection_string: Optional[str] = None
    cache_connection_string: Optional[str] = None
    scope: MemoryScope = MemoryScope.SESSION
    scope_key_variable: Optional[str] = None
    retention_days: int = 14
    max_items: int = 60
    min_importance: float = 0.35
    embeddings_enabled: bool = False
    embedding_model: Optional[str] = None
    cache_ttl_seconds: int = 3600
    write_through: bool = True

    def cache_key(self) -> tuple:
        return (
            self.provider,
            self.connection_string or "",
            self.cache_connection_string or "",
            self.cache_ttl_seconds,
            self.write_through,
        )


class MemoryCandidate(BaseModel):
    type: MemoryType
    content: str
    importance: float = 0.5
    ttl_days: Optional[int] = None
    tags: List[str] = Field(default_factory=list)


class MemoryContext(BaseModel):
    facts: List[MemoryItem] = []
    episodes: List[MemoryItem] = []
    procedures: List[MemoryItem] = []
    summary: str = ""
