from typing import Optional

from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    PROJECT_NAME: str = "ChatFlow Runtime"
    API_V1_STR: str = "/api/v1"
    DATABASE_URL: str
    LOG_LEVEL: str = "INFO"

    # Server configuration
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    CORS_ORIGINS: str = "http://localhost:8080,http://localhost:5173,*"

    # LLM generation (OpenAI-compatible endpoint)
    OPENAI_API_KEY: str = ""
    OPENAI_BASE_URL: Optional[str] = None
    AGENT_LLM_MODEL: str = "gpt-4o-mini"
    AGENT_LLM_TIMEOUT_SECONDS: float = 60.0
    AGENT_MAX_TOOL_ROUNDS: int = 4
    AGENT_BUBBLE_DELAY_MS: int = 800
    AGENT_CLASSIFIER_CONFIDENCE_FLOOR: float = 0.6

    # Flow engine
    FLOW_MAX_STEPS_PER_RUN: int = 250
    HTTP_REQUEST_TIMEOUT_SECONDS: float = 30.0
    CODE_EXECUTION_DEFAULT_TIMEOUT_MS: int = 2000
    CODE_EXECUTION_MAX_TIMEOUT_MS: int = 10000
    CODE_EXECUTION_MEMORY_LIMIT_MB: int = 256

    # Long-term agent memory
    MEMORY_DEFAULT_PROVIDER: str = "postgres"
    MEMORY_REDIS_URL: str = ""
    MEMORY_MARIADB_URL: str = ""
    MEMORY_POOL_SIZE: int = 5
    MEMORY_EMBEDDING_MODEL_EPISODIC: str = "openai-text-embedding-3-small"
    MEMORY_EMBEDDING_MODEL_SEMANTIC: str = "openai-text-embedding-3-large"
    MEMORY_EMBEDDING_DIMENSIONS: int = 1536
    MEMORY_SIMILARITY_THRESHOLD: float = 0.2
    MEMORY_PURGE_INTERVAL_SECONDS: int = 3600

    class Config:
        env_file = ".env"
        env_file_encoding = 'utf-8'

settings = Settings()
