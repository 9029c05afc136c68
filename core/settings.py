from functools import lru_cache
from typing import List, Literal

from pydantic import BaseModel, Field, PostgresDsn, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class CustomSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


class AppSettings(CustomSettings):
    ENVIRONMENT: Literal["local", "dev", "prod"] = Field(default="local")
    LOG_LEVEL: str = Field(default="INFO")
    JSON_LOGS: bool = Field(default=True)


class PgDbSettings(CustomSettings):
    POSTGRES_ENGINE: str = Field(default="postgresql+asyncpg")
    POSTGRES_USER: str = Field(default="postgres")
    POSTGRES_PASSWORD: SecretStr = Field(default="postgres")
    POSTGRES_DB: str = Field(default="rag")
    POSTGRES_HOST: str = Field(default="localhost")
    POSTGRES_PORT: int = Field(default=5432)
    DATABASE_URL: PostgresDsn | str = Field(default="")

    @model_validator(mode="before")
    def validate_postgres_dsn(cls, data: dict):
        if isinstance(data, dict) and not data.get("DATABASE_URL"):
            _built_uri = PostgresDsn.build(
                scheme=data.get("POSTGRES_ENGINE", "postgresql+asyncpg"),
                username=data.get("POSTGRES_USER", "postgres"),
                password=data.get("POSTGRES_PASSWORD", "postgres"),
                host=data.get("POSTGRES_HOST", "localhost"),
                port=int(data.get("POSTGRES_PORT", 5432)),
                path=data.get("POSTGRES_DB", "rag"),
            ).unicode_string()
            data["DATABASE_URL"] = _built_uri
        return data


class OpenAISettings(CustomSettings):
    OPENAI_API_KEY: SecretStr = Field(default="")
    EMBEDDING_MODEL: str = Field(default="text-embedding-3-small")
    CHAT_MODEL: str = Field(default="gpt-4o-mini")
    TEMPERATURE: float = Field(default=0.7)
    MAX_TOKENS: int = Field(default=2048)
    REQUEST_TIMEOUT: float = Field(default=60.0)
    # SDK-level retries for opening the generation stream
    GENERATION_MAX_RETRIES: int = Field(default=2)


class EmbeddingSettings(CustomSettings):
    """Batching and retry policy for query embeddings.

    Env vars:
    - EMBED_BATCH_SIZE
    - EMBED_MAX_ATTEMPTS
    - EMBED_RETRY_DELAYS (JSON list of seconds)
    - EMBED_DIMENSIONS
    """

    EMBED_BATCH_SIZE: int = Field(default=100, ge=1)
    EMBED_MAX_ATTEMPTS: int = Field(default=3, ge=1)
    EMBED_RETRY_DELAYS: List[float] = Field(default_factory=lambda: [2.0, 4.0, 8.0])
    EMBED_DIMENSIONS: int = Field(default=1536)


class RagSettings(CustomSettings):
    """Query-time retrieval and answering configuration.

    Set via env vars:
    - RAG_MODE: ``strict`` forbids ungrounded answers, ``hybrid`` falls back
      to general knowledge
    - TOP_K
    - MIN_SCORE
    - RESPONSE_LANGUAGE: language of the fixed fallback texts
    - INDEX_BACKEND: ``pgvector`` or ``memory``
    - LEDGER_BACKEND: ``postgres`` or ``memory``
    """

    RAG_MODE: str = Field(default="hybrid")
    TOP_K: int = Field(default=5, ge=1)
    MIN_SCORE: float = Field(default=0.5, ge=0.0, le=1.0)
    RESPONSE_LANGUAGE: Literal["fi", "en"] = Field(default="fi")
    INDEX_BACKEND: Literal["pgvector", "memory"] = Field(default="pgvector")
    LEDGER_BACKEND: Literal["postgres", "memory"] = Field(default="postgres")


class StreamSettings(CustomSettings):
    STRICT_CHUNK_DELAY_MS: int = Field(default=50, ge=0)
    DISCLAIMER_PAUSE_MS: int = Field(default=100, ge=0)


class Settings(BaseModel):
    APP: AppSettings = Field(default_factory=AppSettings)
    DATABASE: PgDbSettings = Field(default_factory=PgDbSettings)
    OPENAI: OpenAISettings = Field(default_factory=OpenAISettings)
    EMBEDDING: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    RAG: RagSettings = Field(default_factory=RagSettings)
    STREAM: StreamSettings = Field(default_factory=StreamSettings)


@lru_cache
def get_settings() -> Settings:
    return Settings()


SETTINGS = get_settings()
