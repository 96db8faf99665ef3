"""
Configuration management using Pydantic Settings.

All configuration is loaded from environment variables with sensible defaults.
Use a .env file for local development.

Environment Variables:
    HUGGINGFACE_API_TOKEN: Bearer token for the embedding endpoint
    EMBEDDING_ENDPOINT: URL of the feature-extraction endpoint
    EMBEDDING_DIMENSIONS: Length of every persisted embedding vector
    CHUNK_SIZE: Character size for document chunks
    CHUNK_OVERLAP: Overlap between chunks
    DATABASE_URL: SQLAlchemy URL of the vector store
    LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR)
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Embedding Endpoint
    # ==========================================================================
    huggingface_api_token: Optional[SecretStr] = Field(
        default=None,
        description="Bearer token for the embedding endpoint",
    )
    embedding_endpoint: str = Field(
        default="https://api-inference.huggingface.co/pipeline/feature-extraction/thenlper/gte-large",
        description="Feature-extraction endpoint accepting {'inputs': ..., 'normalize': true}",
    )
    embedding_model: str = Field(
        default="thenlper/gte-large",
        description="Model name recorded in record metadata",
    )
    embedding_dimensions: int = Field(
        default=1024,
        ge=1,
        description="Length of every persisted embedding (pad/truncate to this)",
    )

    # ==========================================================================
    # Embedding Batching and Retry
    # ==========================================================================
    api_batch_size: int = Field(
        default=8,
        ge=1,
        description="Chunks per embedding call during document ingestion",
    )
    embedding_request_batch_size: int = Field(
        default=32,
        ge=1,
        description="Maximum texts per HTTP request (upstream limit)",
    )
    embedding_max_workers: int = Field(
        default=4,
        ge=1,
        le=16,
        description="Concurrent in-flight embedding requests",
    )
    embedding_max_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per request before giving up",
    )
    embedding_backoff_base: float = Field(
        default=15.0,
        ge=0.0,
        description="Base delay in seconds for batch request backoff",
    )
    embedding_single_backoff_base: float = Field(
        default=10.0,
        ge=0.0,
        description="Base delay in seconds for single-text request backoff",
    )
    embedding_backoff_jitter: float = Field(
        default=5.0,
        ge=0.0,
        description="Upper bound of the random jitter added to each delay",
    )
    embedding_backoff_max: float = Field(
        default=120.0,
        ge=0.0,
        description="Cap on the exponential part of the delay",
    )
    embedding_connect_timeout: float = Field(default=30.0, gt=0.0)
    embedding_read_timeout: float = Field(
        default=300.0,
        gt=0.0,
        description="Read timeout for batch requests",
    )
    embedding_single_read_timeout: float = Field(
        default=180.0,
        gt=0.0,
        description="Read timeout for single-text requests",
    )
    max_batch_chars: int = Field(
        default=100_000,
        ge=1,
        description="Batches above this many characters are split before sending",
    )

    # ==========================================================================
    # Chunking Configuration
    # ==========================================================================
    chunk_size: int = Field(
        default=512,
        ge=1,
        description="Target size in characters for document chunks",
    )
    chunk_overlap: int = Field(
        default=25,
        ge=0,
        description="Overlap between consecutive chunks",
    )
    parallel_threshold: int = Field(
        default=1_000_000,
        ge=1,
        description="Documents at least this long are chunked in parallel segments",
    )
    chunk_pool_timeout: float = Field(
        default=60.0,
        gt=0.0,
        description="Seconds to wait for parallel chunking workers",
    )

    # ==========================================================================
    # Vector Store
    # ==========================================================================
    database_url: str = Field(
        default="sqlite:///data/vectors.db",
        description="SQLAlchemy URL of the vector store",
    )
    db_commit_frequency: int = Field(
        default=10,
        ge=1,
        description="API batches buffered before a bulk insert",
    )
    dedup_batch_size: int = Field(
        default=1000,
        ge=1,
        description="Chunks per existence query when filtering duplicates",
    )

    # ==========================================================================
    # Chat Completion (RAG answers)
    # ==========================================================================
    chat_endpoint_url: Optional[str] = Field(
        default=None,
        description="OpenAI-compatible /v1/chat/completions URL used by ask()",
    )
    llm_temperature: float = Field(default=0.1, ge=0.0, le=2.0)
    llm_max_tokens: int = Field(default=1024, ge=1, le=8192)

    # ==========================================================================
    # Observability Configuration
    # ==========================================================================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )

    # ==========================================================================
    # Validators
    # ==========================================================================
    @field_validator("chunk_overlap")
    @classmethod
    def validate_chunk_overlap(cls, v: int, info) -> int:
        """Ensure overlap is less than chunk size."""
        chunk_size = info.data.get("chunk_size", 512)
        if v >= chunk_size:
            raise ValueError(f"chunk_overlap ({v}) must be less than chunk_size ({chunk_size})")
        return v

    # ==========================================================================
    # Computed Properties
    # ==========================================================================
    @property
    def api_token_value(self) -> Optional[str]:
        """Get the actual API token value (use sparingly)."""
        if self.huggingface_api_token:
            return self.huggingface_api_token.get_secret_value()
        return None


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Call `get_settings.cache_clear()` to reload settings.

    Returns:
        Settings: Application settings instance
    """
    return Settings()
