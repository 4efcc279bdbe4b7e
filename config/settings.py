"""
Configuration management for the requirements extraction pipeline.
"""

import logging
from typing import Optional

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Model Configuration
    default_model: str = Field(
        default="llama3.2", description="Model used when a job does not name one"
    )
    default_token_estimator: str = Field(
        default="approx-4",
        description="Estimator key used for model ids missing from the model family table",
    )

    # Ollama Configuration
    ollama_base_url: str = Field(
        default="http://localhost:11434", description="Ollama base URL"
    )

    # Apache Tika Configuration
    tika_url: str = Field(default="http://localhost:9998", description="Apache Tika server URL")
    tika_timeout: float = Field(default=60.0, description="Tika request timeout in seconds")

    # Neo4j Configuration
    neo4j_uri: str = Field(
        default="bolt://localhost:7687", description="Neo4j connection URI"
    )
    neo4j_username: str = Field(default="neo4j", description="Neo4j username")
    neo4j_password: str = Field(default="neo4j", description="Neo4j password")
    persist_to_graph: bool = Field(
        default=False, description="Hand the merged graph to the graph store after extraction"
    )

    # Job Store Configuration
    job_store_backend: str = Field(
        default="memory", description="Job store backend: memory or redis"
    )
    redis_url: Optional[str] = Field(default=None, description="Redis URL for the redis job store")

    # Chunking Configuration
    chunk_target_tokens: int = Field(default=800, description="Target tokens per chunk")
    chunk_overlap_tokens: int = Field(default=100, description="Token overlap between chunks")

    # LLM Call Configuration
    llm_concurrency: int = Field(default=2, description="Concurrent model calls per job")
    llm_max_retries: int = Field(
        default=3, description="Retries for transient model failures (timeouts, 5xx)"
    )
    llm_retry_base_delay: float = Field(default=3.0, description="Base backoff delay in seconds")
    llm_retry_max_delay: float = Field(default=180.0, description="Maximum backoff delay in seconds")
    llm_timeout: float = Field(default=300.0, description="Timeout of a single model call in seconds")
    llm_temperature: float = Field(default=0.3, description="Sampling temperature for extraction")
    llm_max_tokens: int = Field(default=8192, description="Maximum completion tokens per call")

    log_level: str = Field(default="INFO", description="Logging level")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


# Global settings instance - will read from environment or use defaults
settings = Settings()


class ExtractionOptions(BaseModel):
    """Per-job extraction options, defaulted from the global settings."""

    model: str = Field(default_factory=lambda: settings.default_model)
    chunk_target_tokens: int = Field(default_factory=lambda: settings.chunk_target_tokens)
    chunk_overlap_tokens: int = Field(default_factory=lambda: settings.chunk_overlap_tokens)
    concurrency: int = Field(default_factory=lambda: settings.llm_concurrency)
    max_retries: int = Field(default_factory=lambda: settings.llm_max_retries)
    retry_base_delay: float = Field(default_factory=lambda: settings.llm_retry_base_delay)
    retry_max_delay: float = Field(default_factory=lambda: settings.llm_retry_max_delay)
    temperature: float = Field(default_factory=lambda: settings.llm_temperature)
    max_tokens: int = Field(default_factory=lambda: settings.llm_max_tokens)
    persist: bool = Field(default_factory=lambda: settings.persist_to_graph)

    @model_validator(mode="after")
    def _check_limits(self) -> "ExtractionOptions":
        # chunk bounds are checked by the chunker
        if self.concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        return self
