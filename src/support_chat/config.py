"""Centralized configuration for the support chat service."""

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from support_chat.errors import ConfigurationError
from support_chat.models import RelevanceCategory


class LLMConfig(BaseSettings):
    """Ollama chat model settings."""

    model_config = SettingsConfigDict(env_prefix="LLM_", frozen=True)

    host: str = "http://localhost:11434"
    api_key: SecretStr | None = None
    model: str = "gemma3:1b"
    temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    citation_temperature: float = Field(default=0.1, ge=0.0, le=2.0)
    max_tokens: int = Field(default=1024, gt=0)


class EmbeddingConfig(BaseSettings):
    """Ollama embedding model settings."""

    model_config = SettingsConfigDict(env_prefix="EMBED_", frozen=True)

    model: str = "nomic-embed-text"
    max_chars: int = Field(default=8000, gt=0)


class VectorStoreConfig(BaseSettings):
    """ChromaDB vector store settings."""

    model_config = SettingsConfigDict(env_prefix="VS_", frozen=True)

    db_path: str = "./chroma_db"
    host: str | None = None
    port: int = Field(default=8000, gt=0, le=65535)
    collection_name: str = "amac"
    top_k: int = Field(default=5, gt=0)
    batch_size: int = Field(default=100, gt=0)
    max_retries: int = Field(default=3, gt=0)
    retry_delay_s: float = Field(default=1.0, ge=0.0)
    pool_size: int = Field(default=4, gt=0)


class PipelineConfig(BaseSettings):
    """Request pipeline settings."""

    model_config = SettingsConfigDict(env_prefix="PIPELINE_", frozen=True)

    timeout_s: float = Field(default=290.0, gt=0)
    classifier_history: int = Field(default=3, ge=0)
    rewrite_history: int = Field(default=5, ge=0)
    generation_history: int = Field(default=5, ge=0)
    unparseable_category: RelevanceCategory = RelevanceCategory.RELEVANT
    citation_ttl_s: float = Field(default=300.0, gt=0)

    @field_validator("unparseable_category", mode="before")
    @classmethod
    def _parse_category(cls, v: object) -> object:
        """Accept category names such as ``relevant`` or ``NOT RELEVANT``."""
        if isinstance(v, str):
            parsed = RelevanceCategory.parse(v)
            if parsed is None:
                msg = f"unknown relevance category: {v!r}"
                raise ValueError(msg)
            return parsed
        return v


class AppConfig(BaseSettings):
    """Top-level application configuration."""

    model_config = SettingsConfigDict(frozen=True)

    llm: LLMConfig = Field(default_factory=LLMConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    vector_store: VectorStoreConfig = Field(default_factory=VectorStoreConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)

    def require_credentials(self) -> None:
        """Raise ``ConfigurationError`` when the model endpoint is unusable."""
        if not self.llm.host.strip():
            raise ConfigurationError("LLM_HOST is not configured")
        if self.llm.api_key is not None and not self.llm.api_key.get_secret_value():
            raise ConfigurationError("LLM_API_KEY is set but empty")
