"""
CaseCoach Configuration Management

Centralized configuration using pydantic-settings with environment variable support.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, RedisDsn, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ══════════════════════════════════════════════════════════════
    # Application
    # ══════════════════════════════════════════════════════════════
    app_name: str = "CaseCoach"
    app_env: Literal["development", "staging", "production"] = "development"
    debug: bool = False
    log_level: str = "INFO"
    api_version: str = "v1"
    public_ws_base_url: str = "ws://localhost:8000"
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # ══════════════════════════════════════════════════════════════
    # Chunk Staging
    # ══════════════════════════════════════════════════════════════
    chunk_temp_dir: Path = Field(default_factory=lambda: Path.cwd() / "temp")
    ffmpeg_binary: str = "ffmpeg"
    transcode_sample_rate: int = 16000
    transcode_channels: int = 1
    transcode_codec: str = "pcm_s16le"

    # concat: join every audio chunk in chunkIndex order
    # last:   legacy behaviour, keep only the highest chunkIndex
    audio_combine_strategy: Literal["concat", "last"] = "concat"

    # ══════════════════════════════════════════════════════════════
    # Processing
    # ══════════════════════════════════════════════════════════════
    processing_timeout_seconds: float = 120.0  # 0 disables the bound
    embedding_dimensions: int = 384

    # ══════════════════════════════════════════════════════════════
    # Storage
    # ══════════════════════════════════════════════════════════════
    storage_backend: Literal["memory", "redis"] = "memory"
    redis_url: RedisDsn = Field(default="redis://localhost:6379/0")
    redis_key_prefix: str = "casecoach"

    # ══════════════════════════════════════════════════════════════
    # LLM / ASR
    # ══════════════════════════════════════════════════════════════
    llm_provider: Literal["anthropic", "openai", "none"] = "anthropic"
    anthropic_api_key: str = ""
    openai_api_key: str = ""
    llm_model: str = "claude-3-5-sonnet-20241022"
    openai_model: str = "gpt-4o-mini"
    openai_embedding_model: str = "text-embedding-3-small"
    llm_max_tokens: int = 1024

    whisper_model: str = "large-v3"
    asr_language: str | None = "en"

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: str | list[str]) -> list[str]:
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",")]
        return v

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def processing_timeout(self) -> float | None:
        """Timeout for one processing run, or None when unbounded."""
        if self.processing_timeout_seconds <= 0:
            return None
        return self.processing_timeout_seconds


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()
