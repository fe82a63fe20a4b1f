from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration for the CaseLens API."""

    app_name: str = "CaseLens API"
    app_version: str = "0.1.0"

    database_url: str = Field(default="sqlite:///storage/caselens.db")
    database_echo: bool = Field(default=False)

    vector_backend: Literal["memory", "qdrant"] = Field(default="memory")
    vector_dir: Path = Field(default=Path("storage/vector"))
    qdrant_url: Optional[str] = Field(default=None)
    qdrant_path: Optional[str] = Field(default=None)
    qdrant_collection: str = Field(default="caselens_chunks")

    embedding_dimensions: int = Field(default=768, ge=8)
    embedding_provider: Literal["hashed", "openai"] = Field(default="hashed")
    embedding_model: str = Field(default="text-embedding-3-small")
    embedding_api_key: Optional[str] = Field(default=None)
    embedding_api_base: Optional[str] = Field(default=None)

    generation_provider: Literal["extractive", "openai"] = Field(default="extractive")
    generation_model: str = Field(default="gpt-4o-mini")
    generation_api_key: Optional[str] = Field(default=None)
    generation_api_base: Optional[str] = Field(default=None)
    generation_temperature: float = Field(default=0.2)
    generation_max_tokens: int = Field(default=800)

    request_timeout_seconds: float = Field(default=30.0, gt=0)

    search_default_limit: int = Field(default=50, ge=1)
    search_max_limit: int = Field(default=200, ge=1)
    search_semantic_candidates: int = Field(default=50, ge=1)
    search_match_threshold: float = Field(default=0.7, ge=-1.0, le=1.0)
    search_keyword_weight: float = Field(default=0.5, ge=0.0)
    search_semantic_weight: float = Field(default=0.5, ge=0.0)

    qa_chunk_limit: int = Field(default=5, ge=1)
    qa_context_char_budget: int = Field(default=12000, ge=500)
    qa_review_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    qa_fallback_confidence: float = Field(default=0.5, ge=0.0, le=1.0)

    ingestion_chunk_size: int = Field(default=1000)
    ingestion_chunk_overlap: int = Field(default=200)

    telemetry_enabled: bool = Field(default=False)
    telemetry_service_name: str = Field(default="caselens-backend")
    telemetry_environment: str = Field(default="local")
    telemetry_otlp_endpoint: str | None = Field(default=None)
    telemetry_otlp_insecure: bool = Field(default=True)
    telemetry_metrics_interval: float = Field(default=30.0)
    telemetry_console_fallback: bool = Field(default=True)

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    def prepare_directories(self) -> None:
        if self.vector_backend == "qdrant" and not self.qdrant_url:
            self.vector_dir.mkdir(parents=True, exist_ok=True)
        if self.database_url.startswith("sqlite:///"):
            db_path = Path(self.database_url.removeprefix("sqlite:///"))
            if str(db_path) != ":memory:":
                db_path.parent.mkdir(parents=True, exist_ok=True)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = Settings()  # type: ignore[arg-type]
    settings.prepare_directories()
    return settings


def reset_settings_cache() -> None:
    get_settings.cache_clear()
