"""Global configuration using pydantic settings management.

Values are loaded from environment variables (or an .env file) and exposed
through the cached `get_settings()` accessor.
"""

from __future__ import annotations

from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigurationMissing


class Settings(BaseSettings):
    """Application configuration loaded from env or defaults."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    # --- Gemini credentials (one of the three is required) ---
    gemini_api_key: Optional[str] = Field(default=None, alias="GEMINI_API_KEY")
    google_service_account: Optional[str] = Field(default=None, alias="GOOGLE_SERVICE_ACCOUNT")
    use_vertex: bool = Field(default=False, alias="GEMINI_USE_VERTEX")

    gemini_api_endpoint: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta", alias="GEMINI_API_ENDPOINT"
    )
    default_model: str = Field(default="gemini-2.5-flash", alias="GEMINI_DEFAULT_MODEL")
    request_timeout: float = Field(default=60.0, alias="GEMINI_TIMEOUT")

    # --- Firebase / Google Cloud ---
    project_id: Optional[str] = Field(default=None, alias="GOOGLE_CLOUD_PROJECT")
    model_location: str = Field(default="global", alias="GCP_MODEL_LOCATION")
    firestore_database: str = Field(default="(default)", alias="FIRESTORE_DATABASE")

    # --- Storage ---
    storage_bucket: Optional[str] = Field(default=None, alias="STORAGE_BUCKET")
    # comma-separated
    storage_fallback_buckets: str = Field(default="", alias="STORAGE_FALLBACK_BUCKETS")
    storage_endpoint: str = Field(
        default="https://firebasestorage.googleapis.com", alias="STORAGE_ENDPOINT"
    )
    upload_max_attempts: int = 3
    upload_retry_delay: float = 3.0
    probe_ttl_seconds: float = 300.0
    probe_timeout: float = 5.0

    # --- Inline limits ---
    max_image_inline_bytes: int = 900_000
    max_message_inline_bytes: int = 4_000_000

    # --- Chat ---
    max_chat_title_length: int = 60
    banner_timeout_seconds: float = 8.0
    preferences_debounce_seconds: float = 0.5

    # CORS - accept comma-separated string
    cors_origins: str = Field(
        default="http://localhost:5173,http://localhost:4173", alias="CORS_ORIGINS"
    )

    @property
    def cors_origins_list(self) -> List[str]:
        """Convert comma-separated CORS origins to list."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def storage_buckets(self) -> List[str]:
        """Primary bucket first, then the configured fallbacks (no duplicates)."""
        names = [self.storage_bucket or ""]
        names += self.storage_fallback_buckets.split(",")
        ordered: List[str] = []
        for name in (n.strip() for n in names):
            if name and name not in ordered:
                ordered.append(name)
        return ordered

    def validate_credentials(self) -> None:
        """Raise ConfigurationMissing when no way to reach Gemini is configured."""
        if self.google_service_account or self.gemini_api_key:
            return
        if self.use_vertex:
            if not self.project_id:
                raise ConfigurationMissing("GOOGLE_CLOUD_PROJECT is required when GEMINI_USE_VERTEX is set")
            return
        raise ConfigurationMissing(
            "Missing Gemini credentials: set GOOGLE_SERVICE_ACCOUNT, GEMINI_API_KEY or GEMINI_USE_VERTEX"
        )


@lru_cache()
def get_settings() -> Settings:
    return Settings()
