"""Application configuration using environment variables."""

from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, AnyHttpUrl, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the project root once so that `.env` is discovered regardless of CWD
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent

DEFAULT_SYSTEM_PROMPT = (
    "You are OpenClaw, an AI assistant powering the OpenClaw Platform. "
    "You help users with research, analysis, coding, writing, and creative tasks. "
    "You are direct, knowledgeable, and thorough. When you don't know something, say so. "
    "When a task is complex, break it down into steps. "
    "Keep responses well-structured using markdown when helpful. "
    "Be concise unless the user asks for depth."
)


class Settings(BaseSettings):
    """Load configuration from environment variables and `.env`."""

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Platform credential; when unset only BYOK providers are usable
    openrouter_api_key: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices("OPENROUTER_API_KEY", "openrouter_api_key"),
    )
    openrouter_base_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("https://openrouter.ai/api/v1"),
        validation_alias=AliasChoices("OPENROUTER_BASE_URL", "base_url"),
    )
    openrouter_app_url: Optional[AnyHttpUrl] = Field(
        default_factory=lambda: AnyHttpUrl("https://openclaw.app"),
        validation_alias=AliasChoices(
            "OPENROUTER_APP_URL",
            "HTTP_REFERER",
            "http_referer",
        ),
    )
    openrouter_app_name: Optional[str] = Field(
        default="OpenClaw Platform",
        validation_alias=AliasChoices("OPENROUTER_APP_TITLE", "X_TITLE", "x_title"),
    )
    default_model: str = Field(
        default="openclaw-pro",
        validation_alias=AliasChoices("OPENCLAW_DEFAULT_MODEL", "default_model"),
    )
    system_prompt: str = Field(
        default=DEFAULT_SYSTEM_PROMPT,
        validation_alias=AliasChoices("OPENCLAW_SYSTEM_PROMPT", "system_prompt"),
    )
    request_timeout: float = Field(
        default=60.0,
        validation_alias=AliasChoices("OPENROUTER_TIMEOUT", "timeout"),
        ge=1,
    )

    chat_database_path: Path = Field(
        default_factory=lambda: Path("data/openclaw.db"),
        validation_alias=AliasChoices("CHAT_DATABASE_PATH", "chat_db"),
    )
    auth_user_header: str = Field(
        default="x-whop-user-id",
        validation_alias=AliasChoices("AUTH_USER_HEADER", "auth_user_header"),
    )
    # 64 hex characters (32 bytes) for AES-256-GCM
    encryption_key: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices("ENCRYPTION_KEY", "encryption_key"),
    )

    history_limit: int = Field(
        default=50,
        ge=0,
        validation_alias=AliasChoices("CHAT_HISTORY_LIMIT", "history_limit"),
    )
    persist_attempts: int = Field(
        default=2,
        ge=1,
        validation_alias=AliasChoices("PERSIST_ATTEMPTS", "persist_attempts"),
    )

    attachments_max_size_bytes: int = Field(
        default=10 * 1024 * 1024,
        ge=1,
        validation_alias=AliasChoices(
            "ATTACHMENTS_MAX_SIZE_BYTES",
            "attachments_max_size_bytes",
        ),
    )
    signed_url_ttl_seconds: int = Field(
        default=3600,
        ge=1,
        validation_alias=AliasChoices(
            "SIGNED_URL_TTL_SECONDS",
            "signed_url_ttl_seconds",
        ),
    )
    gcs_bucket_name: str = Field(
        default="openclaw-attachments",
        validation_alias=AliasChoices("GCS_BUCKET_NAME", "gcs_bucket_name"),
    )
    gcp_project_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("GCP_PROJECT_ID", "gcp_project_id"),
    )
    google_application_credentials: Path = Field(
        default_factory=lambda: Path("credentials/googlecloud/sa.json"),
        validation_alias=AliasChoices(
            "GOOGLE_APPLICATION_CREDENTIALS",
            "google_application_credentials",
        ),
    )

    @property
    def signed_url_ttl(self) -> timedelta:
        return timedelta(seconds=self.signed_url_ttl_seconds)

    @property
    def platform_available(self) -> bool:
        if self.openrouter_api_key is None:
            return False
        return bool(self.openrouter_api_key.get_secret_value().strip())


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached `Settings` instance."""

    return Settings()  # pyright: ignore[reportCallIssue]


__all__ = ["DEFAULT_SYSTEM_PROMPT", "PROJECT_ROOT", "Settings", "get_settings"]
