from __future__ import annotations

from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_APP_KEY = "change-me-roomkey-app-key"
_PROD_ENV_NAMES = {"prod", "production"}
_MAX_PROD_ACCESS_TOKEN_TTL_SECONDS = 365 * 24 * 3600


class Settings(BaseSettings):
    app_name: str = Field(default="RoomKey")
    app_env: str = Field(default="dev")
    app_version: str = Field(default="0.1.0")

    database_url: str = Field(default="")

    log_level: str = Field(default="INFO")
    log_file: str = Field(default="data/app.log")
    log_db_queries: bool = Field(default=False)
    log_sql_max_length: int = Field(default=400)

    app_key: str = Field(default=DEFAULT_APP_KEY)
    base_url: str = Field(default="")

    access_token_ttl_seconds: int = Field(default=7 * 24 * 3600, ge=60)
    room_id_ttl_seconds: int = Field(default=24 * 3600, ge=60)
    invitation_ttl_hours: int = Field(default=168, ge=1)
    pin_max_attempts: int = Field(default=5, ge=1)
    pin_lockout_seconds: int = Field(default=1800, ge=1)

    session_inactivity_seconds: int = Field(default=7200, ge=60)
    identity_cookie_ttl_seconds: int = Field(default=30 * 24 * 3600)
    session_cookie_ttl_seconds: int = Field(default=7200)
    cookie_secure: bool = Field(default=False)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_database_url(self) -> "Settings":
        if not self.database_url:
            raise ValueError("DATABASE_URL must be set in .env or environment variables.")
        if self.app_env.strip().lower() in _PROD_ENV_NAMES:
            issues: list[str] = []
            if self.app_key == DEFAULT_APP_KEY:
                issues.append("APP_KEY must not use the default placeholder in production.")
            if len(self.app_key) < 32:
                issues.append("APP_KEY must be at least 32 characters in production.")
            if not self.cookie_secure:
                issues.append("COOKIE_SECURE must be true in production.")
            if self.access_token_ttl_seconds > _MAX_PROD_ACCESS_TOKEN_TTL_SECONDS:
                issues.append("ACCESS_TOKEN_TTL_SECONDS must not exceed one year in production.")
            if issues:
                raise ValueError(" ".join(issues))
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()
