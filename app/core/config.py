from functools import lru_cache
from typing import Any, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_CORS = ["http://localhost:3000", "http://localhost:5173"]


def _parse_cors_origins(v: Any) -> List[str]:
    try:
        if v is None or v == "":
            return _DEFAULT_CORS.copy()
        if isinstance(v, list):
            return [x for x in v if isinstance(x, str) and x.strip()]
        s = str(v).strip()
        if not s:
            return _DEFAULT_CORS.copy()
        if s.startswith("["):
            import json
            out = json.loads(s)
            return [x for x in out if isinstance(x, str) and x.strip()] or _DEFAULT_CORS.copy()
        return [x.strip() for x in s.split(",") if x.strip()] or _DEFAULT_CORS.copy()
    except Exception:
        return _DEFAULT_CORS.copy()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")
    secret_key: str = Field(default="change-me-in-production-min-32-chars")

    # Bearer tokens (signed, time-limited)
    access_token_max_age_seconds: int = Field(default=7 * 24 * 3600, alias="ACCESS_TOKEN_MAX_AGE_SECONDS")

    # MongoDB
    mongodb_uri: str = Field(default="mongodb://localhost:27017", alias="MONGODB_URI")
    mongodb_db_name: str = Field(default="luna", alias="MONGODB_DB_NAME")
    # Multi-document transactions need a replica set; off for a standalone dev server
    mongodb_transactions: bool = Field(default=False, alias="MONGODB_TRANSACTIONS")

    # Apple receipt verification
    apple_shared_secret: str = Field(default="", alias="APPLE_SHARED_SECRET")
    apple_production_url: str = Field(
        default="https://buy.itunes.apple.com/verifyReceipt",
        alias="APPLE_PRODUCTION_URL",
    )
    apple_sandbox_url: str = Field(
        default="https://sandbox.itunes.apple.com/verifyReceipt",
        alias="APPLE_SANDBOX_URL",
    )
    apple_timeout_seconds: float = Field(default=10.0, alias="APPLE_TIMEOUT_SECONDS")
    apple_exclude_old_transactions: bool = Field(default=True, alias="APPLE_EXCLUDE_OLD_TRANSACTIONS")

    # Sentry
    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")

    # CORS: env as string, exposed as list
    cors_origins_raw: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        alias="CORS_ORIGINS",
        description="Comma-separated or JSON list",
    )

    @property
    def cors_origins(self) -> List[str]:
        return _parse_cors_origins(getattr(self, "cors_origins_raw", None))


@lru_cache
def get_settings() -> Settings:
    return Settings()
