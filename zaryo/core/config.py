from functools import lru_cache
from typing import Any, Dict, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_CORS = ["http://localhost:3000", "http://localhost:5173"]

# Checkout bundles: amount paid in cents -> tokens credited
_DEFAULT_TOKEN_PACKS = {100: 100, 500: 500, 1000: 1000, 5000: 5000}


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
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")
    secret_key: str = Field(default="change-me-in-production-min-32-chars")

    # MongoDB
    mongodb_uri: str = Field(default="mongodb://localhost:27017", alias="MONGODB_URI")
    mongodb_db_name: str = Field(default="zaryo", alias="MONGODB_DB_NAME")

    # Redis (ARQ worker)
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    # Payment gateway webhook (HMAC-SHA256 over raw body)
    payments_webhook_secret: str = Field(default="", alias="PAYMENTS_WEBHOOK_SECRET")

    # Settlement notifications (fire-and-forget POST)
    notification_webhook_url: str | None = Field(default=None, alias="NOTIFICATION_WEBHOOK_URL")
    notification_timeout_seconds: float = Field(default=3.0, alias="NOTIFICATION_TIMEOUT_SECONDS")

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

    # Token pricing
    tokens_per_dollar: int = Field(default=100, alias="TOKENS_PER_DOLLAR")
    token_packs: Dict[int, int] = Field(default_factory=lambda: dict(_DEFAULT_TOKEN_PACKS), alias="TOKEN_PACKS")

    # Recovery: pending settlements older than this are resolved by the worker
    settlement_stale_after_seconds: int = Field(default=300, alias="SETTLEMENT_STALE_AFTER_SECONDS")


@lru_cache
def get_settings() -> Settings:
    return Settings()
