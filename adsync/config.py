import logging
from pydantic_settings import BaseSettings
from pydantic import model_validator, ConfigDict
from functools import lru_cache

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Environment: "development" or "production"
    environment: str = "development"

    database_url: str = "postgresql+asyncpg://localhost/adsync"

    @model_validator(mode="before")
    @classmethod
    def _fix_database_url_for_asyncpg(cls, values: dict) -> dict:
        """Hosted Postgres gives postgresql:// - we need postgresql+asyncpg:// for asyncpg."""
        if not isinstance(values, dict):
            return values
        url = values.get("database_url") or ""
        if url.startswith("postgresql://") and "+asyncpg" not in url:
            values["database_url"] = url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return values

    api_key: str = ""  # Operator bearer key; in dev, empty = auth disabled
    encryption_key: str = ""
    cron_secret: str = ""
    cors_origins: str = "http://localhost:5173,http://localhost:3000"

    # Login with Amazon app used for the token endpoint
    amazon_client_id: str = ""
    amazon_client_secret: str = ""
    amazon_redirect_uri: str = "http://localhost:8000/api/credentials/callback"

    # Remote API rate limits (burst / sustained req per second)
    rate_limit_burst: int = 10
    rate_limit_refill_per_sec: float = 2.0
    rate_limit_timeout_seconds: float = 30.0

    # Sync engine
    push_window_minutes: int = 5
    metrics_lookback_days: int = 30
    report_timeout_seconds: float = 600.0
    sync_stale_after_minutes: int = 60

    @model_validator(mode="after")
    def _validate_production_settings(self) -> "Settings":
        """Enforce that critical secrets are set when running in production."""
        if self.is_production:
            if not self.api_key:
                raise ValueError(
                    "API_KEY must be set in production. "
                    "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
                )
            if not self.encryption_key:
                raise ValueError(
                    "ENCRYPTION_KEY must be set in production. "
                    "Generate one with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
                )
            if not self.amazon_client_id or not self.amazon_client_secret:
                raise ValueError("AMAZON_CLIENT_ID and AMAZON_CLIENT_SECRET must be set in production.")
            if not self.database_url or "localhost" in self.database_url:
                logger.warning("DATABASE_URL appears to point at localhost in production.")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def cors_origin_list(self) -> list[str]:
        origins = [o.strip() for o in self.cors_origins.split(",") if o.strip()]
        return origins or ["http://localhost:5173", "http://localhost:3000"]


@lru_cache
def get_settings() -> Settings:
    return Settings()
