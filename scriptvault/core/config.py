import logging
import os

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    PROJECT_NAME: str = "ScriptVault"
    API_V1_STR: str = "/api/v1"
    SECRET_KEY: str = "secret"
    DATABASE_URL: str = "sqlite+aiosqlite:///./scriptvault.db"
    REDIS_URL: str = "redis://localhost:6379/0"
    SCRIPTS_CACHE_PREFIX: str = "scripts:"
    CACHE_ENABLED: bool = True
    APPROVAL_WEBHOOK_URL: str = ""
    APPROVAL_WEBHOOK_TIMEOUT_SECONDS: float = 5.0
    ENVIRONMENT: str = "development"
    VERSION_LIST_MAX_LIMIT: int = 100
    APPROVAL_PAGE_MAX_LIMIT: int = 100
    DB_AUTO_INIT_ON_STARTUP: bool | None = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore"
    )

    @model_validator(mode='after')
    def check_database_url_in_production(self):
        if os.environ.get("VERCEL"):
            self.ENVIRONMENT = "production"

        if self.ENVIRONMENT == "production":
            if "sqlite" in self.DATABASE_URL:
                raise ValueError(
                    "Production environment detected but DATABASE_URL is missing or set to SQLite. "
                    "Current URL: " + self.DATABASE_URL + ". "
                    "Set DATABASE_URL to a PostgreSQL connection string."
                )

            # SQLAlchemy async needs the asyncpg driver in the scheme.
            if self.DATABASE_URL.startswith("postgres://"):
                logger.info("Rewriting postgres:// DATABASE_URL to postgresql+asyncpg://")
                self.DATABASE_URL = self.DATABASE_URL.replace("postgres://", "postgresql+asyncpg://", 1)
            elif self.DATABASE_URL.startswith("postgresql://") and "+asyncpg" not in self.DATABASE_URL:
                logger.info("Rewriting postgresql:// DATABASE_URL to postgresql+asyncpg://")
                self.DATABASE_URL = self.DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://", 1)

        # development/test: create tables on startup; production: connectivity only
        if self.DB_AUTO_INIT_ON_STARTUP is None:
            self.DB_AUTO_INIT_ON_STARTUP = self.ENVIRONMENT != "production"

        return self

settings = Settings()
