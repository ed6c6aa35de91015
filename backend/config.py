"""
Bankrec Core - Configuration Management

Centralized configuration for environment variables and reconciliation settings.
This module ensures:
- No hardcoded secrets
- No missing required variables
- Environment-specific settings (dev/staging/prod)
- Accounting plan codes are configurable per deployment
"""

from typing import List
from decimal import Decimal
from pydantic import Field
from pydantic_settings import BaseSettings
from functools import lru_cache
import logging

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Uses pydantic-settings for validation and type coercion.
    """

    # ==================== ENVIRONMENT ====================
    ENVIRONMENT: str = Field(
        default="development",
        description="Runtime environment: development, staging, production"
    )
    DEBUG: bool = Field(
        default=False,
        description="Enable debug mode (auto-enabled in development)"
    )
    SERVICE_NAME: str = Field(
        default="bankrec-core",
        description="Service name reported in logs and error tracking"
    )

    # ==================== DATABASE ====================
    DATABASE_URL: str = Field(
        default="",
        description="Async SQLAlchemy connection URL (required)"
    )
    POSTGRES_HOST: str = Field(default="")
    POSTGRES_PORT: int = Field(default=5432)
    POSTGRES_DB: str = Field(default="bankrec")
    POSTGRES_USER: str = Field(default="")
    POSTGRES_PASSWORD: str = Field(default="")
    POSTGRES_SSLMODE: str = Field(default="require")
    DB_POOL_SIZE: int = Field(default=5)
    DB_MAX_OVERFLOW: int = Field(default=10)

    # ==================== OBSERVABILITY ====================
    SENTRY_DSN: str = Field(
        default="",
        description="Sentry DSN for error tracking"
    )
    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR"
    )
    LOG_JSON: bool = Field(
        default=False,
        description="Force JSON log output (always on in production)"
    )

    # ==================== ACCOUNTING PLAN ====================
    BANK_CONTROL_ACCOUNT_CODE: str = Field(
        default="512",
        description="Ledger account code representing the bank"
    )
    EXCEPTIONAL_ACCOUNT_PREFIXES: str = Field(
        default="67,77",
        description="Comma-separated counterpart code prefixes reported as OD entries"
    )

    # ==================== RECONCILIATION ====================
    BALANCE_TOLERANCE: Decimal = Field(
        default=Decimal("1"),
        description="Balance gap (currency units) treated as rounding"
    )
    DUPLICATE_LABEL_LENGTH: int = Field(
        default=50,
        description="Label prefix length used to group duplicate transactions"
    )
    MISSING_MOVEMENT_WINDOW_DAYS: int = Field(
        default=7,
        description="Days either side of a transaction searched for its entry"
    )
    AUTO_RECONCILIATION_BATCH_LIMIT: int = Field(
        default=1000,
        description="Maximum transactions processed by one auto-reconciliation run"
    )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True

    # ==================== COMPUTED PROPERTIES ====================

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"

    @property
    def json_logs(self) -> bool:
        return self.LOG_JSON or self.is_production

    @property
    def exceptional_account_prefixes(self) -> List[str]:
        return [p.strip() for p in self.EXCEPTIONAL_ACCOUNT_PREFIXES.split(",") if p.strip()]

    def validate_production_config(self) -> List[str]:
        """
        Validate configuration for production deployment.
        Returns list of validation errors.
        """
        errors = []

        if not self.DATABASE_URL and not (self.POSTGRES_HOST and self.POSTGRES_USER):
            errors.append("DATABASE_URL is required")

        if not self.BANK_CONTROL_ACCOUNT_CODE:
            errors.append("BANK_CONTROL_ACCOUNT_CODE cannot be empty")

        if self.BALANCE_TOLERANCE < 0:
            errors.append("BALANCE_TOLERANCE cannot be negative")

        if self.is_production:
            if "sqlite" in self.DATABASE_URL.lower():
                errors.append("DATABASE_URL cannot use SQLite in production")

            if "localhost" in self.DATABASE_URL.lower():
                errors.append("DATABASE_URL cannot point to localhost in production")

            if self.DEBUG:
                errors.append("DEBUG should be False in production")

        return errors

    def get_database_url(self) -> str:
        """Get the appropriate database URL"""
        if self.DATABASE_URL:
            url = self.DATABASE_URL
            # Ensure asyncpg driver is used
            if url.startswith("postgresql://"):
                url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
            elif url.startswith("postgres://"):
                url = url.replace("postgres://", "postgresql+asyncpg://", 1)
            return url

        # Build from components if DATABASE_URL not set
        if self.POSTGRES_HOST and self.POSTGRES_USER and self.POSTGRES_PASSWORD:
            ssl = f"?ssl={self.POSTGRES_SSLMODE}" if self.POSTGRES_SSLMODE else ""
            return f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}{ssl}"

        raise ValueError("No database configuration found. Set DATABASE_URL or POSTGRES_* variables.")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Settings are loaded once and cached for the application lifetime.
    """
    settings = Settings()

    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Bank control account: {settings.BANK_CONTROL_ACCOUNT_CODE}")

    # Validate in production
    if settings.is_production:
        errors = settings.validate_production_config()
        if errors:
            for error in errors:
                logger.error(f"Configuration error: {error}")
            raise ValueError(f"Production configuration invalid: {', '.join(errors)}")

    return settings

