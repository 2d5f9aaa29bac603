"""
Estate Recon - Configuration Management

Centralized configuration for environment variables and reconciliation defaults.
This module ensures:
- No hardcoded secrets
- Matching tolerances and paging tunable per deployment
- Environment-specific settings (dev/staging/prod)
"""

from typing import List
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
    DEBUG: bool = Field(default=False)

    # ==================== DATABASE ====================
    DATABASE_URL: str = Field(
        default="",
        description="PostgreSQL connection URL (postgresql+asyncpg://...)"
    )
    POSTGRES_HOST: str = Field(default="")
    POSTGRES_PORT: int = Field(default=5432)
    POSTGRES_DB: str = Field(default="estate_recon")
    POSTGRES_USER: str = Field(default="")
    POSTGRES_PASSWORD: str = Field(default="")
    POSTGRES_SSLMODE: str = Field(default="")
    SESSION_STORE: str = Field(
        default="sql",
        description="Session repository backend: sql or memory"
    )

    # ==================== AUTHENTICATION ====================
    INTERNAL_API_KEY: str = Field(
        default="",
        description="Key expected in X-Internal-Api-Key (empty disables the check in development)"
    )
    INTERNAL_API_KEYS: str = Field(
        default="",
        description="Comma-separated list of additional accepted internal keys"
    )

    # ==================== CORS ====================
    CORS_ORIGINS: str = Field(
        default="",
        description="Comma-separated list of allowed origins"
    )

    # ==================== RECONCILIATION ====================
    RECON_DATE_TOLERANCE_DAYS: int = Field(
        default=3,
        description="Default date tolerance for auto-match, in days"
    )
    RECON_AMOUNT_TOLERANCE: float = Field(
        default=0.01,
        description="Default amount tolerance (epsilon) for auto-match"
    )
    RECON_HISTORY_PAGE_SIZE: int = Field(
        default=10,
        description="Sessions per page in the history view"
    )
    RECON_NOTIFY_MIN_DIFFERENCE: float = Field(
        default=0.01,
        description="Minimum |net difference| that triggers a notification"
    )
    RECON_NOTIFY_HIGH_PRIORITY_DIFFERENCE: float = Field(
        default=1000.0,
        description="|net difference| at or above which the notification is high priority"
    )

    # ==================== STORAGE ====================
    STORAGE_REF_BASE: str = Field(
        default="local://uploads",
        description="Base path for retained CSV originals"
    )
    UPLOAD_MAX_SIZE_MB: int = Field(default=10)
    AUDIT_LOG_PATH: str = Field(
        default="logs/audit.jsonl",
        description="JSONL audit log file"
    )

    # ==================== NOTIFICATIONS ====================
    NOTIFICATION_WEBHOOK_URL: str = Field(
        default="",
        description="Endpoint receiving domain notification events (empty keeps them in memory)"
    )
    NOTIFICATION_WEBHOOK_SECRET: str = Field(
        default="",
        description="HMAC secret used to sign notification payloads"
    )
    NOTIFICATION_TIMEOUT_SECONDS: float = Field(default=10.0)

    # ==================== OBSERVABILITY ====================
    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR"
    )
    LOG_JSON: bool = Field(default=True)

    # ==================== API ====================
    API_TITLE: str = Field(default="Estate Recon API")
    API_VERSION: str = Field(default="1.0.0")
    API_HOST: str = Field(default="0.0.0.0")
    API_PORT: int = Field(default=8001)

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
    def cors_origins_list(self) -> List[str]:
        if self.CORS_ORIGINS and self.CORS_ORIGINS != "*":
            origins = [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]
        else:
            origins = []

        if not self.is_production:
            origins.extend([
                "http://localhost:3000",
                "http://localhost:5173",
                "http://127.0.0.1:5173",
            ])
        return sorted(set(origins))

    @property
    def internal_api_keys(self) -> List[str]:
        keys = [self.INTERNAL_API_KEY] if self.INTERNAL_API_KEY else []
        keys.extend(k.strip() for k in self.INTERNAL_API_KEYS.split(",") if k.strip())
        return keys

    @property
    def debug_enabled(self) -> bool:
        return self.DEBUG or self.is_development

    def validate_production_config(self) -> List[str]:
        """
        Validate configuration for production deployment.
        Returns list of validation errors.
        """
        errors = []

        if self.SESSION_STORE == "sql" and not (self.DATABASE_URL or self.POSTGRES_HOST):
            errors.append("DATABASE_URL is required")

        if not self.internal_api_keys:
            errors.append("INTERNAL_API_KEY is required")

        if self.is_production:
            if self.CORS_ORIGINS == "*":
                errors.append("CORS_ORIGINS cannot be '*' in production")
            if self.DEBUG:
                errors.append("DEBUG should be False in production")
            if self.NOTIFICATION_WEBHOOK_URL and not self.NOTIFICATION_WEBHOOK_SECRET:
                errors.append("NOTIFICATION_WEBHOOK_SECRET is required when a webhook URL is set")

        return errors

    def get_database_url(self) -> str:
        """Get the appropriate database URL"""
        if self.DATABASE_URL:
            return self.DATABASE_URL

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
    logger.info(f"Session store: {settings.SESSION_STORE}")

    if settings.is_production:
        errors = settings.validate_production_config()
        if errors:
            for error in errors:
                logger.error(f"Configuration error: {error}")
            raise ValueError(f"Production configuration invalid: {', '.join(errors)}")

    return settings


# ==================== CORS CONFIGURATION ====================

def get_cors_config() -> dict:
    """
    Get CORS middleware configuration.
    """
    settings = get_settings()

    return {
        "allow_origins": settings.cors_origins_list,
        "allow_credentials": True,
        "allow_methods": ["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        "allow_headers": [
            "Content-Type",
            "Accept",
            "X-Request-ID",
            "X-Internal-Api-Key",
            "X-Client-Id",
            "X-Condominium-Id",
            "X-User-Id",
            "X-User-Role",
        ],
        "expose_headers": ["X-Request-ID"],
        "max_age": 600,
    }


# ==================== ENVIRONMENT VALIDATION ====================

def validate_environment() -> dict:
    """
    Validate required environment variables.

    Returns a status dict with validation results.
    """
    settings = get_settings()

    status = {
        "valid": True,
        "environment": settings.ENVIRONMENT,
        "errors": [],
        "warnings": [],
        "variables": {}
    }

    optional_vars = [
        ("NOTIFICATION_WEBHOOK_URL", settings.NOTIFICATION_WEBHOOK_URL, "Notifications kept in memory"),
        ("INTERNAL_API_KEY", settings.INTERNAL_API_KEY, "Internal API key check disabled"),
    ]

    for name, value, warning in optional_vars:
        if not value:
            status["warnings"].append(warning)
            status["variables"][name] = "not set"
        else:
            status["variables"][name] = "set"

    errors = settings.validate_production_config()
    if errors:
        status["errors"].extend(errors)
        status["valid"] = False

    return status


# Export settings instance for convenience
settings = get_settings()
