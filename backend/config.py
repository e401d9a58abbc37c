"""
Landlord Core - Configuration Management

Centralized configuration for environment variables, CORS, and deployment settings.
This module ensures:
- No hardcoded secrets (bank tokens, webhook secrets, OAuth credentials)
- No missing required variables in production
- Tunable sync/retry behaviour without code changes
"""

from decimal import Decimal
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
    DEBUG: bool = Field(
        default=False,
        description="Enable debug mode (auto-enabled in development)"
    )

    # ==================== DATABASE ====================
    DATABASE_URL: str = Field(
        default="",
        description="PostgreSQL connection URL, postgresql+asyncpg://... (required)"
    )
    DATABASE_SSL: bool = Field(
        default=True,
        description="Require SSL for the PostgreSQL connection"
    )

    # ==================== BANKING (MONZO) ====================
    BANK_TOKEN_ENCRYPTION_KEY: str = Field(
        default="",
        description="Fernet key used to encrypt stored bank OAuth tokens (required)"
    )
    MONZO_CLIENT_ID: str = Field(default="", description="Monzo OAuth client id")
    MONZO_CLIENT_SECRET: str = Field(default="", description="Monzo OAuth client secret")
    MONZO_REDIRECT_URI: str = Field(
        default="",
        description="OAuth redirect URI registered with Monzo"
    )
    MONZO_API_URL: str = Field(default="https://api.monzo.com")
    MONZO_AUTH_URL: str = Field(default="https://auth.monzo.com")
    MONZO_WEBHOOK_SECRET: str = Field(
        default="",
        description="Path secret for the inbound Monzo webhook (webhooks rejected when unset)"
    )
    WEBHOOK_BASE_URL: str = Field(
        default="",
        description="Public base URL Monzo should deliver webhooks to"
    )
    FRONTEND_URL: str = Field(
        default="http://localhost:5173",
        description="Frontend origin used for OAuth callback redirects"
    )

    # ==================== SYNC ====================
    SYNC_RETRY_MAX_ATTEMPTS: int = Field(default=3, ge=1)
    SYNC_RETRY_BASE_DELAY_SECONDS: float = Field(default=1.0, ge=0)
    SYNC_RETRY_MAX_DELAY_SECONDS: float = Field(default=30.0, ge=0)
    SYNC_PAGE_SIZE: int = Field(default=100, ge=1, le=100)
    IMPORT_WATCHDOG_SECONDS: float = Field(
        default=270.0,
        description="Full-history import budget (Monzo allows 5 minutes after auth)"
    )
    MANUAL_SYNC_TIMEOUT_SECONDS: float = Field(default=30.0)
    PROGRESS_STREAM_TIMEOUT_SECONDS: float = Field(default=300.0)
    OAUTH_STATE_TTL_SECONDS: int = Field(default=600)
    DEFAULT_SYNC_FROM_DAYS: int = Field(default=90, ge=1, le=1825)

    # ==================== LEDGER ====================
    SETTLEMENT_OVERPAYMENT_TOLERANCE: Decimal = Field(
        default=Decimal("0.01"),
        description="Amount a settlement may exceed the owed balance before a warning is attached"
    )

    # ==================== CORS ====================
    CORS_ORIGINS: str = Field(
        default="",
        description="Comma-separated list of allowed origins"
    )

    # ==================== OBSERVABILITY ====================
    SENTRY_DSN: str = Field(
        default="",
        description="Sentry DSN for error tracking"
    )
    LOG_LEVEL: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR"
    )

    # ==================== API ====================
    API_TITLE: str = Field(
        default="Landlord Core - Bank Reconciliation API",
        description="API title for OpenAPI docs"
    )
    API_VERSION: str = Field(
        default="1.0.0",
        description="API version"
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
    def cors_origins_list(self) -> List[str]:
        """
        Parse CORS_ORIGINS into a list.

        The frontend origin is always allowed; localhost origins only outside production.
        """
        if self.CORS_ORIGINS and self.CORS_ORIGINS != "*":
            origins = [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]
        else:
            origins = []

        dev_origins = [
            "http://localhost:3000",
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ]

        all_origins = set(origins)
        if self.FRONTEND_URL:
            all_origins.add(self.FRONTEND_URL.rstrip("/"))

        if not self.is_production:
            all_origins.update(dev_origins)

        return list(all_origins)

    @property
    def debug_enabled(self) -> bool:
        """Enable debug in development or when explicitly set"""
        return self.DEBUG or self.is_development

    @property
    def monzo_oauth_configured(self) -> bool:
        return bool(self.MONZO_CLIENT_ID and self.MONZO_CLIENT_SECRET and self.MONZO_REDIRECT_URI)

    @property
    def monzo_webhook_url(self) -> str:
        """Public webhook URL registered with Monzo, empty when webhooks are disabled"""
        if not self.MONZO_WEBHOOK_SECRET or not self.WEBHOOK_BASE_URL:
            return ""
        base = self.WEBHOOK_BASE_URL.rstrip("/")
        return f"{base}/api/bank/webhooks/monzo/{self.MONZO_WEBHOOK_SECRET}"

    def validate_production_config(self) -> List[str]:
        """
        Validate configuration for production deployment.
        Returns list of validation errors.
        """
        errors = []

        if not self.DATABASE_URL:
            errors.append("DATABASE_URL is required")

        if not self.BANK_TOKEN_ENCRYPTION_KEY:
            errors.append("BANK_TOKEN_ENCRYPTION_KEY is required")

        if self.SYNC_RETRY_BASE_DELAY_SECONDS > self.SYNC_RETRY_MAX_DELAY_SECONDS:
            errors.append("SYNC_RETRY_BASE_DELAY_SECONDS cannot exceed SYNC_RETRY_MAX_DELAY_SECONDS")

        if self.is_production:
            if not self.monzo_oauth_configured:
                errors.append("MONZO_CLIENT_ID, MONZO_CLIENT_SECRET and MONZO_REDIRECT_URI are required")

            if self.CORS_ORIGINS == "*":
                errors.append("CORS_ORIGINS cannot be '*' in production")

            if "localhost" in self.DATABASE_URL.lower():
                errors.append("DATABASE_URL cannot point to localhost in production")

            if self.MONZO_WEBHOOK_SECRET and len(self.MONZO_WEBHOOK_SECRET) < 24:
                errors.append("MONZO_WEBHOOK_SECRET should be at least 24 characters")

            if self.DEBUG:
                errors.append("DEBUG should be False in production")

        return errors

    def get_database_url(self) -> str:
        """Get the database URL or fail loudly"""
        if self.DATABASE_URL:
            return self.DATABASE_URL
        raise ValueError("No database configuration found. Set DATABASE_URL.")


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Settings are loaded once and cached for the application lifetime.
    """
    settings = Settings()

    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Debug: {settings.debug_enabled}")

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

    Returns configuration dict for CORSMiddleware.
    """
    settings = get_settings()

    return {
        "allow_origins": settings.cors_origins_list,
        "allow_credentials": True,
        "allow_methods": ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        "allow_headers": [
            "Authorization",
            "Content-Type",
            "Accept",
            "Origin",
            "X-Request-ID",
        ],
        "expose_headers": ["X-Request-ID"],
        "max_age": 600,
    }


# ==================== ENVIRONMENT VALIDATION ====================

def validate_environment() -> dict:
    """
    Validate all required environment variables.

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

    required_vars = [
        ("DATABASE_URL", settings.DATABASE_URL),
        ("BANK_TOKEN_ENCRYPTION_KEY", settings.BANK_TOKEN_ENCRYPTION_KEY),
    ]

    for name, value in required_vars:
        if not value:
            status["errors"].append(f"{name} is not set")
            status["valid"] = False
        else:
            status["variables"][name] = "set"

    optional_vars = [
        ("SENTRY_DSN", settings.SENTRY_DSN, "Error tracking disabled"),
        ("MONZO_CLIENT_ID", settings.MONZO_CLIENT_ID, "Monzo account linking disabled"),
        ("MONZO_WEBHOOK_SECRET", settings.MONZO_WEBHOOK_SECRET, "Monzo webhooks disabled, manual sync only"),
        ("WEBHOOK_BASE_URL", settings.WEBHOOK_BASE_URL, "Webhook registration disabled"),
    ]

    for name, value, warning in optional_vars:
        if not value:
            status["warnings"].append(warning)
            status["variables"][name] = "not set"
        else:
            status["variables"][name] = "set"

    errors = settings.validate_production_config()
    for error in errors:
        if error not in status["errors"] and not error.endswith("is required"):
            status["errors"].append(error)
            status["valid"] = False

    return status


# Export settings instance for convenience
settings = get_settings()
