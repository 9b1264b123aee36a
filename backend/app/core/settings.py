"""
Environment configuration for the subscription backend (pydantic-settings).

Loaded once through get_settings(); production refuses to start without the
secrets that guard the admin, dashboard and scheduler surfaces.
"""
from urllib.parse import quote_plus
from typing import Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # PostgreSQL
    DB_USER: str = Field(..., description="PostgreSQL username")
    DB_PASSWORD: str = Field(..., description="PostgreSQL password")
    DB_NAME: str = Field(..., description="PostgreSQL database name")
    DB_HOST: str = Field(default="localhost")
    DB_PORT: str = Field(default="5432")
    DB_POOL_SIZE: int = Field(default=10, description="Connections kept open per worker")
    DB_MAX_OVERFLOW: int = Field(default=20, description="Extra connections allowed during a cron sweep burst")
    DB_POOL_RECYCLE: int = Field(default=3600, description="Seconds before a pooled connection is replaced")

    # Redis (plan settings cache)
    REDIS_HOST: str = Field(default="localhost")
    REDIS_PORT: int = Field(default=6379)
    REDIS_DB: int = Field(default=0)
    PLAN_CACHE_TTL_SECONDS: int = Field(default=300, description="How long plan settings stay cached")

    # Secrets
    ADMIN_SECRET: Optional[str] = Field(default=None, description="X-Admin-Token value for super-admin endpoints")
    JWT_SECRET: Optional[str] = Field(default=None, description="HS256 key for merchant dashboard tokens")
    JWT_EXPIRY_HOURS: int = Field(default=24 * 7, description="Merchant token lifetime in hours")
    CRON_SECRET: Optional[str] = Field(default=None, description="Bearer secret the external scheduler sends")

    # HTTP
    ALLOWED_ORIGINS: str = Field(default="", description="Comma-separated CORS origins")
    ENVIRONMENT: str = Field(default="production", description="development or production")
    LOG_LEVEL: str = Field(default="INFO")
    RATE_LIMIT_ENABLED: bool = Field(default=True, description="Enable slowapi rate limits")

    # Merchant defaults
    DEFAULT_MERCHANT_TIMEZONE: str = Field(default="Asia/Jakarta", description="IANA zone used when a merchant has none")
    DEFAULT_CURRENCY: str = Field(default="IDR", description="Currency assigned to new merchants")

    # Subscription engine
    AUTO_SWITCH_CHECK_TIMEOUT_SECONDS: float = Field(default=2.0, description="Budget for the opportunistic check on read paths")
    CRON_SWEEP_CONCURRENCY: int = Field(default=8, description="Merchants processed in parallel by the nightly sweep")
    CRON_LOCK_TTL_SECONDS: int = Field(default=1800, description="Lease length of a cron job lock, renewed before each task")
    LOW_BALANCE_ORDER_THRESHOLD: int = Field(default=10, description="Warn when the deposit covers this many order fees or fewer")
    LOW_BALANCE_REMINDER_HOURS: int = Field(default=72, description="Minimum gap between two low-balance warnings")
    SOFT_DELETE_RETENTION_DAYS: int = Field(default=30, description="Days before soft-deleted catalog rows are purged")
    PAYMENT_REQUEST_EXPIRY_HOURS: int = Field(default=24, description="Lifetime of an unconfirmed payment request without a plan row")
    DEFAULT_TRIAL_DAYS: int = Field(default=30, description="Trial length when no plan row exists")
    DEFAULT_GRACE_PERIOD_DAYS: int = Field(default=3, description="Trial/monthly grace when no plan row exists")
    DEFAULT_DEPOSIT_GRACE_DAYS: int = Field(default=0, description="Deposit grace when no plan row exists (0 = until tonight)")

    @field_validator("ENVIRONMENT")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        if v not in ("development", "production"):
            raise ValueError("ENVIRONMENT must be 'development' or 'production'")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        if v.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unsupported LOG_LEVEL: {v}")
        return v.upper()

    @field_validator("DEFAULT_MERCHANT_TIMEZONE")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown time zone: {v}")
        return v

    @field_validator("CRON_SWEEP_CONCURRENCY")
    @classmethod
    def validate_concurrency(cls, v: int) -> int:
        if v < 1:
            raise ValueError("CRON_SWEEP_CONCURRENCY must be at least 1")
        return v

    def validate_production_settings(self) -> list[str]:
        """Names of the settings production cannot run without."""
        if not self.is_production:
            return []
        required = {
            "ADMIN_SECRET": self.ADMIN_SECRET,
            "JWT_SECRET": self.JWT_SECRET,
            "CRON_SECRET": self.CRON_SECRET,
            "ALLOWED_ORIGINS": self.ALLOWED_ORIGINS,
        }
        return [f"{name} is required in production" for name, value in required.items() if not value]

    @property
    def db_url(self) -> str:
        return (
            f"postgresql+asyncpg://{self.DB_USER}:{quote_plus(self.DB_PASSWORD)}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
        )

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def allowed_origins_list(self) -> list[str]:
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()]


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Settings singleton; raises ValueError listing every missing production secret."""
    global _settings
    if _settings is None:
        _settings = Settings()
        errors = _settings.validate_production_settings()
        if errors:
            raise ValueError("Configuration errors:\n" + "\n".join(f"  - {e}" for e in errors))
    return _settings
