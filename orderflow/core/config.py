"""
Configuration Management

Centralized configuration using Pydantic Settings for type safety and
environment variable integration. Nothing in the lifecycle core reads these
values directly; they are turned into explicit config objects at wiring time.
"""

from typing import Dict, List
from functools import lru_cache

from pydantic_settings import BaseSettings
from pydantic import Field, field_validator


_ENV_CONFIG = {
    "env_file": ".env",
    "env_file_encoding": "utf-8",
    "case_sensitive": True,
    "extra": "ignore",
}


class DatabaseSettings(BaseSettings):
    """Database configuration settings"""

    DATABASE_URL: str = Field(default="sqlite:///./orderflow.db")
    DB_ECHO: bool = Field(default=False)
    DB_POOL_PRE_PING: bool = Field(default=True)

    model_config = _ENV_CONFIG

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")


class LoggingSettings(BaseSettings):
    """Logging configuration settings"""

    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")
    ENABLE_STRUCTURED_LOGGING: bool = Field(default=True)
    LOG_SQL_QUERIES: bool = Field(default=False)

    model_config = _ENV_CONFIG

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v):
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @field_validator("LOG_FORMAT")
    @classmethod
    def validate_log_format(cls, v):
        if v not in ("json", "text"):
            raise ValueError("Log format must be 'json' or 'text'")
        return v


class PaymentSettings(BaseSettings):
    """Payment gateway settings"""

    PAYMENT_GATEWAY_MODE: str = Field(default="sandbox")
    PAYMENT_CALL_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0)
    PAYMENT_MAX_WORKERS: int = Field(default=4, ge=1)
    CURRENCY: str = Field(default="USD", min_length=3, max_length=3)
    # sandbox only: operations that decline or raise, for exercising failure paths
    SANDBOX_FAILING_OPERATIONS: List[str] = Field(default_factory=list)
    SANDBOX_UNREACHABLE_OPERATIONS: List[str] = Field(default_factory=list)

    model_config = _ENV_CONFIG


# role -> capability glob patterns ("{kind}:{action}:{scope}")
DEFAULT_ROLE_GRANTS: Dict[str, List[str]] = {
    "customer": ["*:cancel:own", "event:confirm:own"],
    "courier": ["order:mark_ready:any", "order:dispatch:any", "order:deliver:any"],
    "staff": [
        "order:confirm:any",
        "order:start_preparing:any",
        "order:mark_ready:any",
        "order:deliver:any",
        "rental:confirm_pickup:any",
        "rental:confirm_return:any",
        "rental:complete:any",
        "event:start_preparation:any",
        "event:start:any",
        "event:complete:any",
    ],
    "admin": ["*"],
    "super_admin": ["*"],
    "system": ["order:fail:any", "rental:mark_overdue:any"],
}


class LifecycleSettings(BaseSettings):
    """Lifecycle, escalation and background dispatch settings"""

    OPERATOR_CHANNEL: str = Field(default="ops:payments")
    OPERATOR_ALERT_TEMPLATE: str = Field(default="payment_manual_review")
    UNRECORDED_SIDE_EFFECT_TEMPLATE: str = Field(default="payment_unrecorded_side_effect")
    DISPATCH_MAX_WORKERS: int = Field(default=2, ge=1)
    ROLE_GRANTS: Dict[str, List[str]] = Field(
        default_factory=lambda: {role: list(grants) for role, grants in DEFAULT_ROLE_GRANTS.items()}
    )

    model_config = _ENV_CONFIG


class Settings(BaseSettings):
    """Main application settings"""

    APP_NAME: str = Field(default="Orderflow Lifecycle Service")
    APP_VERSION: str = Field(default="1.0.0")
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)
    API_V1_STR: str = Field(default="/api/v1")

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    payment: PaymentSettings = Field(default_factory=PaymentSettings)
    lifecycle: LifecycleSettings = Field(default_factory=LifecycleSettings)

    model_config = _ENV_CONFIG

    @field_validator("ENVIRONMENT")
    @classmethod
    def validate_environment(cls, v):
        valid_envs = ["development", "testing", "staging", "production"]
        if v not in valid_envs:
            raise ValueError(f"Environment must be one of: {valid_envs}")
        return v

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
