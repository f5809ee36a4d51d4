"""
tenancy_sdk.tier0_core.config
──────────────────────────────
Tenancy settings: database URLs, aggregation budgets, registry cache and
reporting backends. Values come from .env, then the process environment.

Minimal stack: pydantic-settings + python-dotenv
"""
from __future__ import annotations

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENVIRONMENTS = frozenset({"development", "staging", "production", "test"})


class TenancyConfig(BaseSettings):
    """
    Typed tenancy configuration. Timeouts are in seconds; ``None`` means
    unbounded.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # ── Application ───────────────────────────────────────────────────────────
    app_name: str = Field(default="tenancy", alias="APP_NAME")
    environment: str = Field(default="development", alias="APP_ENV")

    # ── Databases ─────────────────────────────────────────────────────────────
    central_database_url: str = Field(
        default="sqlite+aiosqlite:///./central.db",
        alias="CENTRAL_DATABASE_URL",
    )
    tenant_database_url_template: str = Field(
        default="sqlite+aiosqlite:///./{database}.db",
        alias="TENANT_DATABASE_URL_TEMPLATE",
    )
    tenant_database_prefix: str = Field(default="pms_", alias="TENANCY_DATABASE_PREFIX")
    database_pool_size: int = Field(default=5, alias="DATABASE_POOL_SIZE")
    database_max_overflow: int = Field(default=10, alias="DATABASE_MAX_OVERFLOW")
    database_echo: bool = Field(default=False, alias="DATABASE_ECHO")
    max_tenant_engines: int = Field(default=32, ge=1, alias="TENANCY_MAX_TENANT_ENGINES")

    # ── Aggregation ───────────────────────────────────────────────────────────
    operation_timeout: float | None = Field(default=None, alias="TENANCY_OPERATION_TIMEOUT")
    aggregation_timeout: float | None = Field(default=None, alias="TENANCY_AGGREGATION_TIMEOUT")
    max_concurrency: int = Field(default=1, ge=1, alias="TENANCY_MAX_CONCURRENCY")

    # ── Registry cache ────────────────────────────────────────────────────────
    registry_cache_ttl: int = Field(default=300, ge=0, alias="TENANCY_REGISTRY_CACHE_TTL")
    redis_url: str | None = Field(default=None, alias="REDIS_URL")

    # ── Logging ───────────────────────────────────────────────────────────────
    log_level: str = Field(default="INFO", alias="TENANCY_LOG_LEVEL")
    log_format: str = Field(default="json", alias="TENANCY_LOG_FORMAT")

    # ── Error reporting ───────────────────────────────────────────────────────
    error_backend: str = Field(default="none", alias="TENANCY_ERROR_BACKEND")

    @field_validator("environment")
    @classmethod
    def normalise_environment(cls, v: str) -> str:
        env = v.strip().lower()
        if env not in _ENVIRONMENTS:
            raise ValueError(f"APP_ENV must be one of {sorted(_ENVIRONMENTS)}, got {v!r}")
        return env

    @field_validator("tenant_database_url_template")
    @classmethod
    def validate_template(cls, v: str) -> str:
        if "{database}" not in v:
            raise ValueError("tenant_database_url_template must contain a {database} placeholder")
        return v

    @field_validator("operation_timeout", "aggregation_timeout")
    @classmethod
    def validate_timeout(cls, v: float | None) -> float | None:
        if v is not None and v <= 0:
            raise ValueError("timeouts must be positive")
        return v

    def tenant_database_name(self, tenant_id: str) -> str:
        """Default per-tenant database name: ``<prefix><tenant_id>``."""
        return f"{self.tenant_database_prefix}{tenant_id}"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_test(self) -> bool:
        return self.environment == "test"


@lru_cache(maxsize=1)
def get_config() -> TenancyConfig:
    """
    Return the singleton tenancy config. Cached after first call.
    Call _reset_config() in tests to pick up new env vars.
    """
    return TenancyConfig()


def _reset_config() -> None:
    """Drop the cached config so the next get_config() re-reads the environment."""
    get_config.cache_clear()
