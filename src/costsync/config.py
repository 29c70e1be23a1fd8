"""Configuration system using pydantic-settings with environment variable loading.

These settings are process-level wiring (where the cache and databases live,
how wide to fan out). The operator-tunable reconciliation policy lives in the
persisted TaskConfig instead, see costsync.store.task_config.
"""

from decimal import Decimal

from pydantic_settings import BaseSettings, SettingsConfigDict


class CacheSettings(BaseSettings):
    """Redis cost cache connection settings."""

    model_config = SettingsConfigDict(env_prefix="CACHE_")

    redis_url: str = "redis://localhost:6379/0"
    socket_timeout: float = 5.0
    rebuild_pattern: str = "key:*:*cost*"  # matches all five dimension keys
    scan_batch_size: int = 500


class LedgerSettings(BaseSettings):
    """Authoritative usage ledger settings."""

    model_config = SettingsConfigDict(env_prefix="LEDGER_")

    db_path: str = "data/ledger.db"
    timezone: str = "Asia/Shanghai"  # natural day/week/month boundaries


class StoreSettings(BaseSettings):
    """Task config and audit history persistence."""

    model_config = SettingsConfigDict(env_prefix="STORE_")

    db_path: str = "data/consistency.db"


class ReconcileSettings(BaseSettings):
    """Reconciler fan-out and drift metric parameters."""

    model_config = SettingsConfigDict(env_prefix="RECONCILE_")

    max_concurrency: int = 16
    rate_epsilon: Decimal = Decimal("0.000001")


class FixSettings(BaseSettings):
    """Fixer serialization and fan-out parameters."""

    model_config = SettingsConfigDict(env_prefix="FIX_")

    lock_timeout: float = 5.0  # 0 rejects concurrent fixes immediately
    max_concurrency: int = 8


class SchedulerSettings(BaseSettings):
    """Background scheduler loop configuration."""

    model_config = SettingsConfigDict(env_prefix="SCHEDULER_")

    enabled: bool = True  # whether the background loop runs at all
    tick_seconds: float = 30.0


class DashboardSettings(BaseSettings):
    """HTTP server configuration."""

    model_config = SettingsConfigDict(env_prefix="DASHBOARD_")

    host: str = "0.0.0.0"
    port: int = 8080
    enabled: bool = True


class AppSettings(BaseSettings):
    """Root application settings, composing all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

    log_level: str = "INFO"
    cache: CacheSettings = CacheSettings()
    ledger: LedgerSettings = LedgerSettings()
    store: StoreSettings = StoreSettings()
    reconcile: ReconcileSettings = ReconcileSettings()
    fix: FixSettings = FixSettings()
    scheduler: SchedulerSettings = SchedulerSettings()
    dashboard: DashboardSettings = DashboardSettings()
