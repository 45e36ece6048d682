"""
Configuration Management for the Financial Core

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
Engines receive the values they need as arguments (they stay pure);
only the store, the service facade and the storage adapters read settings.
"""

from decimal import Decimal
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LedgerSettings(BaseSettings):
    """Ledger, reconciliation and reporting knobs."""

    model_config = SettingsConfigDict(
        env_prefix="FINCONTROL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    money_tolerance: Decimal = Field(
        default=Decimal("0.01"),
        ge=0,
        description="Tolerance when comparing money amounts (transfer legs, schedules)"
    )
    duplicate_window_days: int = Field(
        default=1,
        ge=0,
        le=30,
        description="Days around an imported line searched for a matching ledger entry"
    )
    default_due_day: int = Field(
        default=10,
        ge=1,
        le=31,
        description="Due day for recurring templates without one"
    )
    short_term_horizon_months: int = Field(
        default=12,
        ge=1,
        description="Horizon that splits short-term from long-term liabilities"
    )
    cache_max_entries: int = Field(
        default=512,
        ge=1,
        description="Maximum memoized query results per snapshot version"
    )
    default_created_by: str = Field(
        default="user",
        description="Author recorded on transactions created without one"
    )


class StorageSettings(BaseSettings):
    """Snapshot and audit log file locations."""

    model_config = SettingsConfigDict(
        env_prefix="FINCONTROL_STORAGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    snapshot_path: Path = Field(
        default=Path("data/ledger.json"),
        description="JSON snapshot file"
    )
    audit_log_path: Path = Field(
        default=Path("data/audit.jsonl"),
        description="Append-only JSON lines audit log"
    )
    write_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts for a snapshot write before giving up"
    )

    @field_validator('snapshot_path', 'audit_log_path')
    @classmethod
    def validate_not_directory(cls, v: Path) -> Path:
        if v.exists() and v.is_dir():
            raise ValueError(f"{v} is a directory, expected a file path")
        return v


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Loaded lazily to allow partial configuration

    @property
    def ledger(self) -> LedgerSettings:
        return LedgerSettings()

    @property
    def storage(self) -> StorageSettings:
        return StorageSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}, plus `<name>_error`
    entries describing failures. Useful for startup checks.
    """
    results = {}

    settings = get_settings()

    for name in ("ledger", "storage"):
        try:
            getattr(settings, name)
            results[name] = True
        except ValueError as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
