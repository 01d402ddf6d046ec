"""Configuration surface for the charge processor."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

DEFAULT_PERSIST_PATH = Path.home() / ".nanocharge" / "charges.json"


class ChargeProcessorSettings(BaseSettings):
    """Main processor configuration."""

    # Snapshot location; None keeps charges in memory only
    persist_path: Optional[Path] = Field(default=DEFAULT_PERSIST_PATH)
    save_debounce_seconds: float = 0.5

    # Sub-account allocation. Ephemeral charges start at a high index so they
    # never collide with the primary account.
    starting_index: int = 1000
    main_account_index: int = 0
    main_address: Optional[str] = None

    # Charge lifecycle
    auto_sweep: bool = True
    default_timeout_seconds: float = 30 * 60
    expiry_check_interval_seconds: float = 10.0

    # Webhooks
    webhook_timeout_seconds: float = 10.0
    webhook_secret: Optional[str] = None

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_json: bool = True

    class Config:
        env_prefix = "NANOCHARGE_"
        env_file = ".env"
        extra = "ignore"

    @field_validator("starting_index", "main_account_index")
    @classmethod
    def validate_index(cls, v: int) -> int:
        if v < 0:
            raise ValueError("Account indices must be non-negative")
        return v

    @field_validator(
        "save_debounce_seconds",
        "default_timeout_seconds",
        "expiry_check_interval_seconds",
        "webhook_timeout_seconds",
    )
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Intervals and timeouts must be positive")
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v):
        if isinstance(v, str):
            return v.upper()
        return v


@lru_cache
def load_settings(env_file: str | None = None) -> ChargeProcessorSettings:
    """Load settings once per process so every component sees the same values."""
    if env_file:
        return ChargeProcessorSettings(_env_file=Path(env_file))
    return ChargeProcessorSettings()
