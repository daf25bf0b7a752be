# src/config/settings.py — v2
"""Typed configuration loaded from .env via pydantic-settings.

Single source of truth for pipeline policy constants (worker pool size,
retry bounds, variance bands, confidence cutoffs) and deployment settings
(store backend, logging). Thresholds are heuristics, so every one of them
is overridable here rather than hard-coded in the reconciliation modules.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when configuration is internally inconsistent."""


class Settings(BaseSettings):
    """Application settings loaded from .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # === Extraction dispatcher ===
    max_workers: int = 4
    extraction_timeout_s: float = 120.0
    max_retries: int = 2
    retry_base_delay_s: float = 1.0
    retry_backoff_factor: float = 2.0
    retry_jitter: bool = True

    # === Conflict detection ===
    variance_band_medium: float = 0.05
    variance_band_high: float = 0.15
    variance_band_critical: float = 0.50
    auto_resolve_confidence_margin: float = 0.2

    # === Clarifications ===
    low_confidence_threshold: float = 0.6

    # === Facility / period matching ===
    facility_match_threshold: float = 88.0
    period_overlap_ratio: float = 0.8

    # === Sessions ===
    session_retention_s: int = 3600

    # === Persistence ===
    store_backend: Literal["memory", "json"] = "memory"
    store_root: Path = Path("~/.dealintake/store")

    # === Logging ===
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Path | None = None
    log_rotation: str = "10MB"
    log_retention: int = 30

    # --- Validators ---

    @field_validator("max_workers")
    @classmethod
    def validate_max_workers(cls, v: int) -> int:  # noqa: N805
        """Pool size bounds the in-flight external extraction calls."""
        if v < 1 or v > 32:
            raise ValueError("max_workers must be between 1 and 32")
        return v

    @field_validator("max_retries")
    @classmethod
    def validate_max_retries(cls, v: int) -> int:  # noqa: N805
        if v < 0:
            raise ValueError("max_retries must be >= 0")
        return v

    @model_validator(mode="after")
    def validate_config_consistency(self) -> Settings:
        """Validate cross-field consistency rules."""
        errors: list[str] = []

        for name in (
            "variance_band_medium",
            "variance_band_high",
            "variance_band_critical",
            "auto_resolve_confidence_margin",
            "low_confidence_threshold",
            "period_overlap_ratio",
        ):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                errors.append(f"{name.upper()} must be within [0, 1]")

        if not (
            self.variance_band_medium
            < self.variance_band_high
            < self.variance_band_critical
        ):
            errors.append(
                "Variance bands must be strictly increasing (medium < high < critical)"
            )

        if not 0.0 <= self.facility_match_threshold <= 100.0:
            errors.append("FACILITY_MATCH_THRESHOLD must be within [0, 100]")

        if self.extraction_timeout_s <= 0:
            errors.append("EXTRACTION_TIMEOUT_S must be > 0")

        if errors:
            raise ConfigurationError("; ".join(errors))

        return self


def load_settings(**overrides: object) -> Settings:
    """Load settings from .env with optional overrides.

    Args:
        **overrides: Field-level overrides (for testing or per-session config).

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If configuration is internally inconsistent.
    """
    return Settings(**overrides)  # type: ignore[arg-type]
