# tests/unit/config/test_settings.py — v2
"""Tests for config/settings.py — typed Settings and validation rules."""

from __future__ import annotations

from pathlib import Path

import pytest

from dealintake.config.settings import ConfigurationError, Settings, load_settings


class TestSettingsDefaults:
    def test_default_pool(self):
        s = Settings(_env_file=None)
        assert s.max_workers == 4
        assert s.max_retries == 2
        assert s.extraction_timeout_s == 120.0

    def test_default_bands(self):
        s = Settings(_env_file=None)
        assert s.variance_band_medium == 0.05
        assert s.variance_band_high == 0.15
        assert s.variance_band_critical == 0.50
        assert s.auto_resolve_confidence_margin == 0.2

    def test_default_clarification_threshold(self):
        s = Settings(_env_file=None)
        assert s.low_confidence_threshold == 0.6

    def test_default_store(self):
        s = Settings(_env_file=None)
        assert s.store_backend == "memory"
        assert s.store_root == Path("~/.dealintake/store")


class TestSettingsValidation:
    def test_bands_must_increase(self):
        with pytest.raises(ConfigurationError, match="strictly increasing"):
            Settings(_env_file=None, variance_band_medium=0.2, variance_band_high=0.15)

    def test_threshold_out_of_unit_range(self):
        with pytest.raises(ConfigurationError, match="LOW_CONFIDENCE_THRESHOLD"):
            Settings(_env_file=None, low_confidence_threshold=1.5)

    def test_match_threshold_range(self):
        with pytest.raises(ConfigurationError, match="FACILITY_MATCH_THRESHOLD"):
            Settings(_env_file=None, facility_match_threshold=120.0)

    def test_timeout_positive(self):
        with pytest.raises(ConfigurationError, match="EXTRACTION_TIMEOUT_S"):
            Settings(_env_file=None, extraction_timeout_s=0)

    def test_max_workers_bounds(self):
        with pytest.raises(ValueError, match="max_workers"):
            Settings(_env_file=None, max_workers=0)
        with pytest.raises(ValueError, match="max_workers"):
            Settings(_env_file=None, max_workers=64)

    def test_negative_retries(self):
        with pytest.raises(ValueError, match="max_retries"):
            Settings(_env_file=None, max_retries=-1)

    def test_multiple_errors_joined(self):
        with pytest.raises(ConfigurationError) as exc_info:
            Settings(_env_file=None, period_overlap_ratio=2.0, extraction_timeout_s=-1)
        assert "PERIOD_OVERLAP_RATIO" in str(exc_info.value)
        assert "EXTRACTION_TIMEOUT_S" in str(exc_info.value)


class TestLoadSettings:
    def test_overrides(self):
        s = load_settings(_env_file=None, max_workers=8, store_backend="json")
        assert s.max_workers == 8
        assert s.store_backend == "json"

    def test_env_variables(self, monkeypatch):
        monkeypatch.setenv("MAX_WORKERS", "6")
        monkeypatch.setenv("LOW_CONFIDENCE_THRESHOLD", "0.5")
        s = Settings(_env_file=None)
        assert s.max_workers == 6
        assert s.low_confidence_threshold == 0.5
