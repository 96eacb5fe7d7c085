"""Unit tests for Settings validation."""

import pytest
from pydantic import ValidationError

from rule_scheduler.core.config import Settings


class TestSettingsDefaults:
    def test_defaults(self, settings):
        assert settings.min_pattern_confidence == 0.8
        assert settings.max_rules_per_pattern == 3
        assert settings.conflict_resolution_strategy == "priority"
        assert settings.prediction_confidence_threshold == 0.7
        assert settings.max_predictions_per_hour == 10
        assert settings.auto_commit_confidence == 0.9
        assert settings.optimization_commit_threshold == 0.05
        assert settings.llm_enabled is False

    def test_cors_origins_from_comma_string(self):
        settings = Settings(_env_file=None, allowed_origins="http://a.test, http://b.test")
        assert settings.allowed_origins == ["http://a.test", "http://b.test"]

    def test_log_level_normalized(self):
        assert Settings(_env_file=None, log_level="debug").log_level == "DEBUG"

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("SCHEDULER_MAX_PREDICTIONS_PER_HOUR", "4")
        assert Settings(_env_file=None).max_predictions_per_hour == 4


class TestSettingsValidation:
    @pytest.mark.parametrize("field", [
        "min_pattern_confidence",
        "prediction_confidence_threshold",
        "load_balancing_threshold",
        "optimization_commit_threshold",
    ])
    def test_rejects_thresholds_outside_unit_interval(self, field):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **{field: 1.5})

    def test_rejects_unknown_conflict_strategy(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, conflict_resolution_strategy="coin_flip")

    def test_rejects_unknown_fallback_strategy(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, llm_fallback_strategy="random")

    def test_rejects_unknown_log_level(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, log_level="LOUD")

    def test_llm_enabled_when_any_provider_on(self):
        assert Settings(_env_file=None, ollama_enabled=True).llm_enabled is True
