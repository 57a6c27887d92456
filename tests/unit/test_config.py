"""Tests for configuration management."""

import pytest
from pydantic import ValidationError

from mcp_warden.config import Settings, get_settings
from mcp_warden.reputation import ScoringCriteria


def create_test_settings(**kwargs):
    """Helper to create Settings instance without loading .env file."""
    return Settings(_env_file=None, **kwargs)


class TestSettingsDefaults:
    """Tests for default values."""

    def test_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Defaults match the documented values."""
        monkeypatch.delenv("DETECTOR_THRESHOLD", raising=False)
        monkeypatch.delenv("STORE_BACKEND", raising=False)
        settings = create_test_settings()
        assert settings.detector_threshold == 0.7
        assert settings.detector_max_context_length == 4000
        assert settings.detector_enable_heuristics is True
        assert settings.reputation_critical_threshold == 300
        assert settings.reputation_warning_threshold == 600
        assert settings.reputation_medium_threshold == 800
        assert settings.store_backend == "memory"
        assert settings.report_time_range_days == 7

    def test_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Environment variables override defaults."""
        monkeypatch.setenv("DETECTOR_THRESHOLD", "0.5")
        monkeypatch.setenv("STORE_BACKEND", "sqlite")
        monkeypatch.setenv("ENVIRONMENT", "development")
        settings = create_test_settings()
        assert settings.detector_threshold == 0.5
        assert settings.store_backend == "sqlite"
        assert settings.is_development is True

    def test_log_file_path(self) -> None:
        """log_file_path joins directory and prefix."""
        settings = create_test_settings(log_directory="/var/log/warden", log_file_prefix="w")
        assert settings.log_file_path == "/var/log/warden/w.log"

    def test_get_settings_cached(self) -> None:
        """get_settings returns one cached instance."""
        get_settings.cache_clear()
        assert get_settings() is get_settings()
        get_settings.cache_clear()


class TestSettingsValidation:
    """Tests for field and model validators."""

    @pytest.mark.parametrize("value", [-0.1, 1.5])
    def test_threshold_range(self, value) -> None:
        """Detector threshold must be within 0..1."""
        with pytest.raises(ValidationError):
            create_test_settings(detector_threshold=value)

    def test_positive_limits(self) -> None:
        """Limits must be positive."""
        with pytest.raises(ValidationError):
            create_test_settings(detector_max_context_length=0)
        with pytest.raises(ValidationError):
            create_test_settings(sandbox_violation_log_limit=-5)

    def test_store_backend(self) -> None:
        """Only known store backends are accepted."""
        with pytest.raises(ValidationError):
            create_test_settings(store_backend="redis")

    def test_timeout_positive(self) -> None:
        """The store timeout must be positive."""
        with pytest.raises(ValidationError):
            create_test_settings(store_timeout_seconds=0)

    def test_threshold_order(self) -> None:
        """Reputation thresholds must be strictly increasing."""
        with pytest.raises(ValidationError):
            create_test_settings(reputation_critical_threshold=700)

    def test_weights(self) -> None:
        """Weights must be non-negative with a positive total."""
        with pytest.raises(ValidationError):
            create_test_settings(reputation_weight_uptime=-1)
        zero = {
            f"reputation_weight_{name}": 0
            for name in (
                "response_time",
                "error_rate",
                "security_incidents",
                "uptime",
                "community_rating",
                "compliance",
                "threat_intelligence",
            )
        }
        with pytest.raises(ValidationError):
            create_test_settings(**zero)


class TestDerivedConfig:
    """Tests for config objects built from settings."""

    def test_scoring_criteria(self) -> None:
        """ScoringCriteria copies weights and thresholds."""
        settings = create_test_settings(
            reputation_weight_uptime=0.5, reputation_critical_threshold=250
        )
        criteria = ScoringCriteria.from_settings(settings)
        assert criteria.weights.uptime == 0.5
        assert criteria.critical_threshold == 250
        assert criteria.ema_alpha == settings.reputation_ema_alpha
