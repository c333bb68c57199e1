"""Tests for application and risk threshold configuration."""

from src.config import Settings
from src.domains.risk.config import RiskConfig, default_config


class TestSettings:
    def test_default_settings(self):
        settings = Settings()
        assert settings.app_name == "transaction-risk"
        assert settings.app_version == "0.1.0"
        assert settings.audit_topic == "risk.audit.events"

    def test_settings_from_env(self, monkeypatch):
        monkeypatch.setenv("APP_NAME", "risk-test")
        monkeypatch.setenv("DEBUG", "true")
        monkeypatch.setenv("JSON_LOGS", "false")
        settings = Settings()
        assert settings.app_name == "risk-test"
        assert settings.debug is True
        assert settings.json_logs is False

    def test_database_url_default(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        settings = Settings(_env_file=None)
        assert "postgresql+asyncpg" in settings.database_url


class TestRiskConfig:
    def test_defaults(self):
        config = RiskConfig()
        assert config.amount.high_value_threshold == 10_000.0
        assert config.amount.high_value_score_cap == 30
        assert config.velocity.rapid_transfer_window_minutes == 60
        assert config.velocity.rapid_transfer_count == 5
        assert config.velocity.anomaly_multiplier == 3.0
        assert config.device.new_device_score == 25
        assert config.device.untrusted_device_score == 40
        assert config.scoring.medium_threshold == 40
        assert config.scoring.auto_flag_threshold == 70
        assert config.scoring.critical_threshold == 90
        assert config.trust.default_score == 50
        assert config.engine.evaluation_timeout_seconds == 5.0
        assert config.engine.max_persist_attempts == 3

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("RISK_HIGH_VALUE_THRESHOLD", "5000")
        monkeypatch.setenv("RISK_AUTO_FLAG_THRESHOLD", "60")
        monkeypatch.setenv("RISK_RAPID_TRANSFER_WINDOW_MINUTES", "15")
        monkeypatch.setenv("RISK_EVALUATION_TIMEOUT_SECONDS", "1.5")
        config = RiskConfig.from_env()
        assert config.amount.high_value_threshold == 5000.0
        assert config.scoring.auto_flag_threshold == 60
        assert config.velocity.rapid_transfer_window_minutes == 15
        assert config.engine.evaluation_timeout_seconds == 1.5

    def test_from_env_does_not_mutate_default(self, monkeypatch):
        monkeypatch.setenv("RISK_MEDIUM_THRESHOLD", "45")
        RiskConfig.from_env()
        assert default_config.scoring.medium_threshold == 40
