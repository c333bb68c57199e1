"""Risk scoring configuration with sensible defaults."""

import os
from dataclasses import dataclass, field


@dataclass
class AmountThresholds:
    high_value_threshold: float = 10_000.0
    high_value_score_cap: int = 30


@dataclass
class VelocityThresholds:
    rapid_transfer_window_minutes: int = 60
    rapid_transfer_count: int = 5
    rapid_transfer_score: int = 25
    anomaly_multiplier: float = 3.0
    anomaly_score: int = 35
    unusual_frequency_count_1h: int = 10
    unusual_frequency_score: int = 20


@dataclass
class DeviceThresholds:
    new_device_score: int = 25
    untrusted_device_score: int = 40
    recent_device_score: int = 15
    recent_device_hours: int = 24


@dataclass
class ScoringThresholds:
    medium_threshold: int = 40
    auto_flag_threshold: int = 70
    critical_threshold: int = 90
    critical_factor_cutoff: int = 30


@dataclass
class DeviceTrustSettings:
    default_score: int = 50
    trusted_min_score: int = 70
    risky_max_score: int = 30
    manual_trusted_floor: int = 80
    manual_risky_ceiling: int = 30
    failed_login_penalty: int = 10
    successful_login_bonus: int = 2
    ip_change_penalty: int = 5
    user_agent_change_penalty: int = 3
    far_drift_km: float = 500.0
    far_drift_penalty: int = 15
    near_drift_km: float = 50.0
    near_drift_penalty: int = 5


@dataclass
class EngineSettings:
    evaluation_timeout_seconds: float = 5.0
    max_persist_attempts: int = 3


@dataclass
class RiskConfig:
    amount: AmountThresholds = field(default_factory=AmountThresholds)
    velocity: VelocityThresholds = field(default_factory=VelocityThresholds)
    device: DeviceThresholds = field(default_factory=DeviceThresholds)
    scoring: ScoringThresholds = field(default_factory=ScoringThresholds)
    trust: DeviceTrustSettings = field(default_factory=DeviceTrustSettings)
    engine: EngineSettings = field(default_factory=EngineSettings)

    @classmethod
    def from_env(cls) -> "RiskConfig":
        """Load config with env var overrides. Env vars use RISK_ prefix."""
        config = cls()

        # Amount overrides
        if v := os.getenv("RISK_HIGH_VALUE_THRESHOLD"):
            config.amount.high_value_threshold = float(v)

        # Velocity overrides
        if v := os.getenv("RISK_RAPID_TRANSFER_WINDOW_MINUTES"):
            config.velocity.rapid_transfer_window_minutes = int(v)
        if v := os.getenv("RISK_RAPID_TRANSFER_COUNT"):
            config.velocity.rapid_transfer_count = int(v)
        if v := os.getenv("RISK_VELOCITY_ANOMALY_MULTIPLIER"):
            config.velocity.anomaly_multiplier = float(v)

        # Device overrides
        if v := os.getenv("RISK_NEW_DEVICE_SCORE"):
            config.device.new_device_score = int(v)
        if v := os.getenv("RISK_UNTRUSTED_DEVICE_SCORE"):
            config.device.untrusted_device_score = int(v)

        # Scoring overrides
        if v := os.getenv("RISK_MEDIUM_THRESHOLD"):
            config.scoring.medium_threshold = int(v)
        if v := os.getenv("RISK_AUTO_FLAG_THRESHOLD"):
            config.scoring.auto_flag_threshold = int(v)
        if v := os.getenv("RISK_CRITICAL_THRESHOLD"):
            config.scoring.critical_threshold = int(v)

        # Device trust overrides
        if v := os.getenv("RISK_TRUSTED_MIN_SCORE"):
            config.trust.trusted_min_score = int(v)
        if v := os.getenv("RISK_RISKY_MAX_SCORE"):
            config.trust.risky_max_score = int(v)

        if v := os.getenv("RISK_EVALUATION_TIMEOUT_SECONDS"):
            config.engine.evaluation_timeout_seconds = float(v)

        return config


# Module-level default instance
default_config = RiskConfig()
