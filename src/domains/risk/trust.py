"""Device trust scoring: a pure function of the prior record and one signal."""

import math
from dataclasses import dataclass

from .config import DeviceTrustSettings
from .models import DeviceTrustLevel, DeviceTrustRecord, TrustSignal

EARTH_RADIUS_KM = 6371.0


def haversine(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Calculate distance in km between two lat/lon points."""
    lat1_r, lon1_r = math.radians(lat1), math.radians(lon1)
    lat2_r, lon2_r = math.radians(lat2), math.radians(lon2)
    dlat = lat2_r - lat1_r
    dlon = lon2_r - lon1_r
    a = math.sin(dlat / 2) ** 2 + math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


@dataclass(frozen=True)
class TrustComputation:
    score: int
    trust_level: DeviceTrustLevel
    failed_login_count: int
    drift_km: float | None = None


def classify_trust_level(score: int, settings: DeviceTrustSettings) -> DeviceTrustLevel:
    if score >= settings.trusted_min_score:
        return DeviceTrustLevel.TRUSTED
    if score <= settings.risky_max_score:
        return DeviceTrustLevel.RISKY
    return DeviceTrustLevel.NEUTRAL


def apply_manual_overrides(
    score: int, record: DeviceTrustRecord, settings: DeviceTrustSettings
) -> int:
    if record.manually_trusted:
        score = max(score, settings.manual_trusted_floor)
    if record.manually_risky:
        score = min(score, settings.manual_risky_ceiling)
    return score


def compute_trust(
    record: DeviceTrustRecord,
    signal: TrustSignal,
    settings: DeviceTrustSettings,
) -> TrustComputation:
    """Score one login/trust signal against the stored baseline.

    Manual overrides are applied before and after the computed adjustments so
    they always win over signals.
    """
    score = apply_manual_overrides(record.trust_score, record, settings)
    failed_logins = record.failed_login_count

    if signal.login_success:
        score += settings.successful_login_bonus
        failed_logins = 0
    else:
        score -= settings.failed_login_penalty
        failed_logins += 1

    if signal.ip and record.last_ip and signal.ip != record.last_ip:
        score -= settings.ip_change_penalty

    if signal.user_agent and record.user_agent and signal.user_agent != record.user_agent:
        score -= settings.user_agent_change_penalty

    drift_km: float | None = None
    geo = signal.geo
    if (
        geo is not None
        and geo.lat is not None
        and geo.lng is not None
        and record.last_lat is not None
        and record.last_lng is not None
    ):
        drift_km = haversine(record.last_lat, record.last_lng, geo.lat, geo.lng)
        if drift_km > settings.far_drift_km:
            score -= settings.far_drift_penalty
        elif drift_km > settings.near_drift_km:
            score -= settings.near_drift_penalty

    score = max(0, min(100, score))
    score = apply_manual_overrides(score, record, settings)

    return TrustComputation(
        score=score,
        trust_level=classify_trust_level(score, settings),
        failed_login_count=failed_logins,
        drift_km=drift_km,
    )
