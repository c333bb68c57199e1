"""Device-based risk checks."""

from datetime import timedelta

from ..config import RiskConfig
from ..models import DeviceTrustLevel, EvaluationAux, RiskEvaluationContext, RiskFactor
from .base import RiskCheck


class NewOrUntrustedDeviceCheck(RiskCheck):
    """Scores the device the transaction came from.

    Exactly one of NEW_DEVICE, UNTRUSTED_DEVICE, RECENT_DEVICE or nothing fires.
    """

    name = "NEW_DEVICE"
    untrusted_rule = "UNTRUSTED_DEVICE"
    recent_rule = "RECENT_DEVICE"

    async def run(
        self,
        context: RiskEvaluationContext,
        aux: EvaluationAux,
        config: RiskConfig,
    ) -> RiskFactor | None:
        if not context.user_id or not context.device_key:
            return None

        device = aux.device
        thresholds = config.device

        if device is None:
            return self._factor(
                score=thresholds.new_device_score,
                reason="Transaction initiated from a new/unrecognized device",
                metadata={"device_key": context.device_key, "is_new_device": True},
            )

        if device.trust_level == DeviceTrustLevel.RISKY:
            return self._factor(
                score=thresholds.untrusted_device_score,
                reason=f"Transaction from device with trust level: {device.trust_level.value}",
                metadata={
                    "device_key": context.device_key,
                    "trust_level": device.trust_level.value,
                    "trust_score": device.trust_score,
                },
                rule=self.untrusted_rule,
            )

        recent_cutoff = aux.evaluated_at - timedelta(hours=thresholds.recent_device_hours)
        if device.created_at > recent_cutoff:
            return self._factor(
                score=thresholds.recent_device_score,
                reason=(
                    f"Transaction from device added within the last "
                    f"{thresholds.recent_device_hours} hours"
                ),
                metadata={
                    "device_key": context.device_key,
                    "device_created_at": device.created_at.isoformat(),
                },
                rule=self.recent_rule,
            )

        return None
