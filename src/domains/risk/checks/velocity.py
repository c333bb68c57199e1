"""Velocity-based risk checks."""

from ..config import RiskConfig
from ..models import EvaluationAux, RiskEvaluationContext, RiskFactor
from .base import RiskCheck


class RapidConsecutiveTransfersCheck(RiskCheck):
    """Triggers when the user's count in the rapid-transfer window meets the threshold."""

    name = "RAPID_CONSECUTIVE_TRANSFERS"

    async def run(
        self,
        context: RiskEvaluationContext,
        aux: EvaluationAux,
        config: RiskConfig,
    ) -> RiskFactor | None:
        if not context.user_id:
            return None

        threshold = config.velocity.rapid_transfer_count
        count = aux.velocity.count_rapid_window
        window = aux.velocity.rapid_window_minutes
        if count < threshold:
            return None

        return self._factor(
            score=config.velocity.rapid_transfer_score,
            reason=f"{count} transactions in the last {window} minutes",
            metadata={
                "transaction_count": count,
                "threshold": threshold,
                "time_window_minutes": window,
            },
        )


class VelocityAnomalyCheck(RiskCheck):
    """Flags amounts far above the user's 24h average, or an hourly burst.

    Both conditions are tested in order and the first match wins, so a call
    yields at most one factor: VELOCITY_ANOMALY (amount ratio) takes
    precedence over UNUSUAL_FREQUENCY (hourly count).
    """

    name = "VELOCITY_ANOMALY"
    frequency_rule = "UNUSUAL_FREQUENCY"

    async def run(
        self,
        context: RiskEvaluationContext,
        aux: EvaluationAux,
        config: RiskConfig,
    ) -> RiskFactor | None:
        if not context.user_id:
            return None

        velocity = aux.velocity
        amount = float(context.amount)
        multiplier = config.velocity.anomaly_multiplier
        average = velocity.avg_amount_24h

        if average > 0 and amount > average * multiplier:
            ratio = amount / average
            return self._factor(
                score=config.velocity.anomaly_score,
                reason=(
                    f"Transaction amount ({amount}) is {ratio:.1f}x higher than "
                    f"user's average ({average:.2f})"
                ),
                metadata={
                    "current_amount": amount,
                    "average_amount": average,
                    "ratio": round(ratio, 2),
                    "multiplier": multiplier,
                },
            )

        frequency_threshold = config.velocity.unusual_frequency_count_1h
        if velocity.count_1h > frequency_threshold:
            return self._factor(
                score=config.velocity.unusual_frequency_score,
                reason=(
                    f"Unusual transaction frequency: {velocity.count_1h} "
                    "transactions in the last hour"
                ),
                metadata={
                    "transactions_in_last_hour": velocity.count_1h,
                    "threshold": frequency_threshold,
                },
                rule=self.frequency_rule,
            )

        return None
