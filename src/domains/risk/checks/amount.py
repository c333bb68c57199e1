"""Amount-based risk checks."""

import math
from decimal import Decimal

from ..config import RiskConfig
from ..models import EvaluationAux, RiskEvaluationContext, RiskFactor
from .base import RiskCheck


class HighValueTransactionCheck(RiskCheck):
    """Triggers when the raw amount reaches the high-value threshold.

    The comparison ignores currency: 10,000 JPY and 10,000 USD are treated
    alike until an FX normalization policy exists.
    """

    name = "HIGH_VALUE_TRANSACTION"

    async def run(
        self,
        context: RiskEvaluationContext,
        aux: EvaluationAux,
        config: RiskConfig,
    ) -> RiskFactor | None:
        threshold = Decimal(str(config.amount.high_value_threshold))
        if threshold <= 0 or context.amount < threshold:
            return None

        cap = config.amount.high_value_score_cap
        score = min(cap, math.floor((context.amount / threshold) * 10))

        return self._factor(
            score=score,
            reason=(
                f"Transaction amount ({context.amount}) exceeds high-value "
                f"threshold ({threshold})"
            ),
            metadata={
                "amount": str(context.amount),
                "threshold": str(threshold),
                "currency": context.currency,
            },
        )
