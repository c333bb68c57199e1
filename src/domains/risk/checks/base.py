"""Abstract base class for transaction risk checks."""

from abc import ABC, abstractmethod

from ..config import RiskConfig
from ..models import EvaluationAux, RiskEvaluationContext, RiskFactor


class RiskCheck(ABC):
    """Base class for all risk checks.

    Checks are side-effect free: they read the evaluation context and the shared
    auxiliary inputs and return at most one factor. The engine runs them
    concurrently.
    """

    name: str

    @abstractmethod
    async def run(
        self,
        context: RiskEvaluationContext,
        aux: EvaluationAux,
        config: RiskConfig,
    ) -> RiskFactor | None:
        """Evaluate this check; ``None`` means not triggered."""
        ...

    def _factor(
        self,
        score: int,
        reason: str,
        metadata: dict | None = None,
        rule: str | None = None,
    ) -> RiskFactor:
        """Convenience: build a triggered factor for this check."""
        return RiskFactor(
            rule=rule or self.name,
            score=score,
            reason=reason,
            metadata=metadata or {},
        )
