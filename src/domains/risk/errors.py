"""Error taxonomy for the transaction risk domain.

Each error carries a stable ``code`` for outer layers. NotFound and InvalidInput
also subclass the matching builtin so generic ``LookupError``/``ValueError``
handlers keep working.
"""


class RiskEngineError(Exception):
    """Base class for all risk domain errors."""

    code = "RISK_ENGINE_ERROR"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class NotFoundError(RiskEngineError, LookupError):
    code = "NOT_FOUND"


class InvalidInputError(RiskEngineError, ValueError):
    code = "INVALID_INPUT"


class ConflictError(RiskEngineError):
    """Uniqueness or version conflict raised by a persistence adapter.

    Always resolved internally by re-fetching; callers of the core never see it.
    """

    code = "CONFLICT"


class EvaluationTimeoutError(RiskEngineError, TimeoutError):
    code = "TIMEOUT"


class PersistenceFailureError(RiskEngineError):
    code = "PERSISTENCE_FAILURE"


class RiskCheckFailedError(RiskEngineError):
    code = "RISK_CHECK_FAILED"

    def __init__(self, check_name: str, message: str) -> None:
        self.check_name = check_name
        super().__init__(message)
