"""Transaction risk scoring, device trust and admin review."""

from .audit import KafkaAuditSink, LoggingAuditSink
from .config import RiskConfig, default_config
from .device_store import DeviceTrustStore
from .engine import RiskScoringEngine
from .errors import (
    ConflictError,
    EvaluationTimeoutError,
    InvalidInputError,
    NotFoundError,
    PersistenceFailureError,
    RiskCheckFailedError,
    RiskEngineError,
)
from .reporting import AuditReporter
from .review import ReviewWorkflow
from .service import RiskService
from .velocity import VelocityAggregator

__all__ = [
    "AuditReporter",
    "ConflictError",
    "DeviceTrustStore",
    "EvaluationTimeoutError",
    "InvalidInputError",
    "KafkaAuditSink",
    "LoggingAuditSink",
    "NotFoundError",
    "PersistenceFailureError",
    "ReviewWorkflow",
    "RiskCheckFailedError",
    "RiskConfig",
    "RiskEngineError",
    "RiskScoringEngine",
    "RiskService",
    "VelocityAggregator",
    "default_config",
]
