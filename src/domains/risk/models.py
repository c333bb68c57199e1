"""Pydantic models for the transaction risk domain."""

from datetime import UTC, datetime
from decimal import Decimal
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(UTC)


class RiskLevel(StrEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class ReviewStatus(StrEnum):
    PENDING_REVIEW = "PENDING_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    ESCALATED = "ESCALATED"


class DeviceTrustLevel(StrEnum):
    TRUSTED = "trusted"
    NEUTRAL = "neutral"
    RISKY = "risky"


class AuditEventType(StrEnum):
    EVALUATION_STARTED = "EVALUATION_STARTED"
    EVALUATION_COMPLETED = "EVALUATION_COMPLETED"
    FLAGGED = "FLAGGED"
    REVIEWED = "REVIEWED"
    OVERRIDDEN = "OVERRIDDEN"


class ExportFormat(StrEnum):
    JSON = "json"
    CSV = "csv"


# ---------------------------------------------------------------------------
# Evaluation inputs
# ---------------------------------------------------------------------------


class RiskEvaluationContext(BaseModel):
    """Per-call input to the scoring engine. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    transaction_id: str
    user_id: str | None = None
    amount: Decimal
    currency: str = "USD"
    device_key: str | None = None
    ip_address: str | None = None
    metadata: dict = Field(default_factory=dict)


class Transaction(BaseModel):
    id: str
    user_id: str | None = None
    amount: Decimal
    currency: str = "USD"
    status: str = "PENDING"
    created_at: datetime = Field(default_factory=_utcnow)


class WindowTotals(BaseModel):
    count: int = 0
    total_amount: float = 0.0


class VelocityData(BaseModel):
    count_1h: int = 0
    amount_1h: float = 0.0
    count_24h: int = 0
    amount_24h: float = 0.0
    avg_amount_24h: float = 0.0
    rapid_window_minutes: int = 60
    count_rapid_window: int = 0


# ---------------------------------------------------------------------------
# Device trust
# ---------------------------------------------------------------------------


class GeoLocation(BaseModel):
    country: str | None = None
    city: str | None = None
    lat: float | None = None
    lng: float | None = None


class TrustSignal(BaseModel):
    ip: str | None = None
    user_agent: str | None = None
    geo: GeoLocation | None = None
    login_success: bool


class DeviceTrustRecord(BaseModel):
    id: str
    user_id: str
    device_key: str
    device_name: str | None = None
    trust_score: int = 50
    trust_level: DeviceTrustLevel = DeviceTrustLevel.NEUTRAL
    manually_trusted: bool = False
    manually_risky: bool = False
    failed_login_count: int = 0
    last_ip: str | None = None
    user_agent: str | None = None
    last_country: str | None = None
    last_city: str | None = None
    last_lat: float | None = None
    last_lng: float | None = None
    last_login_at: datetime | None = None
    trust_signals: dict = Field(default_factory=dict)
    version: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class DeviceContext(BaseModel):
    """Point-in-time device snapshot stored on a risk record."""

    device_key: str | None = None
    is_new_device: bool
    trust_score: int | None = None
    trust_level: DeviceTrustLevel | None = None
    last_login_at: datetime | None = None
    device_created_at: datetime | None = None


class EvaluationAux(BaseModel):
    """Read-only auxiliary inputs shared by every risk check in one evaluation."""

    model_config = ConfigDict(frozen=True)

    velocity: VelocityData
    device: DeviceTrustRecord | None = None
    evaluated_at: datetime


# ---------------------------------------------------------------------------
# Risk records
# ---------------------------------------------------------------------------


class RiskFactor(BaseModel):
    model_config = ConfigDict(frozen=True)

    rule: str
    score: int = Field(ge=0)
    reason: str
    metadata: dict = Field(default_factory=dict)


class EvaluationLogEntry(BaseModel):
    evaluated_at: datetime
    previous_score: int | None = None
    new_score: int
    factors: list[RiskFactor] = []
    triggered_rules: list[str] = []
    evaluated_by: str | None = None


class RiskRecord(BaseModel):
    id: str
    transaction_id: str
    user_id: str | None = None
    risk_score: int = 0
    risk_level: RiskLevel = RiskLevel.LOW
    is_flagged: bool = False
    flag_reason: str | None = None
    flagged_at: datetime | None = None
    risk_factors: list[RiskFactor] = []
    evaluation_history: list[EvaluationLogEntry] = []
    risk_evaluated_at: datetime | None = None
    review_status: ReviewStatus = ReviewStatus.PENDING_REVIEW
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    admin_notes: str | None = None
    auto_processed: bool = False
    overridden: bool = False
    overridden_by: str | None = None
    override_reason: str | None = None
    override_level: RiskLevel | None = None
    overridden_at: datetime | None = None
    velocity_data: VelocityData | None = None
    device_context: DeviceContext | None = None
    version: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class RiskEvaluationResult(BaseModel):
    record_id: str
    transaction_id: str
    user_id: str | None = None
    risk_score: int
    risk_level: RiskLevel
    is_flagged: bool
    flag_reason: str | None = None
    flagged_at: datetime | None = None
    risk_factors: list[RiskFactor] = []
    requires_manual_review: bool
    review_status: ReviewStatus
    velocity_data: VelocityData | None = None
    device_context: DeviceContext | None = None
    evaluated_at: datetime


# ---------------------------------------------------------------------------
# Queries and reports
# ---------------------------------------------------------------------------


class RiskRecordFilter(BaseModel):
    """Conjunctive filter over risk records. ``None`` fields do not constrain."""

    is_flagged: bool | None = None
    overridden: bool | None = None
    risk_level: RiskLevel | None = None
    review_status: ReviewStatus | None = None
    min_score: int | None = None
    max_score: int | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None

    def matches(self, record: RiskRecord) -> bool:
        if self.is_flagged is not None and record.is_flagged != self.is_flagged:
            return False
        if self.overridden is not None and record.overridden != self.overridden:
            return False
        if self.risk_level is not None and record.risk_level != self.risk_level:
            return False
        if self.review_status is not None and record.review_status != self.review_status:
            return False
        if self.min_score is not None and record.risk_score < self.min_score:
            return False
        if self.max_score is not None and record.risk_score > self.max_score:
            return False
        if self.created_from is not None and record.created_at < self.created_from:
            return False
        if self.created_to is not None and record.created_at >= self.created_to:
            return False
        return True


class FlaggedQuery(BaseModel):
    risk_level: RiskLevel | None = None
    review_status: ReviewStatus | None = ReviewStatus.PENDING_REVIEW
    min_score: int | None = None
    max_score: int | None = None
    page: int = 1
    limit: int = 20


class RiskStatistics(BaseModel):
    total_flagged: int = 0
    pending_review: int = 0
    approved: int = 0
    rejected: int = 0
    escalated: int = 0
    average_risk_score: float = 0.0
    counts_by_level: dict[RiskLevel, int] = Field(default_factory=dict)


class RiskFactorCount(BaseModel):
    rule: str
    count: int


class AuditReport(BaseModel):
    date_from: datetime
    date_to: datetime
    total_evaluations: int = 0
    flagged_count: int = 0
    reviewed_count: int = 0
    auto_blocked_count: int = 0
    average_risk_score: float = 0.0
    top_risk_factors: list[RiskFactorCount] = []


class BulkReviewItem(BaseModel):
    id: str
    success: bool
    error: str | None = None


class BulkReviewResult(BaseModel):
    total_processed: int
    successful: int
    failed: int
    details: list[BulkReviewItem] = []


class AuditEvent(BaseModel):
    event_type: AuditEventType
    transaction_id: str
    user_id: str | None = None
    device_key: str | None = None
    actor_id: str | None = None
    risk_score: int | None = None
    risk_level: RiskLevel | None = None
    triggered_rules: list[str] = []
    metadata: dict = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utcnow)
