"""Admin review workflow over flagged risk records."""

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime

import structlog

from src.shared.locks import KeyedLock

from .audit import emit_safely
from .config import RiskConfig, default_config
from .errors import (
    ConflictError,
    InvalidInputError,
    NotFoundError,
    PersistenceFailureError,
    RiskEngineError,
)
from .interfaces import AuditSink, RiskRecordPersistence
from .models import (
    AuditEvent,
    AuditEventType,
    BulkReviewItem,
    BulkReviewResult,
    EvaluationLogEntry,
    FlaggedQuery,
    ReviewStatus,
    RiskLevel,
    RiskRecord,
    RiskRecordFilter,
)

logger = structlog.get_logger()

ADMIN_REVIEW_RULE = "ADMIN_REVIEW"
MAX_PAGE_SIZE = 100


class ReviewWorkflow:
    """Review state machine: PENDING_REVIEW -> APPROVED | REJECTED | ESCALATED.

    No state is terminal here; any record can be reviewed again. Reviews and
    overrides never touch the score, level or factors, and share the engine's
    per-transaction lock when one is passed in.
    """

    def __init__(
        self,
        records: RiskRecordPersistence,
        config: RiskConfig | None = None,
        audit_sink: AuditSink | None = None,
        clock: Callable[[], datetime] | None = None,
        locks: KeyedLock | None = None,
    ) -> None:
        self._records = records
        self._config = config or default_config
        self._audit_sink = audit_sink
        self._clock = clock or (lambda: datetime.now(UTC))
        self._locks = locks or KeyedLock()

    async def list_flagged(
        self, query: FlaggedQuery | None = None
    ) -> tuple[list[RiskRecord], int]:
        """The admin inbox: flagged, non-overridden records, highest score first."""
        query = query or FlaggedQuery()
        if query.page < 1:
            raise InvalidInputError("page must be >= 1")
        if not 1 <= query.limit <= MAX_PAGE_SIZE:
            raise InvalidInputError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        if (
            query.min_score is not None
            and query.max_score is not None
            and query.min_score > query.max_score
        ):
            raise InvalidInputError("min_score must not exceed max_score")

        record_filter = RiskRecordFilter(
            is_flagged=True,
            overridden=False,
            risk_level=query.risk_level,
            review_status=query.review_status,
            min_score=query.min_score,
            max_score=query.max_score,
        )
        return await self._records.query(record_filter, page=query.page, limit=query.limit)

    async def get_record(self, record_id: str) -> RiskRecord:
        record = await self._records.find_by_id(record_id)
        if record is None:
            raise NotFoundError(f"Risk record not found: {record_id}")
        return record

    async def review(
        self,
        record_id: str,
        admin_id: str,
        decision: ReviewStatus,
        notes: str | None = None,
        allow_auto_processing: bool | None = None,
    ) -> RiskRecord:
        """Record an admin decision and append an ADMIN_REVIEW audit entry.

        Raises:
            InvalidInputError: missing admin or a non-decision status.
            NotFoundError: unknown record id.
            PersistenceFailureError: the decision could not be stored; the
                stored review status is unchanged.
        """
        if not admin_id:
            raise InvalidInputError("admin_id is required")
        if decision == ReviewStatus.PENDING_REVIEW:
            raise InvalidInputError("A review decision must be APPROVED, REJECTED or ESCALATED")

        record = await self.get_record(record_id)
        attempts = self._config.engine.max_persist_attempts

        async with self._locks.hold(record.transaction_id):
            for _ in range(attempts):
                current = await self.get_record(record_id)
                now = self._clock()
                updated = current.model_copy(deep=True)
                updated.review_status = decision
                updated.reviewed_by = admin_id
                updated.reviewed_at = now
                if notes:
                    updated.admin_notes = notes
                if allow_auto_processing is not None:
                    updated.auto_processed = allow_auto_processing
                updated.evaluation_history = [
                    *updated.evaluation_history,
                    EvaluationLogEntry(
                        evaluated_at=now,
                        previous_score=updated.risk_score,
                        new_score=updated.risk_score,
                        factors=list(updated.risk_factors),
                        triggered_rules=[ADMIN_REVIEW_RULE],
                        evaluated_by=admin_id,
                    ),
                ]
                updated.updated_at = now
                try:
                    saved = await self._records.save(updated)
                except ConflictError:
                    continue

                logger.info(
                    "risk_record_reviewed",
                    record_id=record_id,
                    transaction_id=saved.transaction_id,
                    admin_id=admin_id,
                    decision=decision.value,
                    auto_processed=saved.auto_processed,
                )
                await emit_safely(
                    self._audit_sink,
                    AuditEvent(
                        event_type=AuditEventType.REVIEWED,
                        transaction_id=saved.transaction_id,
                        user_id=saved.user_id,
                        actor_id=admin_id,
                        risk_score=saved.risk_score,
                        risk_level=saved.risk_level,
                        metadata={
                            "decision": decision.value,
                            "notes": notes,
                            "allow_auto_processing": allow_auto_processing,
                        },
                        timestamp=now,
                    ),
                )
                return saved

        raise PersistenceFailureError(
            f"Could not persist review for risk record {record_id} after {attempts} attempts"
        )

    async def bulk_approve(
        self,
        record_ids: list[str],
        admin_id: str,
        notes: str = "Bulk approval",
    ) -> BulkReviewResult:
        """Approve many records; each id succeeds or fails on its own."""

        async def _approve(record_id: str) -> BulkReviewItem:
            try:
                await self.review(
                    record_id,
                    admin_id,
                    ReviewStatus.APPROVED,
                    notes=notes,
                    allow_auto_processing=True,
                )
            except RiskEngineError as exc:
                return BulkReviewItem(id=record_id, success=False, error=exc.message)
            return BulkReviewItem(id=record_id, success=True)

        details = await asyncio.gather(*(_approve(record_id) for record_id in record_ids))
        successful = sum(1 for d in details if d.success)
        return BulkReviewResult(
            total_processed=len(details),
            successful=successful,
            failed=len(details) - successful,
            details=list(details),
        )

    async def can_auto_process(self, transaction_id: str) -> bool:
        record = await self._records.find_by_transaction_id(transaction_id)
        if record is None:
            return True
        if record.is_flagged and record.review_status == ReviewStatus.PENDING_REVIEW:
            return False
        if record.review_status == ReviewStatus.REJECTED:
            return False
        return True

    async def admin_override(
        self,
        transaction_id: str,
        admin_id: str,
        reason: str,
        clear_flag: bool | None = None,
        override_level: RiskLevel | None = None,
    ) -> RiskRecord:
        """Override the engine's verdict, independently of the review status.

        The record's flag is set to ``clear_flag``, or unflagged when it is
        omitted. ``override_level`` defaults to the current level.
        """
        if not admin_id:
            raise InvalidInputError("admin_id is required")
        if not reason:
            raise InvalidInputError("An override reason is required")
        attempts = self._config.engine.max_persist_attempts

        async with self._locks.hold(transaction_id):
            for _ in range(attempts):
                record = await self._records.find_by_transaction_id(transaction_id)
                if record is None:
                    raise NotFoundError(f"No risk record found for transaction {transaction_id}")

                now = self._clock()
                updated = record.model_copy(deep=True)
                updated.overridden = True
                updated.overridden_by = admin_id
                updated.override_reason = reason
                updated.override_level = override_level or record.risk_level
                updated.overridden_at = now
                updated.is_flagged = clear_flag if clear_flag is not None else False
                updated.updated_at = now
                try:
                    saved = await self._records.save(updated)
                except ConflictError:
                    continue

                logger.warning(
                    "risk_record_overridden",
                    transaction_id=transaction_id,
                    admin_id=admin_id,
                    reason=reason,
                    override_level=saved.override_level.value if saved.override_level else None,
                    is_flagged=saved.is_flagged,
                )
                await emit_safely(
                    self._audit_sink,
                    AuditEvent(
                        event_type=AuditEventType.OVERRIDDEN,
                        transaction_id=transaction_id,
                        user_id=saved.user_id,
                        actor_id=admin_id,
                        risk_score=saved.risk_score,
                        risk_level=saved.override_level,
                        metadata={"reason": reason, "clear_flag": clear_flag},
                        timestamp=now,
                    ),
                )
                return saved

        raise PersistenceFailureError(
            f"Could not persist override for transaction {transaction_id} after {attempts} attempts"
        )
