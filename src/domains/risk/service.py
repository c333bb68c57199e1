"""Single entry point over the risk engine, review workflow, reports and device trust."""

from collections.abc import Callable
from datetime import UTC, datetime

from src.shared.locks import KeyedLock

from .checks import RiskCheck
from .config import RiskConfig, default_config
from .device_store import DeviceTrustStore
from .engine import RiskScoringEngine
from .interfaces import AuditSink, DevicePersistence, RiskRecordPersistence, TransactionStore
from .models import (
    AuditReport,
    BulkReviewResult,
    DeviceTrustLevel,
    DeviceTrustRecord,
    EvaluationLogEntry,
    ExportFormat,
    FlaggedQuery,
    ReviewStatus,
    RiskEvaluationContext,
    RiskEvaluationResult,
    RiskLevel,
    RiskRecord,
    RiskStatistics,
    TrustSignal,
)
from .reporting import AuditReporter
from .review import ReviewWorkflow


class RiskService:
    """Wires the risk components to one set of collaborators.

    The engine and the review workflow share a lock registry so that an
    evaluation, a review and an override of the same transaction never
    interleave in this process.
    """

    def __init__(
        self,
        records: RiskRecordPersistence,
        transactions: TransactionStore,
        devices: DevicePersistence,
        config: RiskConfig | None = None,
        audit_sink: AuditSink | None = None,
        checks: list[RiskCheck] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config or default_config
        clock = clock or (lambda: datetime.now(UTC))
        locks = KeyedLock()

        self.device_store = DeviceTrustStore(devices, config=self.config, clock=clock)
        self.engine = RiskScoringEngine(
            records=records,
            transactions=transactions,
            devices=self.device_store,
            checks=checks,
            config=self.config,
            audit_sink=audit_sink,
            clock=clock,
            locks=locks,
        )
        self.workflow = ReviewWorkflow(
            records,
            config=self.config,
            audit_sink=audit_sink,
            clock=clock,
            locks=locks,
        )
        self.reporter = AuditReporter(records)

    # Scoring

    async def evaluate(
        self,
        context: RiskEvaluationContext,
        timeout: float | None = None,
        evaluated_by: str | None = None,
    ) -> RiskEvaluationResult:
        return await self.engine.evaluate(context, timeout=timeout, evaluated_by=evaluated_by)

    async def evaluate_transaction(
        self,
        transaction_id: str,
        user_id: str | None = None,
        device_key: str | None = None,
        ip_address: str | None = None,
        timeout: float | None = None,
        evaluated_by: str | None = None,
    ) -> RiskEvaluationResult:
        return await self.engine.evaluate_transaction(
            transaction_id,
            user_id=user_id,
            device_key=device_key,
            ip_address=ip_address,
            timeout=timeout,
            evaluated_by=evaluated_by,
        )

    async def get_by_transaction_id(self, transaction_id: str) -> RiskRecord | None:
        return await self.engine.get_by_transaction_id(transaction_id)

    async def get_evaluation_history(self, transaction_id: str) -> list[EvaluationLogEntry]:
        return await self.engine.get_evaluation_history(transaction_id)

    # Review

    async def list_flagged(
        self, query: FlaggedQuery | None = None
    ) -> tuple[list[RiskRecord], int]:
        return await self.workflow.list_flagged(query)

    async def get_record(self, record_id: str) -> RiskRecord:
        return await self.workflow.get_record(record_id)

    async def review(
        self,
        record_id: str,
        admin_id: str,
        decision: ReviewStatus,
        notes: str | None = None,
        allow_auto_processing: bool | None = None,
    ) -> RiskRecord:
        return await self.workflow.review(
            record_id,
            admin_id,
            decision,
            notes=notes,
            allow_auto_processing=allow_auto_processing,
        )

    async def bulk_approve(
        self, record_ids: list[str], admin_id: str, notes: str = "Bulk approval"
    ) -> BulkReviewResult:
        return await self.workflow.bulk_approve(record_ids, admin_id, notes=notes)

    async def admin_override(
        self,
        transaction_id: str,
        admin_id: str,
        reason: str,
        clear_flag: bool | None = None,
        override_level: RiskLevel | None = None,
    ) -> RiskRecord:
        return await self.workflow.admin_override(
            transaction_id,
            admin_id,
            reason,
            clear_flag=clear_flag,
            override_level=override_level,
        )

    async def can_auto_process(self, transaction_id: str) -> bool:
        return await self.workflow.can_auto_process(transaction_id)

    # Reporting

    async def statistics(self) -> RiskStatistics:
        return await self.reporter.statistics()

    async def generate_audit_report(self, date_from: datetime, date_to: datetime) -> AuditReport:
        return await self.reporter.generate_audit_report(date_from, date_to)

    async def export_evaluation_logs(
        self,
        date_from: datetime,
        date_to: datetime,
        fmt: ExportFormat | str = ExportFormat.JSON,
    ) -> str:
        return await self.reporter.export_evaluation_logs(date_from, date_to, fmt)

    # Device trust

    async def record_device_signal(
        self,
        user_id: str,
        device_key: str,
        signal: TrustSignal,
        device_name: str | None = None,
    ) -> DeviceTrustRecord:
        return await self.device_store.record_signal(
            user_id, device_key, signal, device_name=device_name
        )

    async def get_device(self, user_id: str, device_key: str) -> DeviceTrustRecord | None:
        return await self.device_store.get(user_id, device_key)

    async def list_user_devices(self, user_id: str) -> list[DeviceTrustRecord]:
        return await self.device_store.list_user_devices(user_id)

    async def set_manual_trust(
        self, user_id: str, device_key: str, level: DeviceTrustLevel | None
    ) -> DeviceTrustRecord:
        return await self.device_store.set_manual_trust(user_id, device_key, level)
