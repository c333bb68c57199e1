"""Transaction risk scoring: aux fetch -> concurrent checks -> aggregate -> upsert."""

import asyncio
import re
import uuid
from collections.abc import Callable
from datetime import UTC, datetime

import structlog

from src.shared.locks import KeyedLock

from .audit import emit_safely
from .checks import RiskCheck, default_checks
from .config import RiskConfig, ScoringThresholds, default_config
from .device_store import DeviceTrustStore
from .errors import (
    ConflictError,
    EvaluationTimeoutError,
    InvalidInputError,
    NotFoundError,
    PersistenceFailureError,
    RiskCheckFailedError,
)
from .interfaces import AuditSink, RiskRecordPersistence, TransactionStore
from .models import (
    AuditEvent,
    AuditEventType,
    DeviceContext,
    DeviceTrustRecord,
    EvaluationAux,
    EvaluationLogEntry,
    RiskEvaluationContext,
    RiskEvaluationResult,
    RiskFactor,
    RiskLevel,
    RiskRecord,
    VelocityData,
)
from .velocity import VelocityAggregator

logger = structlog.get_logger()

_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")


def classify_risk_level(score: int, thresholds: ScoringThresholds) -> RiskLevel:
    if score >= thresholds.critical_threshold:
        return RiskLevel.CRITICAL
    if score >= thresholds.auto_flag_threshold:
        return RiskLevel.HIGH
    if score >= thresholds.medium_threshold:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def build_flag_reason(factors: list[RiskFactor], critical_cutoff: int) -> str:
    critical = [f.rule for f in factors if f.score >= critical_cutoff]
    if critical:
        return f"Critical risk factors: {', '.join(critical)}"
    return f"Risk factors detected: {', '.join(f.rule for f in factors)}"


class RiskScoringEngine:
    """Evaluates transactions against an ordered set of risk checks.

    Scoring is additive:
    1. Fetch velocity and device trust concurrently (read-only)
    2. Run every check concurrently -> zero or one factor each
    3. Score = sum of factor scores; level and flag from configured thresholds
    4. Upsert the transaction's risk record and append to its history

    Steps 1-2 are bounded by a timeout and fail closed. Writes for one
    transaction are serialized; a lost insert/update race is retried from a
    fresh read up to ``engine.max_persist_attempts`` times.
    """

    def __init__(
        self,
        records: RiskRecordPersistence,
        transactions: TransactionStore,
        devices: DeviceTrustStore,
        checks: list[RiskCheck] | None = None,
        config: RiskConfig | None = None,
        audit_sink: AuditSink | None = None,
        clock: Callable[[], datetime] | None = None,
        locks: KeyedLock | None = None,
    ) -> None:
        self._config = config or default_config
        self._records = records
        self._transactions = transactions
        self._devices = devices
        self._velocity = VelocityAggregator(transactions, self._config)
        self._checks = list(checks) if checks is not None else default_checks()
        self._audit_sink = audit_sink
        self._clock = clock or (lambda: datetime.now(UTC))
        self._locks = locks or KeyedLock()
        logger.info(
            "risk_engine_initialized",
            check_count=len(self._checks),
            checks=[c.name for c in self._checks],
        )

    @property
    def checks(self) -> list[RiskCheck]:
        return list(self._checks)

    async def evaluate(
        self,
        context: RiskEvaluationContext,
        timeout: float | None = None,
        evaluated_by: str | None = None,
    ) -> RiskEvaluationResult:
        """Score a transaction and upsert its risk record.

        Args:
            context: The transaction being evaluated.
            timeout: Seconds allowed for auxiliary lookups and checks; defaults
                to ``engine.evaluation_timeout_seconds``.
            evaluated_by: Admin id when this is a manual re-run.

        Raises:
            InvalidInputError: malformed context.
            EvaluationTimeoutError: lookups or checks exceeded the timeout.
            RiskCheckFailedError: a check raised.
            PersistenceFailureError: the record could not be written.
        """
        _validate_context(context)
        cfg = self._config
        now = self._clock()
        limit = timeout if timeout is not None else cfg.engine.evaluation_timeout_seconds

        await emit_safely(
            self._audit_sink,
            AuditEvent(
                event_type=AuditEventType.EVALUATION_STARTED,
                transaction_id=context.transaction_id,
                user_id=context.user_id,
                device_key=context.device_key,
                actor_id=evaluated_by,
                timestamp=now,
            ),
        )

        try:
            aux, factors = await asyncio.wait_for(self._assess(context, now), timeout=limit)
        except TimeoutError:
            logger.warning(
                "risk_evaluation_timeout",
                transaction_id=context.transaction_id,
                timeout_seconds=limit,
            )
            raise EvaluationTimeoutError(
                f"Risk evaluation for {context.transaction_id} exceeded {limit}s"
            ) from None

        score = sum(f.score for f in factors)
        level = classify_risk_level(score, cfg.scoring)
        flagged = score >= cfg.scoring.auto_flag_threshold
        device_context = _device_context(context, aux.device)

        record = await self._persist(
            context=context,
            factors=factors,
            score=score,
            level=level,
            flagged=flagged,
            velocity=aux.velocity if context.user_id else None,
            device_context=device_context,
            now=now,
            evaluated_by=evaluated_by,
        )

        triggered = [f.rule for f in factors]
        await emit_safely(
            self._audit_sink,
            AuditEvent(
                event_type=AuditEventType.EVALUATION_COMPLETED,
                transaction_id=context.transaction_id,
                user_id=context.user_id,
                device_key=context.device_key,
                actor_id=evaluated_by,
                risk_score=score,
                risk_level=level,
                triggered_rules=triggered,
                timestamp=now,
            ),
        )
        if flagged:
            logger.warning(
                "risk_record_flagged",
                transaction_id=context.transaction_id,
                user_id=context.user_id,
                risk_score=score,
                risk_level=level.value,
                flag_reason=record.flag_reason,
            )
            await emit_safely(
                self._audit_sink,
                AuditEvent(
                    event_type=AuditEventType.FLAGGED,
                    transaction_id=context.transaction_id,
                    user_id=context.user_id,
                    device_key=context.device_key,
                    risk_score=score,
                    risk_level=level,
                    triggered_rules=triggered,
                    metadata={"flag_reason": record.flag_reason},
                    timestamp=now,
                ),
            )

        logger.info(
            "risk_evaluated",
            transaction_id=context.transaction_id,
            risk_score=score,
            risk_level=level.value,
            is_flagged=flagged,
            triggered_rules=triggered,
            evaluation_count=len(record.evaluation_history),
        )

        return RiskEvaluationResult(
            record_id=record.id,
            transaction_id=record.transaction_id,
            user_id=record.user_id,
            risk_score=score,
            risk_level=level,
            is_flagged=flagged,
            flag_reason=record.flag_reason,
            flagged_at=record.flagged_at,
            risk_factors=factors,
            requires_manual_review=flagged,
            review_status=record.review_status,
            velocity_data=record.velocity_data,
            device_context=record.device_context,
            evaluated_at=now,
        )

    async def evaluate_transaction(
        self,
        transaction_id: str,
        user_id: str | None = None,
        device_key: str | None = None,
        ip_address: str | None = None,
        timeout: float | None = None,
        evaluated_by: str | None = None,
    ) -> RiskEvaluationResult:
        """Load a stored transaction and evaluate it."""
        transaction = await self._transactions.find_by_id(transaction_id)
        if transaction is None:
            raise NotFoundError(f"Transaction not found: {transaction_id}")

        context = RiskEvaluationContext(
            transaction_id=transaction.id,
            user_id=user_id or transaction.user_id,
            amount=transaction.amount,
            currency=transaction.currency,
            device_key=device_key,
            ip_address=ip_address,
        )
        return await self.evaluate(context, timeout=timeout, evaluated_by=evaluated_by)

    async def get_by_transaction_id(self, transaction_id: str) -> RiskRecord | None:
        return await self._records.find_by_transaction_id(transaction_id)

    async def get_evaluation_history(self, transaction_id: str) -> list[EvaluationLogEntry]:
        record = await self._records.find_by_transaction_id(transaction_id)
        return list(record.evaluation_history) if record else []

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _assess(
        self, context: RiskEvaluationContext, now: datetime
    ) -> tuple[EvaluationAux, list[RiskFactor]]:
        velocity, device = await asyncio.gather(
            self._fetch_velocity(context, now),
            self._fetch_device(context),
        )
        aux = EvaluationAux(velocity=velocity, device=device, evaluated_at=now)

        results = await asyncio.gather(
            *(self._run_check(check, context, aux) for check in self._checks)
        )
        # gather preserves check order, which drives flag_reason composition
        return aux, [factor for factor in results if factor is not None]

    async def _fetch_velocity(self, context: RiskEvaluationContext, now: datetime) -> VelocityData:
        if not context.user_id:
            return VelocityData(
                rapid_window_minutes=self._config.velocity.rapid_transfer_window_minutes
            )
        return await self._velocity.compute(context.user_id, as_of=now)

    async def _fetch_device(self, context: RiskEvaluationContext) -> DeviceTrustRecord | None:
        if not context.user_id or not context.device_key:
            return None
        return await self._devices.get(context.user_id, context.device_key)

    async def _run_check(
        self,
        check: RiskCheck,
        context: RiskEvaluationContext,
        aux: EvaluationAux,
    ) -> RiskFactor | None:
        try:
            return await check.run(context, aux, self._config)
        except Exception as exc:
            logger.exception(
                "risk_check_failed",
                check=check.name,
                transaction_id=context.transaction_id,
            )
            raise RiskCheckFailedError(check.name, f"Risk check {check.name} failed: {exc}") from exc

    async def _persist(
        self,
        context: RiskEvaluationContext,
        factors: list[RiskFactor],
        score: int,
        level: RiskLevel,
        flagged: bool,
        velocity: VelocityData | None,
        device_context: DeviceContext | None,
        now: datetime,
        evaluated_by: str | None,
    ) -> RiskRecord:
        attempts = self._config.engine.max_persist_attempts
        cutoff = self._config.scoring.critical_factor_cutoff

        async with self._locks.hold(context.transaction_id):
            for attempt in range(1, attempts + 1):
                existing = await self._records.find_by_transaction_id(context.transaction_id)
                is_new = existing is None
                if is_new:
                    record = RiskRecord(
                        id=str(uuid.uuid4()),
                        transaction_id=context.transaction_id,
                        user_id=context.user_id,
                        created_at=now,
                        updated_at=now,
                    )
                else:
                    record = existing.model_copy(deep=True)

                previous_score = record.risk_score
                record.user_id = record.user_id or context.user_id
                record.risk_score = score
                record.risk_level = level
                record.is_flagged = flagged
                record.risk_factors = list(factors)
                record.risk_evaluated_at = now
                record.velocity_data = velocity
                record.device_context = device_context
                record.updated_at = now
                if flagged and record.flagged_at is None:
                    record.flagged_at = now
                    record.flag_reason = build_flag_reason(factors, cutoff)
                record.evaluation_history = [
                    *record.evaluation_history,
                    EvaluationLogEntry(
                        evaluated_at=now,
                        previous_score=previous_score,
                        new_score=score,
                        factors=list(factors),
                        triggered_rules=[f.rule for f in factors],
                        evaluated_by=evaluated_by,
                    ),
                ]

                try:
                    if is_new:
                        return await self._records.create(record)
                    return await self._records.save(record)
                except ConflictError:
                    logger.info(
                        "risk_record_conflict_retry",
                        transaction_id=context.transaction_id,
                        attempt=attempt,
                        was_insert=is_new,
                    )
                except PersistenceFailureError:
                    logger.exception(
                        "risk_record_persist_failed",
                        transaction_id=context.transaction_id,
                    )
                    raise

        raise PersistenceFailureError(
            f"Could not persist risk record for {context.transaction_id} "
            f"after {attempts} attempts"
        )


def _validate_context(context: RiskEvaluationContext) -> None:
    if not context.transaction_id:
        raise InvalidInputError("transaction_id is required")
    if not context.amount.is_finite() or context.amount < 0:
        raise InvalidInputError(f"Invalid amount: {context.amount}")
    if not _CURRENCY_RE.match(context.currency or ""):
        raise InvalidInputError(f"Malformed currency code: {context.currency!r}")


def _device_context(
    context: RiskEvaluationContext, device: DeviceTrustRecord | None
) -> DeviceContext | None:
    if not context.device_key:
        return None
    if device is None:
        return DeviceContext(device_key=context.device_key, is_new_device=True)
    return DeviceContext(
        device_key=context.device_key,
        is_new_device=False,
        trust_score=device.trust_score,
        trust_level=device.trust_level,
        last_login_at=device.last_login_at,
        device_created_at=device.created_at,
    )
