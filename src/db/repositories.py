"""SQLAlchemy implementations of the risk collaborator interfaces.

Each call runs in its own session and transaction. Optimistic concurrency
uses the ``version`` column: an UPDATE that matches no row at the expected
version raises ConflictError, which the domain services retry.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

import structlog
from sqlalchemy import Select, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.db.models import DeviceDB, RiskRecordDB, TransactionDB
from src.domains.risk.errors import ConflictError, PersistenceFailureError
from src.domains.risk.interfaces import (
    DevicePersistence,
    RiskRecordPersistence,
    TransactionStore,
)
from src.domains.risk.models import (
    DeviceTrustRecord,
    RiskRecord,
    RiskRecordFilter,
    Transaction,
    WindowTotals,
)

logger = structlog.get_logger()

_AVERAGE_FIELDS = {"risk_score": RiskRecordDB.risk_score}


def _utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


@asynccontextmanager
async def _transaction(
    factory: async_sessionmaker[AsyncSession], operation: str
) -> AsyncIterator[AsyncSession]:
    try:
        async with factory() as session, session.begin():
            yield session
    except IntegrityError as exc:
        raise ConflictError(f"{operation}: unique constraint violated") from exc
    except SQLAlchemyError as exc:
        logger.exception("database_operation_failed", operation=operation)
        raise PersistenceFailureError(f"{operation} failed: {exc}") from exc


class SqlTransactionStore(TransactionStore):
    """Read-only view over the transactions table.

    Args:
        session_factory: Session factory bound to the application engine.
        statuses: When given, only transactions in these statuses count
            toward velocity windows.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        statuses: list[str] | None = None,
    ) -> None:
        self._factory = session_factory
        self._statuses = statuses

    async def add(self, transaction: Transaction) -> None:
        async with _transaction(self._factory, "add_transaction") as session:
            session.add(
                TransactionDB(
                    id=transaction.id,
                    user_id=transaction.user_id,
                    amount=transaction.amount,
                    currency=transaction.currency,
                    status=transaction.status,
                    created_at=_utc(transaction.created_at),
                )
            )

    async def find_by_id(self, transaction_id: str) -> Transaction | None:
        async with _transaction(self._factory, "find_transaction") as session:
            row = await session.get(TransactionDB, transaction_id)
            if row is None:
                return None
            return Transaction(
                id=row.id,
                user_id=row.user_id,
                amount=row.amount,
                currency=row.currency,
                status=row.status,
                created_at=_utc(row.created_at),
            )

    async def count_and_sum_by_user_in_window(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
    ) -> WindowTotals:
        stmt = select(
            func.count(TransactionDB.id),
            func.coalesce(func.sum(TransactionDB.amount), 0),
        ).where(
            TransactionDB.user_id == user_id,
            TransactionDB.created_at >= _utc(start),
            TransactionDB.created_at < _utc(end),
        )
        if self._statuses:
            stmt = stmt.where(TransactionDB.status.in_(self._statuses))

        async with _transaction(self._factory, "velocity_window") as session:
            count, total = (await session.execute(stmt)).one()
        return WindowTotals(count=count or 0, total_amount=float(total or 0))


class SqlDevicePersistence(DevicePersistence):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._factory = session_factory

    async def find_by_user_and_key(
        self, user_id: str, device_key: str
    ) -> DeviceTrustRecord | None:
        stmt = select(DeviceDB).where(
            DeviceDB.user_id == user_id, DeviceDB.device_key == device_key
        )
        async with _transaction(self._factory, "find_device") as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _device_from_row(row) if row else None

    async def list_by_user(self, user_id: str) -> list[DeviceTrustRecord]:
        stmt = (
            select(DeviceDB)
            .where(DeviceDB.user_id == user_id)
            .order_by(DeviceDB.updated_at.desc())
        )
        async with _transaction(self._factory, "list_devices") as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_device_from_row(row) for row in rows]

    async def create(self, record: DeviceTrustRecord) -> DeviceTrustRecord:
        stored = record.model_copy(deep=True, update={"version": 1})
        async with _transaction(self._factory, "create_device") as session:
            session.add(DeviceDB(**_device_values(stored)))
        return stored

    async def save(self, record: DeviceTrustRecord) -> DeviceTrustRecord:
        stored = record.model_copy(deep=True, update={"version": record.version + 1})
        values = _device_values(stored)
        values.pop("id")
        stmt = (
            update(DeviceDB)
            .where(DeviceDB.id == record.id, DeviceDB.version == record.version)
            .values(**values)
        )
        async with _transaction(self._factory, "save_device") as session:
            rowcount = (await session.execute(stmt)).rowcount
        if rowcount == 0:
            raise ConflictError(f"Stale device record {record.device_key} for {record.user_id}")
        return stored


class SqlRiskRecordPersistence(RiskRecordPersistence):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._factory = session_factory

    async def find_by_transaction_id(self, transaction_id: str) -> RiskRecord | None:
        stmt = select(RiskRecordDB).where(RiskRecordDB.transaction_id == transaction_id)
        async with _transaction(self._factory, "find_risk_record") as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return _record_from_row(row) if row else None

    async def find_by_id(self, record_id: str) -> RiskRecord | None:
        async with _transaction(self._factory, "find_risk_record") as session:
            row = await session.get(RiskRecordDB, record_id)
            return _record_from_row(row) if row else None

    async def create(self, record: RiskRecord) -> RiskRecord:
        stored = record.model_copy(deep=True, update={"version": 1})
        async with _transaction(self._factory, "create_risk_record") as session:
            session.add(RiskRecordDB(**_record_values(stored)))
        return stored

    async def save(self, record: RiskRecord) -> RiskRecord:
        stored = record.model_copy(deep=True, update={"version": record.version + 1})
        values = _record_values(stored)
        values.pop("id")
        stmt = (
            update(RiskRecordDB)
            .where(RiskRecordDB.id == record.id, RiskRecordDB.version == record.version)
            .values(**values)
        )
        async with _transaction(self._factory, "save_risk_record") as session:
            rowcount = (await session.execute(stmt)).rowcount
        if rowcount == 0:
            raise ConflictError(f"Stale risk record for {record.transaction_id}")
        return stored

    async def query(
        self,
        record_filter: RiskRecordFilter,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[RiskRecord], int]:
        stmt = _apply_filter(select(RiskRecordDB), record_filter)
        count_stmt = _apply_filter(select(func.count(RiskRecordDB.id)), record_filter)
        stmt = (
            stmt.order_by(RiskRecordDB.risk_score.desc(), RiskRecordDB.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        async with _transaction(self._factory, "query_risk_records") as session:
            rows = (await session.execute(stmt)).scalars().all()
            total = (await session.execute(count_stmt)).scalar_one()
            return [_record_from_row(row) for row in rows], total

    async def list_all(
        self, record_filter: RiskRecordFilter, newest_first: bool = True
    ) -> list[RiskRecord]:
        order = RiskRecordDB.created_at.desc() if newest_first else RiskRecordDB.created_at.asc()
        stmt = _apply_filter(select(RiskRecordDB), record_filter).order_by(order)
        async with _transaction(self._factory, "list_risk_records") as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_record_from_row(row) for row in rows]

    async def count(self, record_filter: RiskRecordFilter) -> int:
        stmt = _apply_filter(select(func.count(RiskRecordDB.id)), record_filter)
        async with _transaction(self._factory, "count_risk_records") as session:
            return (await session.execute(stmt)).scalar_one()

    async def average(
        self, field: str = "risk_score", record_filter: RiskRecordFilter | None = None
    ) -> float:
        column = _AVERAGE_FIELDS.get(field)
        if column is None:
            raise ValueError(f"Cannot average risk records by {field!r}")
        stmt = _apply_filter(select(func.avg(column)), record_filter or RiskRecordFilter())
        async with _transaction(self._factory, "average_risk_records") as session:
            value = (await session.execute(stmt)).scalar_one()
        return float(value) if value is not None else 0.0


def _apply_filter(stmt: Select, record_filter: RiskRecordFilter) -> Select:
    f = record_filter
    if f.is_flagged is not None:
        stmt = stmt.where(RiskRecordDB.is_flagged == f.is_flagged)
    if f.overridden is not None:
        stmt = stmt.where(RiskRecordDB.overridden == f.overridden)
    if f.risk_level is not None:
        stmt = stmt.where(RiskRecordDB.risk_level == f.risk_level.value)
    if f.review_status is not None:
        stmt = stmt.where(RiskRecordDB.review_status == f.review_status.value)
    if f.min_score is not None:
        stmt = stmt.where(RiskRecordDB.risk_score >= f.min_score)
    if f.max_score is not None:
        stmt = stmt.where(RiskRecordDB.risk_score <= f.max_score)
    if f.created_from is not None:
        stmt = stmt.where(RiskRecordDB.created_at >= _utc(f.created_from))
    if f.created_to is not None:
        stmt = stmt.where(RiskRecordDB.created_at < _utc(f.created_to))
    return stmt


def _record_values(record: RiskRecord) -> dict:
    data = record.model_dump(mode="json")
    return {
        "id": record.id,
        "transaction_id": record.transaction_id,
        "user_id": record.user_id,
        "risk_score": record.risk_score,
        "risk_level": record.risk_level.value,
        "is_flagged": record.is_flagged,
        "flag_reason": record.flag_reason,
        "flagged_at": _utc(record.flagged_at),
        "risk_factors": data["risk_factors"],
        "evaluation_history": data["evaluation_history"],
        "risk_evaluated_at": _utc(record.risk_evaluated_at),
        "review_status": record.review_status.value,
        "reviewed_by": record.reviewed_by,
        "reviewed_at": _utc(record.reviewed_at),
        "admin_notes": record.admin_notes,
        "auto_processed": record.auto_processed,
        "overridden": record.overridden,
        "overridden_by": record.overridden_by,
        "override_reason": record.override_reason,
        "override_level": record.override_level.value if record.override_level else None,
        "overridden_at": _utc(record.overridden_at),
        "velocity_data": data["velocity_data"],
        "device_context": data["device_context"],
        "version": record.version,
        "created_at": _utc(record.created_at),
        "updated_at": _utc(record.updated_at),
    }


def _record_from_row(row: RiskRecordDB) -> RiskRecord:
    return RiskRecord.model_validate(
        {
            "id": row.id,
            "transaction_id": row.transaction_id,
            "user_id": row.user_id,
            "risk_score": row.risk_score,
            "risk_level": row.risk_level,
            "is_flagged": row.is_flagged,
            "flag_reason": row.flag_reason,
            "flagged_at": _utc(row.flagged_at),
            "risk_factors": row.risk_factors or [],
            "evaluation_history": row.evaluation_history or [],
            "risk_evaluated_at": _utc(row.risk_evaluated_at),
            "review_status": row.review_status,
            "reviewed_by": row.reviewed_by,
            "reviewed_at": _utc(row.reviewed_at),
            "admin_notes": row.admin_notes,
            "auto_processed": row.auto_processed,
            "overridden": row.overridden,
            "overridden_by": row.overridden_by,
            "override_reason": row.override_reason,
            "override_level": row.override_level,
            "overridden_at": _utc(row.overridden_at),
            "velocity_data": row.velocity_data,
            "device_context": row.device_context,
            "version": row.version,
            "created_at": _utc(row.created_at),
            "updated_at": _utc(row.updated_at),
        }
    )


def _device_values(record: DeviceTrustRecord) -> dict:
    values = record.model_dump(
        exclude={"trust_level", "last_login_at", "created_at", "updated_at", "trust_signals"}
    )
    values.update(
        trust_level=record.trust_level.value,
        trust_signals=record.model_dump(mode="json")["trust_signals"],
        last_login_at=_utc(record.last_login_at),
        created_at=_utc(record.created_at),
        updated_at=_utc(record.updated_at),
    )
    return values


def _device_from_row(row: DeviceDB) -> DeviceTrustRecord:
    return DeviceTrustRecord(
        id=row.id,
        user_id=row.user_id,
        device_key=row.device_key,
        device_name=row.device_name,
        trust_score=row.trust_score,
        trust_level=row.trust_level,
        manually_trusted=row.manually_trusted,
        manually_risky=row.manually_risky,
        failed_login_count=row.failed_login_count,
        last_ip=row.last_ip,
        user_agent=row.user_agent,
        last_country=row.last_country,
        last_city=row.last_city,
        last_lat=row.last_lat,
        last_lng=row.last_lng,
        last_login_at=_utc(row.last_login_at),
        trust_signals=row.trust_signals or {},
        version=row.version,
        created_at=_utc(row.created_at),
        updated_at=_utc(row.updated_at),
    )
