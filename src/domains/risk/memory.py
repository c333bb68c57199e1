"""Process-local implementations of the risk collaborator interfaces.

They enforce the same uniqueness and version rules as the SQL repositories and
hand out deep copies, so callers never share state with the store.
"""

from datetime import datetime

from .errors import ConflictError
from .interfaces import DevicePersistence, RiskRecordPersistence, TransactionStore
from .models import (
    DeviceTrustRecord,
    RiskRecord,
    RiskRecordFilter,
    Transaction,
    WindowTotals,
)


class InMemoryTransactionStore(TransactionStore):
    def __init__(self, transactions: list[Transaction] | None = None) -> None:
        self._transactions: dict[str, Transaction] = {}
        for txn in transactions or []:
            self.add(txn)

    def add(self, transaction: Transaction) -> None:
        self._transactions[transaction.id] = transaction.model_copy(deep=True)

    async def find_by_id(self, transaction_id: str) -> Transaction | None:
        txn = self._transactions.get(transaction_id)
        return txn.model_copy(deep=True) if txn else None

    async def count_and_sum_by_user_in_window(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
    ) -> WindowTotals:
        matching = [
            t
            for t in list(self._transactions.values())
            if t.user_id == user_id and start <= t.created_at < end
        ]
        return WindowTotals(
            count=len(matching),
            total_amount=float(sum(t.amount for t in matching)),
        )


class InMemoryDevicePersistence(DevicePersistence):
    def __init__(self) -> None:
        self._devices: dict[tuple[str, str], DeviceTrustRecord] = {}

    async def find_by_user_and_key(
        self, user_id: str, device_key: str
    ) -> DeviceTrustRecord | None:
        record = self._devices.get((user_id, device_key))
        return record.model_copy(deep=True) if record else None

    async def list_by_user(self, user_id: str) -> list[DeviceTrustRecord]:
        devices = [d for (uid, _), d in self._devices.items() if uid == user_id]
        devices.sort(key=lambda d: d.updated_at, reverse=True)
        return [d.model_copy(deep=True) for d in devices]

    async def create(self, record: DeviceTrustRecord) -> DeviceTrustRecord:
        key = (record.user_id, record.device_key)
        if key in self._devices:
            raise ConflictError(f"Device {record.device_key} already exists for {record.user_id}")
        stored = record.model_copy(deep=True, update={"version": 1})
        self._devices[key] = stored
        return stored.model_copy(deep=True)

    async def save(self, record: DeviceTrustRecord) -> DeviceTrustRecord:
        key = (record.user_id, record.device_key)
        current = self._devices.get(key)
        if current is None or current.version != record.version:
            raise ConflictError(f"Stale device record {record.device_key} for {record.user_id}")
        stored = record.model_copy(deep=True, update={"version": record.version + 1})
        self._devices[key] = stored
        return stored.model_copy(deep=True)


class InMemoryRiskRecordPersistence(RiskRecordPersistence):
    def __init__(self) -> None:
        self._by_transaction: dict[str, RiskRecord] = {}

    async def find_by_transaction_id(self, transaction_id: str) -> RiskRecord | None:
        record = self._by_transaction.get(transaction_id)
        return record.model_copy(deep=True) if record else None

    async def find_by_id(self, record_id: str) -> RiskRecord | None:
        for record in self._by_transaction.values():
            if record.id == record_id:
                return record.model_copy(deep=True)
        return None

    async def create(self, record: RiskRecord) -> RiskRecord:
        if record.transaction_id in self._by_transaction:
            raise ConflictError(f"Risk record already exists for {record.transaction_id}")
        stored = record.model_copy(deep=True, update={"version": 1})
        self._by_transaction[record.transaction_id] = stored
        return stored.model_copy(deep=True)

    async def save(self, record: RiskRecord) -> RiskRecord:
        current = self._by_transaction.get(record.transaction_id)
        if current is None or current.id != record.id or current.version != record.version:
            raise ConflictError(f"Stale risk record for {record.transaction_id}")
        stored = record.model_copy(deep=True, update={"version": record.version + 1})
        self._by_transaction[record.transaction_id] = stored
        return stored.model_copy(deep=True)

    async def query(
        self,
        record_filter: RiskRecordFilter,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[RiskRecord], int]:
        matching = [r for r in self._by_transaction.values() if record_filter.matches(r)]
        matching.sort(key=lambda r: (r.risk_score, r.created_at), reverse=True)
        offset = (page - 1) * limit
        items = [r.model_copy(deep=True) for r in matching[offset : offset + limit]]
        return items, len(matching)

    async def list_all(
        self, record_filter: RiskRecordFilter, newest_first: bool = True
    ) -> list[RiskRecord]:
        matching = [r for r in self._by_transaction.values() if record_filter.matches(r)]
        matching.sort(key=lambda r: r.created_at, reverse=newest_first)
        return [r.model_copy(deep=True) for r in matching]

    async def count(self, record_filter: RiskRecordFilter) -> int:
        return sum(1 for r in self._by_transaction.values() if record_filter.matches(r))

    async def average(
        self, field: str = "risk_score", record_filter: RiskRecordFilter | None = None
    ) -> float:
        record_filter = record_filter or RiskRecordFilter()
        values = [
            float(getattr(r, field))
            for r in self._by_transaction.values()
            if record_filter.matches(r)
        ]
        return sum(values) / len(values) if values else 0.0
