"""Collaborator interfaces consumed by the risk core.

Implementations may use PostgreSQL (``src.db.repositories``) or process-local
storage (``src.domains.risk.memory``).
"""

from abc import ABC, abstractmethod
from datetime import datetime

from .models import (
    AuditEvent,
    DeviceTrustRecord,
    RiskRecord,
    RiskRecordFilter,
    Transaction,
    WindowTotals,
)


class TransactionStore(ABC):
    @abstractmethod
    async def find_by_id(self, transaction_id: str) -> Transaction | None:
        ...

    @abstractmethod
    async def count_and_sum_by_user_in_window(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
    ) -> WindowTotals:
        """Count and total the user's transactions created in ``[start, end)``."""
        ...


class DevicePersistence(ABC):
    @abstractmethod
    async def find_by_user_and_key(
        self, user_id: str, device_key: str
    ) -> DeviceTrustRecord | None:
        ...

    @abstractmethod
    async def list_by_user(self, user_id: str) -> list[DeviceTrustRecord]:
        """Return the user's devices, most recently updated first."""
        ...

    @abstractmethod
    async def create(self, record: DeviceTrustRecord) -> DeviceTrustRecord:
        """Insert a new record.

        Raises:
            ConflictError: a record for (user_id, device_key) already exists.
        """
        ...

    @abstractmethod
    async def save(self, record: DeviceTrustRecord) -> DeviceTrustRecord:
        """Update an existing record, bumping its version.

        Raises:
            ConflictError: the stored version differs from ``record.version``.
        """
        ...


class RiskRecordPersistence(ABC):
    @abstractmethod
    async def find_by_transaction_id(self, transaction_id: str) -> RiskRecord | None:
        ...

    @abstractmethod
    async def find_by_id(self, record_id: str) -> RiskRecord | None:
        ...

    @abstractmethod
    async def create(self, record: RiskRecord) -> RiskRecord:
        """Insert a new record.

        Raises:
            ConflictError: a record for ``record.transaction_id`` already exists.
        """
        ...

    @abstractmethod
    async def save(self, record: RiskRecord) -> RiskRecord:
        """Update an existing record, bumping its version.

        Raises:
            ConflictError: the stored version differs from ``record.version``.
        """
        ...

    @abstractmethod
    async def query(
        self,
        record_filter: RiskRecordFilter,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[RiskRecord], int]:
        """Page through matching records ordered by score desc, then created_at desc."""
        ...

    @abstractmethod
    async def list_all(
        self, record_filter: RiskRecordFilter, newest_first: bool = True
    ) -> list[RiskRecord]:
        ...

    @abstractmethod
    async def count(self, record_filter: RiskRecordFilter) -> int:
        ...

    @abstractmethod
    async def average(
        self, field: str = "risk_score", record_filter: RiskRecordFilter | None = None
    ) -> float:
        """Average of a numeric field over matching records, 0.0 when none match."""
        ...


class AuditSink(ABC):
    """Receives structured evaluation events. Failures never reach the core."""

    @abstractmethod
    async def emit(self, event: AuditEvent) -> None:
        ...
