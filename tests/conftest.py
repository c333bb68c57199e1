"""Shared test fixtures for transaction risk tests."""

import os
from datetime import UTC, datetime, timedelta

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("KAFKA_BOOTSTRAP_SERVERS", "")

from src.domains.risk.interfaces import AuditSink  # noqa: E402
from src.domains.risk.memory import (  # noqa: E402
    InMemoryDevicePersistence,
    InMemoryRiskRecordPersistence,
    InMemoryTransactionStore,
)
from src.domains.risk.models import AuditEvent  # noqa: E402

NOW = datetime(2026, 1, 15, 14, 0, 0, tzinfo=UTC)


class FakeClock:
    """Deterministic clock; call ``advance`` to move time forward."""

    def __init__(self, start: datetime = NOW) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingAuditSink(AuditSink):
    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    async def emit(self, event: AuditEvent) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [e.event_type.value for e in self.events]


class FailingAuditSink(AuditSink):
    def __init__(self) -> None:
        self.calls = 0

    async def emit(self, event: AuditEvent) -> None:
        self.calls += 1
        raise RuntimeError("audit backend unavailable")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def audit_sink() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def transaction_store() -> InMemoryTransactionStore:
    return InMemoryTransactionStore()


@pytest.fixture
def device_persistence() -> InMemoryDevicePersistence:
    return InMemoryDevicePersistence()


@pytest.fixture
def record_persistence() -> InMemoryRiskRecordPersistence:
    return InMemoryRiskRecordPersistence()


@pytest.fixture
def failing_audit_sink() -> FailingAuditSink:
    return FailingAuditSink()
