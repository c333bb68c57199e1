"""Composition root for the transaction risk service."""

import asyncio
import contextlib
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import settings
from src.db.repositories import (
    SqlDevicePersistence,
    SqlRiskRecordPersistence,
    SqlTransactionStore,
)
from src.domains.risk.audit import KafkaAuditSink, LoggingAuditSink
from src.domains.risk.config import RiskConfig
from src.domains.risk.interfaces import AuditSink
from src.domains.risk.service import RiskService
from src.shared.kafka_utils import create_producer, stop_producer
from src.shared.logging import setup_logging

logger = structlog.get_logger()


def build_risk_service(
    session_factory: async_sessionmaker[AsyncSession],
    audit_sink: AuditSink | None = None,
    config: RiskConfig | None = None,
    transaction_statuses: list[str] | None = None,
) -> RiskService:
    """Wire the SQL stores, thresholds and audit sink into a RiskService."""
    return RiskService(
        records=SqlRiskRecordPersistence(session_factory),
        transactions=SqlTransactionStore(session_factory, statuses=transaction_statuses),
        devices=SqlDevicePersistence(session_factory),
        config=config or RiskConfig.from_env(),
        audit_sink=audit_sink or LoggingAuditSink(),
    )


@asynccontextmanager
async def lifespan() -> AsyncGenerator[RiskService, None]:
    """Service lifespan: logging, schema, audit producer, then the service."""
    setup_logging(settings.log_level, json_logs=settings.json_logs)
    logger.info(
        "risk_service_starting",
        app_name=settings.app_name,
        version=settings.app_version,
        debug=settings.debug,
    )

    from src.db.database import async_session_factory, init_db

    await init_db()

    producer = None
    if settings.kafka_bootstrap_servers:
        try:
            producer = await create_producer(
                settings.kafka_bootstrap_servers, client_id=settings.app_name
            )
        except Exception:
            logger.warning("kafka_producer_failed_to_start", exc_info=True)

    sink: AuditSink = (
        KafkaAuditSink(producer, topic=settings.audit_topic) if producer else LoggingAuditSink()
    )
    service = build_risk_service(async_session_factory, audit_sink=sink)
    logger.info(
        "risk_service_ready",
        audit_sink=type(sink).__name__,
        checks=[c.name for c in service.engine.checks],
    )

    try:
        yield service
    finally:
        with contextlib.suppress(Exception):
            await stop_producer(producer)
        logger.info("risk_service_shutting_down")


async def main() -> None:
    """Start the service, verify the database and report its statistics."""
    from src.db.database import check_db

    async with lifespan() as service:
        if not await check_db():
            logger.error("risk_service_database_unavailable")
            return
        stats = await service.statistics()
        logger.info("risk_service_statistics", **stats.model_dump(mode="json"))


if __name__ == "__main__":
    asyncio.run(main())
