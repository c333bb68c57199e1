"""Audit sinks for risk evaluation events, plus failure isolation."""

import structlog

from .interfaces import AuditSink
from .models import AuditEvent, AuditEventType

logger = structlog.get_logger()

_WARNING_EVENTS = {AuditEventType.FLAGGED, AuditEventType.OVERRIDDEN}


class LoggingAuditSink(AuditSink):
    """Writes each event to the structured application log."""

    async def emit(self, event: AuditEvent) -> None:
        log = logger.warning if event.event_type in _WARNING_EVENTS else logger.info
        log(
            "risk_audit_event",
            event_type=event.event_type.value,
            transaction_id=event.transaction_id,
            user_id=event.user_id,
            device_key=event.device_key,
            actor_id=event.actor_id,
            risk_score=event.risk_score,
            risk_level=event.risk_level.value if event.risk_level else None,
            triggered_rules=event.triggered_rules,
        )


class KafkaAuditSink(AuditSink):
    """Publishes events as JSON to a topic for downstream audit persistence.

    Args:
        producer: A started aiokafka ``AIOKafkaProducer`` with JSON value and
            string key serializers (see ``src.shared.kafka_utils.create_producer``).
        topic: Destination topic.
    """

    def __init__(self, producer, topic: str = "risk.audit.events") -> None:
        self._producer = producer
        self._topic = topic

    async def emit(self, event: AuditEvent) -> None:
        await self._producer.send_and_wait(
            self._topic,
            value=event.model_dump(mode="json"),
            key=event.transaction_id,
        )
        logger.debug(
            "audit_event_published",
            topic=self._topic,
            event_type=event.event_type.value,
            transaction_id=event.transaction_id,
        )


async def emit_safely(sink: AuditSink | None, event: AuditEvent) -> None:
    """Deliver an event; a failing sink is logged and never propagates."""
    if sink is None:
        return
    try:
        await sink.emit(event)
    except Exception:
        logger.exception(
            "audit_sink_failed",
            event_type=event.event_type.value,
            transaction_id=event.transaction_id,
        )
