"""Kafka producer helpers."""

import json

import structlog
from aiokafka import AIOKafkaProducer

logger = structlog.get_logger()


async def create_producer(bootstrap_servers: str, client_id: str | None = None) -> AIOKafkaProducer:
    """Create and start a producer that JSON-encodes dict values."""
    producer = AIOKafkaProducer(
        bootstrap_servers=bootstrap_servers,
        client_id=client_id,
        value_serializer=lambda v: json.dumps(v, default=str).encode("utf-8"),
        key_serializer=lambda k: k.encode("utf-8") if isinstance(k, str) else k,
    )
    await producer.start()
    logger.info("kafka_producer_started", bootstrap_servers=bootstrap_servers)
    return producer


async def stop_producer(producer: AIOKafkaProducer | None) -> None:
    if producer is None:
        return
    await producer.stop()
    logger.info("kafka_producer_stopped")
