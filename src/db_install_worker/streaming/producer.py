"""Kafka producer used for status messages and request submission."""

from __future__ import annotations

from confluent_kafka import Producer

from db_install_worker.config.models import KafkaConfig
from db_install_worker.streaming.auth import base_client_config


def create_producer(
    config: KafkaConfig, *, client_id: str = "db-install-worker"
) -> Producer:
    """Create an idempotent Kafka producer."""
    return Producer(
        {
            **base_client_config(config),
            "client.id": client_id,
            "enable.idempotence": config.enable_idempotence,
            "acks": config.acks,
        }
    )


def produce_message(
    producer: Producer,
    topic: str,
    value: bytes,
    *,
    key: bytes | None = None,
    timeout: float = 10.0,
) -> int:
    """Produce a single message and block until it is delivered.

    Returns the number of messages still undelivered after *timeout*.
    """
    producer.produce(topic=topic, value=value, key=key)
    return producer.flush(timeout=timeout)
