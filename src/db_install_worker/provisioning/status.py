"""Status publication: one message per request on the status topic."""

from __future__ import annotations

from typing import Any

import structlog
from confluent_kafka import KafkaError, KafkaException, Message, Producer

from db_install_worker.provisioning.errors import PublishError
from db_install_worker.provisioning.models import ProvisioningStatus

logger = structlog.get_logger()


class StatusPublisher:
    """Serializes :class:`ProvisioningStatus` and hands it to the producer.

    Publishing never raises: the run is already complete when its status is
    sent, so failures are logged and dropped.
    """

    def __init__(self, producer: Producer, topic: str) -> None:
        self._producer = producer
        self._topic = topic

    @property
    def topic(self) -> str:
        return self._topic

    def publish(self, status: ProvisioningStatus) -> bool:
        """Queue *status* for delivery. Returns False if it was not accepted."""
        try:
            self._send(status)
        except PublishError as exc:
            logger.error(
                "status.publish_failed",
                request_id=status.id,
                topic=self._topic,
                error=str(exc),
            )
            return False
        logger.info(
            "status.published",
            request_id=status.id,
            name=status.name,
            status=status.status.value,
            exit_code=status.ansible_exit_code,
        )
        return True

    def _send(self, status: ProvisioningStatus) -> None:
        try:
            self._producer.produce(
                topic=self._topic,
                key=str(status.id).encode(),
                value=status.to_json(),
                on_delivery=self._on_delivery,
            )
            # Serve delivery callbacks without blocking the event loop
            self._producer.poll(0)
        except (BufferError, KafkaException) as exc:
            msg = f"publish status for id={status.id}: {exc}"
            raise PublishError(msg) from exc

    def flush(self, timeout: float = 30.0) -> int:
        """Block until queued statuses are delivered; returns the remainder."""
        remaining = self._producer.flush(timeout)
        if remaining:
            logger.error("status.flush_incomplete", undelivered=remaining)
        return remaining

    @staticmethod
    def _on_delivery(err: KafkaError | None, msg: Message | Any) -> None:
        if err is None:
            return
        logger.error(
            "status.delivery_failed",
            topic=msg.topic(),
            key=msg.key(),
            error=str(err),
        )
