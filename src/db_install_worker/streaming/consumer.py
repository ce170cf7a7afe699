"""Kafka consumer that runs one task per request message."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog
from confluent_kafka import (
    Consumer,
    KafkaError,
    KafkaException,
    Message,
    TopicPartition,
)

from db_install_worker.config.models import KafkaConfig
from db_install_worker.streaming.auth import base_client_config
from db_install_worker.streaming.offsets import OffsetTracker, TopicPartitionKey

logger = structlog.get_logger()

MessageHandler = Callable[[bytes | None], Awaitable[Any]]


class RequestConsumer:
    """Group consumer with manual, watermark-based offset commits.

    Polling happens in a worker thread; every message is handed to *handler*
    in its own asyncio task, so a long-running request never holds up the
    next poll. Offsets are committed only once a message's handler has
    finished, which gives at-least-once delivery.
    """

    def __init__(
        self,
        topics: list[str],
        kafka_config: KafkaConfig,
        handler: MessageHandler,
        *,
        shutdown: asyncio.Event,
    ) -> None:
        self._topics = topics
        self._handler = handler
        self._shutdown = shutdown
        self._poll_timeout = kafka_config.poll_timeout_seconds
        self._loop: asyncio.AbstractEventLoop | None = None
        self._running = False
        self._tracker = OffsetTracker()
        self._tasks: set[asyncio.Task[None]] = set()

        self._consumer = Consumer(
            {
                **base_client_config(kafka_config),
                "group.id": kafka_config.group_id,
                "auto.offset.reset": kafka_config.auto_offset_reset,
                "enable.auto.commit": False,
                "session.timeout.ms": kafka_config.session_timeout_ms,
                "max.poll.interval.ms": kafka_config.max_poll_interval_ms,
                "on_commit": self._on_commit,
            }
        )

    @property
    def running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def consume(self) -> None:
        """Poll until the shutdown event is set."""
        self._loop = asyncio.get_running_loop()
        self._consumer.subscribe(
            self._topics,
            on_assign=self._handle_assign,
            on_revoke=self._handle_revoke,
        )
        self._running = True
        logger.info("consumer.started", topics=self._topics)
        try:
            while not self._shutdown.is_set():
                msg = await self._loop.run_in_executor(
                    None, self._consumer.poll, self._poll_timeout
                )
                if msg is None:
                    continue

                err = msg.error()
                if err and err.code() == KafkaError._PARTITION_EOF:  # type: ignore[attr-defined]
                    continue
                if err and err.fatal():
                    raise KafkaException(err)
                if err:
                    logger.error("consumer.error", code=err.code(), error=err.str())
                    continue

                self._dispatch(msg)
        finally:
            self._running = False
            logger.info("consumer.stopped_polling", in_flight=len(self._tasks))

    def _dispatch(self, msg: Message) -> None:
        topic = msg.topic()
        partition = msg.partition()
        offset = msg.offset()
        assert topic is not None
        assert partition is not None
        assert offset is not None
        tp = (topic, partition)
        logger.debug(
            "consumer.message_received",
            topic=topic,
            partition=partition,
            offset=offset,
        )
        self._tracker.begin(tp, offset)
        task = asyncio.create_task(
            self._run(msg.value(), tp, offset),
            name=f"request-{topic}-{partition}-{offset}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(
        self, value: bytes | None, tp: TopicPartitionKey, offset: int
    ) -> None:
        try:
            await self._handler(value)
        except Exception as exc:
            logger.error(
                "consumer.handler_error",
                topic=tp[0],
                partition=tp[1],
                offset=offset,
                error=str(exc),
            )
        finally:
            self._tracker.complete(tp, offset)
            self._commit(asynchronous=True)

    def _commit(self, *, asynchronous: bool) -> None:
        offsets = self._tracker.committable()
        if not offsets:
            return
        topic_partitions = [
            TopicPartition(topic, partition, offset + 1)  # committed = next-to-fetch
            for (topic, partition), offset in offsets.items()
        ]
        try:
            self._consumer.commit(offsets=topic_partitions, asynchronous=asynchronous)
        except KafkaException as exc:
            logger.warning("consumer.commit_failed", error=str(exc))
            return
        self._tracker.mark_committed(offsets)

    def _on_commit(self, err: KafkaError | None, partitions: list[Any]) -> None:
        """Result of an asynchronous commit, served from inside ``poll``."""
        if err is None:
            return
        tps = [(tp.topic, tp.partition) for tp in partitions]
        logger.warning("consumer.commit_failed", error=str(err), partitions=tps)
        # Let the next commit retry these partitions
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._tracker.forget_committed, tps)
        else:
            self._tracker.forget_committed(tps)

    def _handle_assign(self, consumer: Any, partitions: list[Any]) -> None:
        tps = [(tp.topic, tp.partition) for tp in partitions]
        logger.info("consumer.partitions_assigned", partitions=tps)

    def _handle_revoke(self, consumer: Any, partitions: list[Any]) -> None:
        tps = [(tp.topic, tp.partition) for tp in partitions]
        logger.info("consumer.partitions_revoked", partitions=tps)
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._tracker.revoke, tps)

    async def drain(self, timeout: float) -> None:
        """Wait for in-flight handlers; cancel whatever outlives *timeout*."""
        if not self._tasks:
            return
        logger.info("consumer.draining", in_flight=len(self._tasks))
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        if pending:
            logger.warning("consumer.drain_timeout", cancelled=len(pending))
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    def close(self) -> None:
        """Commit the final watermark and leave the group."""
        self._commit(asynchronous=False)
        self._consumer.close()
        logger.info("consumer.stopped")
