"""Worker lifecycle from the broker check to graceful shutdown."""

from __future__ import annotations

import asyncio
import signal
from typing import Any

import structlog
from confluent_kafka import KafkaException

from db_install_worker.config.models import WorkerConfig
from db_install_worker.observability.health import wait_for_broker
from db_install_worker.observability.http_health import HealthServer
from db_install_worker.provisioning.playbooks import (
    check_playbook_table,
    missing_playbooks,
)
from db_install_worker.service.context import ServiceContext
from db_install_worker.service.handler import handle_request
from db_install_worker.streaming.consumer import RequestConsumer
from db_install_worker.streaming.producer import create_producer

logger = structlog.get_logger()

_FLUSH_TIMEOUT_SECONDS = 30.0


class BrokerUnavailableError(RuntimeError):
    """The initial Kafka connection could not be established."""


class Worker:
    """Consumes install requests until SIGINT/SIGTERM.

    The shutdown event in the :class:`ServiceContext` is the only
    cancellation source: setting it stops polling and terminates every
    running playbook, after which in-flight runs publish their status and
    the producer is flushed.
    """

    def __init__(self, config: WorkerConfig) -> None:
        self._config = config
        self._ctx: ServiceContext | None = None
        self._consumer: RequestConsumer | None = None
        self._health_server: HealthServer | None = None

    def start(self) -> None:
        """Run the worker (blocking)."""
        asyncio.run(self._start_async())

    async def _start_async(self) -> None:
        cfg = self._config
        check_playbook_table()
        for path in missing_playbooks(cfg.ansible.playbook_dir):
            logger.warning("worker.playbook_missing", path=str(path))

        loop = asyncio.get_running_loop()
        try:
            brokers = await loop.run_in_executor(
                None,
                lambda: wait_for_broker(
                    cfg.kafka,
                    attempts=cfg.startup_retry_attempts,
                    wait_seconds=cfg.startup_retry_wait_seconds,
                ),
            )
        except KafkaException as exc:
            msg = f"cannot reach Kafka at {cfg.kafka.bootstrap_servers}: {exc}"
            raise BrokerUnavailableError(msg) from exc
        logger.info(
            "worker.connected",
            bootstrap_servers=cfg.kafka.bootstrap_servers,
            brokers=brokers,
        )

        self._ctx = ServiceContext.create(cfg, create_producer(cfg.kafka))
        self._consumer = RequestConsumer(
            topics=[cfg.topics.request],
            kafka_config=cfg.kafka,
            handler=self._handle,
            shutdown=self._ctx.shutdown,
        )
        self._install_signal_handlers(loop)

        if cfg.health_enabled:
            self._health_server = HealthServer(
                port=cfg.health_port, readiness_check=self.health
            )
            await self._health_server.start()

        logger.info(
            "worker.ready",
            request_topic=cfg.topics.request,
            status_topic=cfg.topics.status,
            group_id=cfg.kafka.group_id,
        )
        try:
            await self._consumer.consume()
        finally:
            await self._shutdown()

    async def _handle(self, raw: bytes | None) -> None:
        assert self._ctx is not None
        await handle_request(self._ctx, raw)

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._on_signal, sig)

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.info("worker.shutdown_signal", signal=sig.name)
        self.stop()

    def stop(self) -> None:
        """Raise the shutdown signal."""
        if self._ctx is not None:
            self._ctx.shutdown.set()

    async def _shutdown(self) -> None:
        """Cancel runs, wait for their statuses, flush, leave the group."""
        assert self._ctx is not None
        assert self._consumer is not None
        self._ctx.shutdown.set()

        await self._consumer.drain(self._config.shutdown_timeout_seconds)
        try:
            self._consumer.close()
        except KafkaException as exc:
            logger.error("worker.consumer_close_failed", error=str(exc))

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None, self._ctx.publisher.flush, _FLUSH_TIMEOUT_SECONDS
        )

        if self._health_server is not None:
            await self._health_server.stop()
        logger.info("worker.stopped")

    async def health(self) -> dict[str, Any]:
        """Readiness: consuming and not shutting down."""
        consumer = self._consumer
        shutting_down = self._ctx is not None and self._ctx.shutdown.is_set()
        running = consumer is not None and consumer.running and not shutting_down
        return {
            "consumer": {"status": "running" if running else "error"},
            "in_flight_runs": consumer.in_flight if consumer is not None else 0,
            "request_topic": self._config.topics.request,
        }
