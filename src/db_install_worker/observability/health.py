"""Health probes for the worker's dependencies."""

from __future__ import annotations

import shutil
from dataclasses import dataclass, field
from enum import StrEnum

import structlog
from confluent_kafka import KafkaException
from confluent_kafka.admin import AdminClient
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from db_install_worker.config.models import KafkaConfig, WorkerConfig
from db_install_worker.provisioning.playbooks import PLAYBOOKS, missing_playbooks
from db_install_worker.streaming.auth import base_client_config

logger = structlog.get_logger()


class Status(StrEnum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class ComponentHealth:
    name: str
    status: Status = Status.UNKNOWN
    detail: str = ""


@dataclass
class WorkerHealth:
    components: list[ComponentHealth] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return all(c.status == Status.HEALTHY for c in self.components)

    @property
    def summary(self) -> dict[str, str]:
        return {c.name: c.status.value for c in self.components}


def probe_brokers(kafka_config: KafkaConfig, timeout: float = 5.0) -> int:
    """Return the number of reachable brokers; raises KafkaException on failure."""
    admin = AdminClient(base_client_config(kafka_config))
    meta = admin.list_topics(timeout=timeout)
    return len(meta.brokers)


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "kafka.connect_retry",
        attempt=retry_state.attempt_number,
        error=str(exc),
    )


def wait_for_broker(
    kafka_config: KafkaConfig, *, attempts: int, wait_seconds: float
) -> int:
    """Probe the brokers with exponential backoff, re-raising the last error."""
    retryer = Retrying(
        retry=retry_if_exception_type(KafkaException),
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=wait_seconds, max=30),
        before_sleep=_log_retry,
        reraise=True,
    )
    return retryer(probe_brokers, kafka_config)


def check_kafka(kafka_config: KafkaConfig) -> ComponentHealth:
    """Probe Kafka broker connectivity."""
    try:
        brokers = probe_brokers(kafka_config)
        return ComponentHealth(
            name="kafka",
            status=Status.HEALTHY,
            detail=f"{brokers} broker(s) at {kafka_config.bootstrap_servers}",
        )
    except Exception as exc:
        return ComponentHealth(name="kafka", status=Status.UNHEALTHY, detail=str(exc))


def check_tool(command: list[str]) -> ComponentHealth:
    """Check that the configured tool executable is on PATH."""
    found = shutil.which(command[0])
    if found is None:
        return ComponentHealth(
            name="ansible",
            status=Status.UNHEALTHY,
            detail=f"{command[0]} not found on PATH",
        )
    return ComponentHealth(name="ansible", status=Status.HEALTHY, detail=found)


def check_playbooks(playbook_dir: str) -> ComponentHealth:
    """Check that every registered playbook file exists."""
    missing = missing_playbooks(playbook_dir)
    if missing:
        return ComponentHealth(
            name="playbooks",
            status=Status.UNHEALTHY,
            detail="missing: " + ", ".join(str(p) for p in missing),
        )
    return ComponentHealth(
        name="playbooks",
        status=Status.HEALTHY,
        detail=f"{len(PLAYBOOKS)} playbook(s) in {playbook_dir}",
    )


def check_worker_health(config: WorkerConfig | None = None) -> WorkerHealth:
    """Run all health checks and return aggregated result."""
    cfg = config or WorkerConfig()
    return WorkerHealth(
        components=[
            check_kafka(cfg.kafka),
            check_tool(cfg.ansible.command),
            check_playbooks(cfg.ansible.playbook_dir),
        ]
    )
