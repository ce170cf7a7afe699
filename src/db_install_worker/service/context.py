"""Process-wide collaborators shared by every pipeline run."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

from confluent_kafka import Producer

from db_install_worker.config.models import WorkerConfig
from db_install_worker.provisioning.runner import PlaybookRunner
from db_install_worker.provisioning.status import StatusPublisher


@dataclass
class ServiceContext:
    """Built once at startup and passed explicitly into each run."""

    config: WorkerConfig
    publisher: StatusPublisher
    runner: PlaybookRunner
    shutdown: asyncio.Event = field(default_factory=asyncio.Event)

    @classmethod
    def create(cls, config: WorkerConfig, producer: Producer) -> ServiceContext:
        return cls(
            config=config,
            publisher=StatusPublisher(producer, config.topics.status),
            runner=PlaybookRunner(config.ansible),
        )
