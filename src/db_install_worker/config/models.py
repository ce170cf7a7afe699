"""Pydantic configuration models for the install worker."""

from __future__ import annotations

from enum import StrEnum
from typing import Annotated, Self

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator


class KafkaAuthMechanism(StrEnum):
    """SASL mechanism used to authenticate against the brokers."""

    NONE = "none"
    SASL_PLAIN = "sasl_plain"
    SASL_SCRAM_256 = "sasl_scram_256"
    SASL_SCRAM_512 = "sasl_scram_512"


class KafkaConfig(BaseModel):
    """Broker connection plus the consumer-group and producer knobs."""

    bootstrap_servers: str = "localhost:9092"
    # Consumer group shared by every worker instance
    group_id: str = "db-install-workers"
    auto_offset_reset: str = "earliest"
    enable_idempotence: bool = True
    acks: str = "all"
    session_timeout_ms: int = Field(default=45000, ge=1000)
    max_poll_interval_ms: int = Field(default=300000, ge=1000)
    poll_timeout_seconds: float = Field(default=1.0, gt=0)
    # Auth / security
    security_protocol: str = "PLAINTEXT"
    auth_mechanism: KafkaAuthMechanism = KafkaAuthMechanism.NONE
    sasl_username: str | None = None
    sasl_password: SecretStr | None = None
    ssl_ca_location: str | None = None
    ssl_certificate_location: str | None = None
    ssl_key_location: str | None = None

    @model_validator(mode="after")
    def require_sasl_credentials(self) -> Self:
        if self.auth_mechanism is KafkaAuthMechanism.NONE:
            return self
        if not (self.sasl_username and self.sasl_password):
            msg = (
                f"auth_mechanism '{self.auth_mechanism.value}' needs both "
                "sasl_username and sasl_password"
            )
            raise ValueError(msg)
        return self


TopicName = Annotated[str, Field(pattern=r"^[a-zA-Z0-9._-]+$")]


class TopicsConfig(BaseModel):
    """Request and status topics."""

    request: TopicName = "install"
    status: TopicName = "install.status"

    @model_validator(mode="after")
    def check_distinct(self) -> Self:
        if self.request == self.status:
            msg = "request and status topics must differ"
            raise ValueError(msg)
        return self


class AnsibleConfig(BaseModel):
    """External tool invocation settings."""

    command: list[str] = Field(default_factory=lambda: ["ansible-playbook"])
    inventory_dir: str = "inventories"
    playbook_dir: str = "playbooks"
    timeout_seconds: float = Field(default=1800.0, gt=0)
    max_output_bytes: int = Field(default=10000, ge=1)
    kill_grace_seconds: float = Field(default=10.0, ge=0)
    # Chunk size used when reading the tool's combined output
    read_chunk_bytes: int = Field(default=4096, ge=1)

    @field_validator("command")
    @classmethod
    def validate_command(cls, v: list[str]) -> list[str]:
        if not v or not v[0].strip():
            msg = "ansible.command must name an executable"
            raise ValueError(msg)
        return v


class WorkerConfig(BaseModel, extra="forbid"):
    """Top-level worker configuration."""

    kafka: KafkaConfig = KafkaConfig()
    topics: TopicsConfig = TopicsConfig()
    ansible: AnsibleConfig = AnsibleConfig()
    startup_retry_attempts: int = Field(default=5, ge=1)
    startup_retry_wait_seconds: float = Field(default=2.0, gt=0)
    shutdown_timeout_seconds: float = Field(default=60.0, gt=0)
    health_enabled: bool = True
    health_port: int = Field(default=8080, ge=0, le=65535)
    log_level: str = "info"
    log_json: bool = True
