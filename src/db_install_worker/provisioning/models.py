"""Request and status message models."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel, Field, SecretStr

from db_install_worker.provisioning.errors import ProvisioningError


class Outcome(StrEnum):
    SUCCESS = "success"
    ERROR = "error"


class ProvisioningRequest(BaseModel):
    """One inbound install request.

    Missing fields decode to their zero value so that absence is reported by
    validation, in field order, rather than by the decoder.
    """

    id: int = 0
    name: str = ""
    ip_address: str = ""
    vm_user: str = ""
    vm_password: SecretStr = SecretStr("")
    db_type: str = ""
    db_user: str = ""
    db_password: SecretStr = SecretStr("")
    db_name: str = ""


@dataclass(frozen=True)
class RunResult:
    """Exit code and captured output of a successful tool run."""

    exit_code: int
    output: str


class ProvisioningStatus(BaseModel):
    """Outcome message published once per request."""

    id: int
    name: str
    status: Outcome
    inventory: str = ""
    ansible_exit_code: int = 0
    ansible_output: str = ""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    error: str | None = None

    @classmethod
    def success(
        cls, request: ProvisioningRequest, inventory: Path, result: RunResult
    ) -> ProvisioningStatus:
        return cls(
            id=request.id,
            name=request.name,
            status=Outcome.SUCCESS,
            inventory=str(inventory),
            ansible_exit_code=result.exit_code,
            ansible_output=result.output,
        )

    @classmethod
    def failure(
        cls,
        request_id: int,
        name: str,
        error: ProvisioningError,
        *,
        inventory: Path | None = None,
    ) -> ProvisioningStatus:
        return cls(
            id=request_id,
            name=name,
            status=Outcome.ERROR,
            inventory=str(inventory) if inventory is not None else "",
            ansible_exit_code=error.exit_code,
            ansible_output=error.output,
            error=str(error),
        )

    def to_json(self) -> bytes:
        """Serialize for the bus; ``error`` is omitted on success."""
        return self.model_dump_json(exclude_none=True).encode()
