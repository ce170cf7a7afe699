"""Decoding and validation of inbound install requests."""

from __future__ import annotations

import ipaddress
import re

from pydantic import ValidationError

from db_install_worker.provisioning.errors import (
    MalformedMessageError,
    RequestValidationError,
)
from db_install_worker.provisioning.models import ProvisioningRequest
from db_install_worker.provisioning.playbooks import DBType

# C0 controls and DEL
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


def decode_request(raw: bytes | None) -> ProvisioningRequest:
    """Decode a message body as a :class:`ProvisioningRequest`.

    Decoding is strict about JSON types (``"id": "1"`` is rejected) but
    ignores unknown fields.
    """
    if raw is None:
        msg = "invalid JSON: empty message"
        raise MalformedMessageError(msg)
    try:
        return ProvisioningRequest.model_validate_json(raw, strict=True)
    except ValidationError as exc:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in e['loc']) or 'body'}: {e['msg']}"
            for e in exc.errors(include_url=False)
        )
        msg = f"invalid JSON: {errors}"
        raise MalformedMessageError(msg) from exc


def validate_request(request: ProvisioningRequest) -> None:
    """Check a decoded request, raising on the first violation."""
    if request.id == 0:
        raise RequestValidationError("missing id")
    if not request.name.strip():
        raise RequestValidationError("missing name")
    try:
        ipaddress.ip_address(request.ip_address)
    except ValueError as exc:
        msg = f'invalid ip_address "{request.ip_address}": {exc}'
        raise RequestValidationError(msg) from exc
    if not request.vm_user or not request.vm_password.get_secret_value():
        raise RequestValidationError("missing vm_user or vm_password")
    if (
        not request.db_name
        or not request.db_user
        or not request.db_password.get_secret_value()
    ):
        raise RequestValidationError("missing db creds or db_name")
    for field, value in _inventory_fields(request):
        if _CONTROL_CHARS.search(value):
            msg = f"invalid {field}: contains control characters"
            raise RequestValidationError(msg)
    DBType.parse(request.db_type)


def _inventory_fields(request: ProvisioningRequest) -> list[tuple[str, str]]:
    return [
        ("vm_user", request.vm_user),
        ("vm_password", request.vm_password.get_secret_value()),
        ("db_name", request.db_name),
        ("db_user", request.db_user),
        ("db_password", request.db_password.get_secret_value()),
    ]


def parse_request(raw: bytes | None) -> ProvisioningRequest:
    """Decode and validate in one step."""
    request = decode_request(raw)
    validate_request(request)
    return request
