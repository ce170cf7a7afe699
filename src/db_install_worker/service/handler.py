"""The per-request pipeline.

decode → validate → write inventory → select playbook → run → publish,
with the inventory removed on every exit path once the status is out.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import structlog

from db_install_worker.provisioning.errors import (
    InventoryWriteError,
    MalformedMessageError,
    ProcessTimeoutError,
    ProvisioningError,
    RequestValidationError,
)
from db_install_worker.provisioning.inventory import inventory_artifact
from db_install_worker.provisioning.models import (
    ProvisioningRequest,
    ProvisioningStatus,
)
from db_install_worker.provisioning.playbooks import select_playbook
from db_install_worker.provisioning.validator import decode_request, validate_request
from db_install_worker.service.context import ServiceContext

logger = structlog.get_logger()


async def handle_request(ctx: ServiceContext, raw: bytes | None) -> ProvisioningStatus:
    """Run one request through the pipeline and publish exactly one status."""
    try:
        request = decode_request(raw)
    except MalformedMessageError as exc:
        logger.warning("request.malformed", error=str(exc))
        return _publish(ctx, ProvisioningStatus.failure(0, "", exc))

    log = logger.bind(request_id=request.id, name=request.name)
    log.info("request.received", db_type=request.db_type, ip=request.ip_address)

    try:
        validate_request(request)
    except RequestValidationError as exc:
        log.warning("request.invalid", error=str(exc))
        return _publish(ctx, ProvisioningStatus.failure(request.id, request.name, exc))

    try:
        with inventory_artifact(request, ctx.config.ansible.inventory_dir) as inventory:
            status = await _execute(ctx, request, inventory, log)
            # Published while the artifact still exists, removed on exit
            return _publish(ctx, status)
    except InventoryWriteError as exc:
        log.error("request.inventory_failed", error=str(exc))
        return _publish(ctx, ProvisioningStatus.failure(request.id, request.name, exc))


async def _execute(
    ctx: ServiceContext,
    request: ProvisioningRequest,
    inventory: Path,
    log: Any,
) -> ProvisioningStatus:
    try:
        playbook = select_playbook(request.db_type, ctx.config.ansible.playbook_dir)
        result = await ctx.runner.run(
            inventory, playbook, shutdown=ctx.shutdown, request_id=request.id
        )
    except ProvisioningError as exc:
        log.error(
            "request.failed",
            error=str(exc),
            error_type=type(exc).__name__,
            exit_code=exc.exit_code,
        )
        return ProvisioningStatus.failure(
            request.id, request.name, exc, inventory=inventory
        )
    except asyncio.CancelledError:
        cancelled = ProcessTimeoutError("ansible-playbook cancelled: run aborted")
        log.warning("request.cancelled")
        _publish(
            ctx,
            ProvisioningStatus.failure(
                request.id, request.name, cancelled, inventory=inventory
            ),
        )
        raise
    except Exception as exc:
        log.exception("request.unexpected_error")
        internal = ProvisioningError(f"internal error: {exc}")
        return ProvisioningStatus.failure(
            request.id, request.name, internal, inventory=inventory
        )

    log.info("request.succeeded")
    return ProvisioningStatus.success(request, inventory, result)


def _publish(ctx: ServiceContext, status: ProvisioningStatus) -> ProvisioningStatus:
    ctx.publisher.publish(status)
    return status
