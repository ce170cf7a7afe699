"""Ephemeral, credential-bearing Ansible inventory files."""

from __future__ import annotations

import os
import re
import shlex
import uuid
from collections.abc import Iterator
from contextlib import contextmanager, suppress
from pathlib import Path

import structlog

from db_install_worker.provisioning.errors import InventoryWriteError
from db_install_worker.provisioning.models import ProvisioningRequest

logger = structlog.get_logger()

NAME_PREFIX = "db_"
_DISALLOWED = re.compile(r"[^a-z0-9_]+")
_NEEDS_QUOTING = re.compile(r"[\s'\"\\]")


def sanitize_name(name: str) -> str:
    """Turn a display name into a filename fragment.

    ``"DB PostgreSQL HiTeman Prod"`` becomes ``"db_postgresql_hiteman_prod"``.
    """
    s = name.strip().lower().replace(" ", "_").replace("-", "_")
    s = _DISALLOWED.sub("", s)
    if not s.startswith(NAME_PREFIX):
        s = NAME_PREFIX + s
    return s


def inventory_filename(request: ProvisioningRequest, token: str) -> str:
    """``vm_<id>_<sanitized name>_<token>.ini``."""
    return f"vm_{request.id}_{sanitize_name(request.name)}_{token}.ini"


def _value(value: str) -> str:
    return shlex.quote(value) if _NEEDS_QUOTING.search(value) else value


def render_inventory_line(request: ProvisioningRequest) -> str:
    """One host line; values with blanks or quotes are shell-quoted."""
    variables = {
        "ansible_user": request.vm_user,
        "ansible_password": request.vm_password.get_secret_value(),
        "db_name": request.db_name,
        "db_user": request.db_user,
        "db_password": request.db_password.get_secret_value(),
    }
    pairs = " ".join(f"{k}={_value(v)}" for k, v in variables.items())
    return f"{request.ip_address} {pairs}\n"


def write_inventory(request: ProvisioningRequest, directory: str | Path) -> Path:
    """Write a single-host inventory readable only by this process's user.

    The file is created exclusively; a per-call token keeps redeliveries of
    the same request from sharing a path.
    """
    base = Path(directory)
    try:
        base.mkdir(mode=0o700, parents=True, exist_ok=True)
    except OSError as exc:
        msg = f"create inventory dir {base}: {exc}"
        raise InventoryWriteError(msg) from exc

    path = base / inventory_filename(request, uuid.uuid4().hex[:8])
    data = render_inventory_line(request).encode()
    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    except OSError as exc:
        msg = f"write inventory file {path}: {exc}"
        raise InventoryWriteError(msg) from exc
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
    except OSError as exc:
        with suppress(OSError):
            path.unlink()
        msg = f"write inventory file {path}: {exc}"
        raise InventoryWriteError(msg) from exc

    logger.info("inventory.written", request_id=request.id, path=str(path))
    return path


def remove_inventory(path: Path) -> None:
    """Delete an inventory file, logging rather than raising on failure."""
    try:
        path.unlink()
    except FileNotFoundError:
        logger.warning("inventory.already_removed", path=str(path))
    except OSError as exc:
        logger.error("inventory.remove_failed", path=str(path), error=str(exc))
    else:
        logger.info("inventory.removed", path=str(path))


@contextmanager
def inventory_artifact(
    request: ProvisioningRequest, directory: str | Path
) -> Iterator[Path]:
    """Write the inventory, yield its path, and always remove it afterwards."""
    path = write_inventory(request, directory)
    try:
        yield path
    finally:
        remove_inventory(path)
