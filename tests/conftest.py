"""Shared fixtures: stub ansible executables and small worker configs."""

from __future__ import annotations

import json
import stat
from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest

from db_install_worker.config.models import AnsibleConfig, WorkerConfig
from db_install_worker.provisioning.runner import PlaybookRunner
from db_install_worker.service.context import ServiceContext

VALID_REQUEST: dict[str, Any] = {
    "id": 1,
    "name": "DB PostgreSQL HiTeman Prod",
    "ip_address": "192.168.1.10",
    "vm_user": "admin",
    "vm_password": "pw",
    "db_type": "postgresql",
    "db_user": "app",
    "db_password": "dbpw",
    "db_name": "appdb",
}


@pytest.fixture
def make_request() -> Callable[..., bytes]:
    """Encode VALID_REQUEST with keyword overrides applied."""

    def _encode(**overrides: Any) -> bytes:
        return json.dumps({**VALID_REQUEST, **overrides}).encode()

    return _encode


@pytest.fixture
def make_tool(tmp_path: Path) -> Callable[[str], Path]:
    """Write an executable ``/bin/sh`` script standing in for ansible-playbook."""
    counter = iter(range(1000))

    def _make(body: str) -> Path:
        path = tmp_path / f"tool-{next(counter)}.sh"
        path.write_text(f"#!/bin/sh\n{body}\n")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return path

    return _make


@pytest.fixture
def playbook_dir(tmp_path: Path) -> Path:
    d = tmp_path / "playbooks"
    d.mkdir()
    (d / "postgresql.yml").write_text("- hosts: all\n  tasks: []\n")
    return d


@pytest.fixture
def inventory_dir(tmp_path: Path) -> Path:
    return tmp_path / "inventories"


@pytest.fixture
def ansible_factory(
    make_tool: Callable[[str], Path], playbook_dir: Path, inventory_dir: Path
) -> Callable[..., AnsibleConfig]:
    """Build an AnsibleConfig around a stub tool with the given script body."""

    def _build(body: str = "printf 'OK'", **overrides: Any) -> AnsibleConfig:
        values: dict[str, Any] = {
            "command": [str(make_tool(body))],
            "inventory_dir": str(inventory_dir),
            "playbook_dir": str(playbook_dir),
            "timeout_seconds": 10.0,
            "kill_grace_seconds": 1.0,
        }
        values.update(overrides)
        return AnsibleConfig(**values)

    return _build


@pytest.fixture
def context_factory(
    ansible_factory: Callable[..., AnsibleConfig],
) -> Callable[..., ServiceContext]:
    """Build a ServiceContext whose publisher is a MagicMock."""

    def _build(body: str = "printf 'OK'", **overrides: Any) -> ServiceContext:
        ansible = ansible_factory(body, **overrides)
        config = WorkerConfig(ansible=ansible, health_enabled=False)
        return ServiceContext(
            config=config,
            publisher=MagicMock(),
            runner=PlaybookRunner(ansible),
        )

    return _build
