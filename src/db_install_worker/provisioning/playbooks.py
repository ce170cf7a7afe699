"""Playbook selection: maps each DBType to its playbook file."""

from __future__ import annotations

from enum import StrEnum
from pathlib import Path

from db_install_worker.provisioning.errors import UnsupportedDBTypeError


class DBType(StrEnum):
    """Database types the worker can install."""

    POSTGRESQL = "postgresql"

    @classmethod
    def parse(cls, value: str) -> DBType:
        """Resolve a request's db_type (trimmed, case-insensitive, aliases)."""
        db_type = _ALIASES.get(value.strip().lower())
        if db_type is None:
            supported = ", ".join(m.value for m in cls)
            msg = f'unsupported db_type "{value}" (supported: {supported})'
            raise UnsupportedDBTypeError(msg)
        return db_type


_ALIASES: dict[str, DBType] = {
    "postgresql": DBType.POSTGRESQL,
    "postgres": DBType.POSTGRESQL,
    "pg": DBType.POSTGRESQL,
}

# Adding a database = one DBType member + one entry here.
PLAYBOOKS: dict[DBType, str] = {
    DBType.POSTGRESQL: "postgresql.yml",
}


def check_playbook_table() -> None:
    """Fail fast when a DBType has no playbook entry."""
    missing = [m.value for m in DBType if m not in PLAYBOOKS]
    if missing:
        msg = f"No playbook registered for db_type(s): {', '.join(missing)}"
        raise RuntimeError(msg)


def select_playbook(db_type: str, playbook_dir: str | Path) -> Path:
    """Return the playbook path for *db_type*.

    Re-checks the type so the table stays authoritative even if validation
    grows new types first.
    """
    parsed = DBType.parse(db_type)
    filename = PLAYBOOKS.get(parsed)
    if filename is None:
        msg = f'unsupported db_type "{db_type}" (no playbook registered)'
        raise UnsupportedDBTypeError(msg)
    return Path(playbook_dir) / filename


def missing_playbooks(playbook_dir: str | Path) -> list[Path]:
    """Return registered playbook paths that do not exist on disk."""
    base = Path(playbook_dir)
    return [base / name for name in PLAYBOOKS.values() if not (base / name).is_file()]
