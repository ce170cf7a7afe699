"""Worker configuration loading.

Built-in defaults (``config/defaults/worker.yaml``) are deep-merged with an
optional override file, then every ``${VAR}`` / ``${VAR:-fallback}`` reference
is resolved from the environment before pydantic validation.
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from db_install_worker.config.models import WorkerConfig

DEFAULTS_FILE = Path(__file__).parent / "defaults" / "worker.yaml"

# ${NAME} or ${NAME:-fallback}; "\}" escapes a closing brace in the fallback
_ENV_REF = re.compile(r"\$\{(?P<name>[^}:]+)(?::-(?P<fallback>(?:\\.|[^}\\])*))?\}")


def _substitute(text: str) -> str:
    def lookup(ref: re.Match[str]) -> str:
        name = ref.group("name")
        if name in os.environ:
            return os.environ[name]
        fallback = ref.group("fallback")
        if fallback is None:
            msg = f"Environment variable '{name}' is referenced but not set"
            raise ValueError(msg)
        return fallback.replace("\\}", "}")

    return _ENV_REF.sub(lookup, text)


def resolve_env_vars(data: Any) -> Any:
    """Substitute environment references in every string of a parsed document."""
    if isinstance(data, dict):
        return {key: resolve_env_vars(value) for key, value in data.items()}
    if isinstance(data, list):
        return [resolve_env_vars(item) for item in data]
    return _substitute(data) if isinstance(data, str) else data


def merge_configs(
    base: Mapping[str, Any], overrides: Mapping[str, Any]
) -> dict[str, Any]:
    """Overlay *overrides* on *base*. Nested mappings merge; anything else,
    lists included, is replaced. Neither input is modified."""
    merged = dict(base)
    for key, value in overrides.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            value = merge_configs(current, value)
        merged[key] = value
    return merged


def load_yaml(path: str | Path) -> dict[str, Any]:
    """Parse a YAML mapping; an empty document counts as an empty mapping."""
    source = Path(path)
    if not source.is_file():
        msg = f"Config file not found: {source}"
        raise FileNotFoundError(msg)
    try:
        data = yaml.safe_load(source.read_text())
    except yaml.YAMLError as exc:
        mark = getattr(exc, "problem_mark", None)
        where = f" (line {mark.line + 1}, column {mark.column + 1})" if mark else ""
        msg = f"Failed to parse YAML in {source}{where}: {exc}"
        raise ValueError(msg) from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        kind = type(data).__name__
        msg = f"{source}: top level must be a YAML mapping, not {kind}"
        raise TypeError(msg)
    return data


def load_defaults() -> dict[str, Any]:
    """The packaged worker defaults, with environment references unresolved."""
    return load_yaml(DEFAULTS_FILE)


def load_worker_config(path: str | Path | None = None) -> WorkerConfig:
    """Build the effective :class:`WorkerConfig`.

    References are resolved after merging, so an override file can replace a
    default that points at an unset variable.
    """
    raw = load_defaults()
    if path is not None:
        raw = merge_configs(raw, load_yaml(path))
    try:
        return WorkerConfig.model_validate(resolve_env_vars(raw))
    except ValidationError as exc:
        source = path if path is not None else DEFAULTS_FILE
        msg = f"Invalid worker config ({source}):\n{exc}"
        raise ValueError(msg) from exc
