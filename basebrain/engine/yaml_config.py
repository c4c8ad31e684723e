"""YAML configuration loader.

Example YAML:
    engine:
      model_url: http://127.0.0.1:3000/api/chat
      db_path: ~/.basebrain/basebrain.db
      max_iterations: 15
      repeat_window: 5
      repeat_threshold: 3
      tool_output_limit: 12000
      log_level: INFO

Values in the file override whatever ``EngineConfig.from_env()``
produced. Callbacks cannot be set from YAML.
"""
from __future__ import annotations

import dataclasses
import logging
from pathlib import Path
from typing import Any

import yaml

from .config import EngineConfig

logger = logging.getLogger(__name__)

# Fields that only make sense as Python objects.
_NON_YAML_FIELDS = frozenset({"event_callback", "approval_callback"})

_FIELD_TYPES: dict[str, type] = {
    "model_url": str,
    "api_key": str,
    "request_timeout_seconds": float,
    "db_path": str,
    "max_iterations": int,
    "repeat_window": int,
    "repeat_threshold": int,
    "command_poll_interval_seconds": float,
    "input_scan_lines": int,
    "tool_output_limit": int,
    "log_level": str,
}


def _coerce(key: str, value: Any) -> Any:
    target = _FIELD_TYPES.get(key, str)
    if value is None:
        return None
    if target is int and isinstance(value, bool):
        raise ValueError(f"engine.{key} must be an integer, got {value!r}")
    try:
        return target(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"engine.{key}: cannot convert {value!r} to {target.__name__}") from exc


def load_yaml_config(
    path: str | Path,
    base: EngineConfig | None = None,
) -> EngineConfig:
    """Load an ``engine:`` section from *path* on top of *base*.

    Raises FileNotFoundError if *path* is missing and ValueError if the
    YAML is malformed or its root is not a mapping.
    """
    path = Path(path)
    logger.info("load_yaml_config: loading %s", path)
    try:
        with open(path) as f:
            raw = yaml.safe_load(f)
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute(),
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise ValueError(f"Invalid YAML in {path}: {exc}") from exc

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping, got {type(raw).__name__}")

    section = raw.get("engine") or {}
    if not isinstance(section, dict):
        raise ValueError(f"{path}: 'engine' must be a mapping")

    config = base if base is not None else EngineConfig.from_env()
    known = {f.name for f in dataclasses.fields(EngineConfig)} - _NON_YAML_FIELDS
    overrides: dict[str, Any] = {}
    for key, value in section.items():
        if key not in known:
            logger.warning("load_yaml_config: ignoring unknown engine key %r", key)
            continue
        overrides[key] = _coerce(key, value)

    if overrides:
        logger.info(
            "load_yaml_config: engine overrides from %s: %s",
            path.name,
            ", ".join(sorted(k for k in overrides if k != "api_key")) or "(api_key only)",
        )
    return dataclasses.replace(config, **overrides)
