"""YAML configuration loader.

Loads an optional gekto.yaml on top of GektoConfig defaults (or an
env-derived base). Unknown keys are logged and ignored.

Example YAML:
    proxy:
      port: 3200
      target: 5173
      target_host: localhost
      dev: false
      widget_port: 5174
      standalone: false

    agents:
      command: [claude]
      cwd: /path/to/project
      turn_timeout: 0
      kill_grace: 5

    planner:
      command: claude
      model: claude-sonnet-4-20250514
      classifier_model: claude-haiku-4-5-20251001
      tools_model: haiku
      turn_timeout: 300
      classifier_timeout: 10
      restart_delay: 1

    logging:
      level: INFO
      file: ~/.gekto/logs/gekto.log
"""
from __future__ import annotations

import dataclasses
import logging
import shlex
from pathlib import Path
from typing import Any

import yaml

from .config import GektoConfig

logger = logging.getLogger(__name__)

CONFIG_FILENAMES = ("gekto.yaml", "gekto.yml", ".gekto.yaml")

# section -> {yaml key: GektoConfig field}
_SECTION_FIELDS: dict[str, dict[str, str]] = {
    "proxy": {
        "port": "proxy_port",
        "target": "target_port",
        "target_host": "target_host",
        "host": "host",
        "dev": "dev_mode",
        "widget_port": "widget_port",
        "widget_dist": "widget_dist",
        "widget_src": "widget_src",
        "standalone": "standalone",
    },
    "agents": {
        "command": "agent_command",
        "cwd": "working_dir",
        "turn_timeout": "session_turn_timeout_seconds",
        "kill_grace": "session_kill_grace_seconds",
        "cols": "terminal_cols",
        "rows": "terminal_rows",
    },
    "planner": {
        "command": "planner_command",
        "model": "planner_model",
        "classifier_model": "classifier_model",
        "tools_model": "tools_model",
        "turn_timeout": "planner_turn_timeout_seconds",
        "classifier_timeout": "classifier_timeout_seconds",
        "startup_timeout": "planner_startup_timeout_seconds",
        "restart_delay": "planner_restart_delay_seconds",
    },
    "logging": {
        "level": "log_level",
        "file": "log_file",
    },
}


def find_config_file(directory: str | Path) -> Path | None:
    """Return the first gekto config file present in *directory*."""
    base = Path(directory)
    for name in CONFIG_FILENAMES:
        candidate = base / name
        if candidate.is_file():
            return candidate
    return None


def _coerce(field_name: str, value: Any, current: Any) -> Any:
    if field_name == "agent_command" and isinstance(value, str):
        return shlex.split(value)
    if field_name in {"working_dir", "widget_dist", "widget_src", "log_file"}:
        return str(Path(str(value)).expanduser()) if value is not None else None
    if isinstance(current, bool):
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes", "on"}
        return bool(value)
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    return value


def load_yaml_config(
    path: str | Path,
    base: GektoConfig | None = None,
) -> GektoConfig:
    """Load and parse a YAML config file into a GektoConfig.

    Values from *path* override *base* (defaults when omitted).
    Raises FileNotFoundError / yaml.YAMLError after logging them.
    """
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists()
    )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute()
        )
        raise
    except yaml.YAMLError as exc:
        logger.error(
            "load_yaml_config: YAML parse error in %s: %s",
            path, exc
        )
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")

    top_sections = sorted(raw.keys())
    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(top_sections) if top_sections else "(empty)",
    )

    config = base if base is not None else GektoConfig()
    overrides: dict[str, Any] = {}
    for section, values in raw.items():
        mapping = _SECTION_FIELDS.get(section)
        if mapping is None:
            logger.warning("load_yaml_config: unknown section %r ignored", section)
            continue
        if not isinstance(values, dict):
            logger.warning(
                "load_yaml_config: section %r is not a mapping, ignored", section
            )
            continue
        for key, value in values.items():
            field_name = mapping.get(key)
            if field_name is None:
                logger.warning(
                    "load_yaml_config: unknown key %s.%s ignored", section, key
                )
                continue
            overrides[field_name] = _coerce(
                field_name, value, getattr(config, field_name)
            )

    if overrides:
        logger.debug(
            "load_yaml_config: overrides %s",
            ", ".join(sorted(overrides)),
        )
    return dataclasses.replace(config, **overrides)
