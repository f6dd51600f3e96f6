"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via GEKTO_* env vars,
an optional gekto.yaml (see yaml_config.py) and CLI flags, in that
order of increasing precedence.
"""
from __future__ import annotations

import logging
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes", "on"}

# Location of the built widget bundle, relative to the package root.
_DEFAULT_WIDGET_DIST = str(
    Path(__file__).resolve().parent.parent / "widget" / "dist"
)


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUTHY


@dataclass
class GektoConfig:
    """Proxy, session and planner configuration."""

    # Proxy
    proxy_port: int = 3200
    target_port: int = 5173
    target_host: str = "localhost"
    host: str = "127.0.0.1"

    # Widget delivery. In dev mode the widget is served by its own dev
    # server on widget_port; otherwise from the bundled dist directory.
    dev_mode: bool = False
    widget_port: int = 5174
    widget_dist: str = _DEFAULT_WIDGET_DIST
    widget_src: str | None = None
    # Serve a blank page carrying the widget instead of proxying "/".
    standalone: bool = False

    # Sessions
    working_dir: str = field(default_factory=os.getcwd)
    agent_command: list[str] = field(default_factory=lambda: ["claude"])
    terminal_cols: int = 120
    terminal_rows: int = 40
    # Force a session stuck in "working" into "error" after this long.
    # Set to 0 (or a negative value) to disable.
    session_turn_timeout_seconds: float = 0.0
    # SIGTERM to SIGKILL escalation delay when stopping a session.
    session_kill_grace_seconds: float = 5.0

    # Planner
    planner_command: str = "claude"
    planner_model: str = "claude-sonnet-4-20250514"
    classifier_model: str = "claude-haiku-4-5-20251001"
    tools_model: str = "haiku"
    planner_restart_delay_seconds: float = 1.0
    planner_startup_timeout_seconds: float = 30.0
    # Set to 0 (or a negative value) to disable.
    planner_turn_timeout_seconds: float = 300.0
    classifier_timeout_seconds: float = 10.0

    # Logging
    log_level: str = "INFO"
    log_file: str | None = None

    @property
    def target_url(self) -> str:
        return f"http://{self.target_host}:{self.target_port}"

    @property
    def widget_dev_url(self) -> str:
        return f"http://localhost:{self.widget_port}"

    @classmethod
    def from_env(cls) -> GektoConfig:
        """Load configuration from GEKTO_* environment variables."""
        gekto_vars = {
            k: v for k, v in os.environ.items()
            if k.startswith("GEKTO_") or k == "WIDGET_PORT"
        }
        if gekto_vars:
            logger.info(
                "GektoConfig.from_env: env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(gekto_vars.items())),
            )
        else:
            logger.debug("GektoConfig.from_env: no GEKTO_* env vars set, using defaults")

        agent_command = os.getenv("GEKTO_AGENT_COMMAND")
        dev_mode = _env_flag("GEKTO_DEV")
        config = cls(
            proxy_port=int(os.getenv("GEKTO_PORT", str(cls.proxy_port))),
            target_port=int(os.getenv(
                "GEKTO_TARGET_PORT", str(cls.target_port)
            )),
            target_host=os.getenv("GEKTO_TARGET_HOST", cls.target_host),
            host=os.getenv("GEKTO_HOST", cls.host),
            dev_mode=dev_mode,
            widget_port=int(os.getenv("WIDGET_PORT", str(cls.widget_port))),
            widget_dist=os.getenv("GEKTO_WIDGET_DIST", cls.widget_dist),
            widget_src=os.getenv("GEKTO_WIDGET_SRC") or None,
            standalone=_env_flag("GEKTO_STANDALONE"),
            working_dir=os.getenv("GEKTO_CWD") or os.getcwd(),
            agent_command=(
                shlex.split(agent_command) if agent_command else ["claude"]
            ),
            session_turn_timeout_seconds=float(os.getenv(
                "GEKTO_SESSION_TIMEOUT",
                str(cls.session_turn_timeout_seconds),
            )),
            session_kill_grace_seconds=float(os.getenv(
                "GEKTO_KILL_GRACE",
                str(cls.session_kill_grace_seconds),
            )),
            planner_command=os.getenv(
                "GEKTO_PLANNER_COMMAND", cls.planner_command
            ),
            planner_model=os.getenv("GEKTO_PLANNER_MODEL", cls.planner_model),
            classifier_model=os.getenv(
                "GEKTO_CLASSIFIER_MODEL", cls.classifier_model
            ),
            tools_model=os.getenv("GEKTO_TOOLS_MODEL", cls.tools_model),
            planner_turn_timeout_seconds=float(os.getenv(
                "GEKTO_PLANNER_TIMEOUT",
                str(cls.planner_turn_timeout_seconds),
            )),
            classifier_timeout_seconds=float(os.getenv(
                "GEKTO_CLASSIFIER_TIMEOUT",
                str(cls.classifier_timeout_seconds),
            )),
            log_level=os.getenv("GEKTO_LOG_LEVEL", cls.log_level),
            log_file=os.getenv("GEKTO_LOG_FILE") or None,
        )
        logger.info(
            "GektoConfig.from_env: port=%d target=%s dev=%s cwd=%s",
            config.proxy_port, config.target_url,
            config.dev_mode, config.working_dir,
        )
        return config
