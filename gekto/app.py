"""Gekto command-line entry point."""
from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import os
import shlex
import shutil
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from gekto.engine.config import GektoConfig
from gekto.engine.yaml_config import find_config_file, load_yaml_config

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gekto",
        description="Gekto: AI pair-programming widget proxy for any web app",
    )
    parser.add_argument(
        "-p", "--port", type=int,
        help="Proxy listen port (default: 3200)",
    )
    parser.add_argument(
        "-t", "--target", type=int,
        help="Target app port to proxy to (default: 5173)",
    )
    parser.add_argument(
        "--target-host",
        help="Target app host (default: localhost)",
    )
    parser.add_argument(
        "--dev", action="store_true", default=None,
        help="Load the widget from its dev server instead of the bundle",
    )
    parser.add_argument(
        "--widget-port", type=int,
        help="Widget dev server port (default: 5174)",
    )
    parser.add_argument(
        "--cwd", metavar="DIR",
        help="Working directory for assistant sessions (default: current)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (default: gekto.yaml in the working directory)",
    )
    parser.add_argument(
        "--standalone", action="store_true", default=None,
        help="Serve a blank page with the widget at / instead of proxying it",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="Debug logging",
    )
    return parser


def configure_logging(config: GektoConfig, verbose: bool = False) -> Path:
    level_name = "DEBUG" if verbose else config.log_level.upper()
    if config.log_file:
        log_file = Path(config.log_file).expanduser()
    else:
        log_file = Path.home() / ".gekto" / "logs" / "gekto.log"
    log_file.parent.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name, logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(LOG_FORMAT)
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    # aiohttp.access duplicates the request middleware.
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    return log_file


def resolve_config(args: argparse.Namespace) -> GektoConfig:
    """Defaults < GEKTO_* env < YAML file < CLI flags."""
    config = GektoConfig.from_env()

    config_path = Path(args.config) if args.config else None
    if config_path is None:
        search_dir = args.cwd or config.working_dir
        config_path = find_config_file(search_dir)
        if config_path is not None:
            logger.info("Using discovered config %s", config_path)
    if config_path is not None:
        config = load_yaml_config(config_path, base=config)

    overrides = {
        "proxy_port": args.port,
        "target_port": args.target,
        "target_host": args.target_host,
        "dev_mode": args.dev,
        "widget_port": args.widget_port,
        "standalone": args.standalone,
    }
    if args.cwd:
        overrides["working_dir"] = str(Path(args.cwd).expanduser().resolve())
    return dataclasses.replace(
        config, **{k: v for k, v in overrides.items() if v is not None}
    )


def _log_runtime_compatibility(config: GektoConfig) -> None:
    logger.info("Python %s on %s", sys.version.split()[0], sys.platform)
    for label, command in (
        ("session", config.agent_command[0] if config.agent_command else ""),
        ("planner", (shlex.split(config.planner_command) or [""])[0]),
    ):
        resolved = shutil.which(command) if command else None
        if resolved:
            logger.info("%s command %s -> %s", label, command, resolved)
        else:
            logger.warning(
                "%s command %r not found on PATH; sessions will fail to start",
                label, command,
            )


def main() -> None:
    args = build_parser().parse_args()
    config = resolve_config(args)
    log_file = configure_logging(config, verbose=args.verbose)
    logger.info(
        "Starting Gekto cwd=%s port=%s target=%s dev=%s config=%s log=%s",
        config.working_dir, config.proxy_port, config.target_url,
        config.dev_mode, args.config or "<auto>", log_file,
    )
    if not os.path.isdir(config.working_dir):
        logger.error("Working directory %s does not exist", config.working_dir)
        sys.exit(2)
    _log_runtime_compatibility(config)

    from gekto.server.server import GektoServer

    server = GektoServer(config)
    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
