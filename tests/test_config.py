from __future__ import annotations

import argparse
import os
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from gekto.app import build_parser, resolve_config
from gekto.engine.config import GektoConfig
from gekto.engine.yaml_config import find_config_file, load_yaml_config


def test_defaults_match_cli_defaults() -> None:
    cfg = GektoConfig()
    assert cfg.proxy_port == 3200
    assert cfg.target_port == 5173
    assert cfg.widget_port == 5174
    assert cfg.dev_mode is False
    assert cfg.session_turn_timeout_seconds == 0.0
    assert cfg.planner_turn_timeout_seconds == 300.0
    assert cfg.target_url == "http://localhost:5173"


def test_from_env_reads_gekto_vars() -> None:
    env = {
        "GEKTO_PORT": "4000",
        "GEKTO_TARGET_PORT": "8080",
        "GEKTO_DEV": "1",
        "WIDGET_PORT": "6000",
        "GEKTO_AGENT_COMMAND": "claude --verbose",
        "GEKTO_SESSION_TIMEOUT": "90",
    }
    with patch.dict(os.environ, env, clear=False):
        cfg = GektoConfig.from_env()
    assert cfg.proxy_port == 4000
    assert cfg.target_port == 8080
    assert cfg.dev_mode is True
    assert cfg.widget_port == 6000
    assert cfg.agent_command == ["claude", "--verbose"]
    assert cfg.session_turn_timeout_seconds == 90.0
    assert cfg.widget_dev_url == "http://localhost:6000"


def test_agent_command_keeps_quoted_arguments() -> None:
    env = {
        "GEKTO_AGENT_COMMAND": "claude --append-system-prompt \"be brief\"",
        "GEKTO_KILL_GRACE": "1.5",
    }
    with patch.dict(os.environ, env, clear=False):
        cfg = GektoConfig.from_env()
    assert cfg.agent_command == ["claude", "--append-system-prompt", "be brief"]
    assert cfg.session_kill_grace_seconds == 1.5


def test_gekto_dev_falsey_values() -> None:
    with patch.dict(os.environ, {"GEKTO_DEV": "0"}, clear=False):
        assert GektoConfig.from_env().dev_mode is False


def test_yaml_config_overrides_base() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        config_path = Path(tmpdir) / "gekto.yaml"
        config_path.write_text(
            "proxy:\n"
            "  port: 3300\n"
            "  target: 3000\n"
            "  dev: true\n"
            "agents:\n"
            "  command: claude --model 'my model'\n"
            "  turn_timeout: 120\n"
            "  kill_grace: 2\n"
            "planner:\n"
            "  turn_timeout: 60\n"
            "logging:\n"
            "  level: DEBUG\n"
        )
        base = GektoConfig(target_host="127.0.0.1")
        cfg = load_yaml_config(config_path, base=base)

    assert cfg.proxy_port == 3300
    assert cfg.target_port == 3000
    assert cfg.dev_mode is True
    assert cfg.target_host == "127.0.0.1"
    assert cfg.agent_command == ["claude", "--model", "my model"]
    assert cfg.session_turn_timeout_seconds == 120.0
    assert cfg.session_kill_grace_seconds == 2.0
    assert cfg.planner_turn_timeout_seconds == 60.0
    assert cfg.log_level == "DEBUG"
    # base is not mutated
    assert base.proxy_port == 3200


def test_yaml_config_ignores_unknown_keys() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        config_path = Path(tmpdir) / "gekto.yaml"
        config_path.write_text(
            "proxy:\n  port: 3201\n  bogus: 1\nextras:\n  a: b\n"
        )
        cfg = load_yaml_config(config_path)
    assert cfg.proxy_port == 3201


def test_yaml_config_parse_error_raises() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        config_path = Path(tmpdir) / "gekto.yaml"
        config_path.write_text("proxy: [unclosed\n")
        with pytest.raises(yaml.YAMLError):
            load_yaml_config(config_path)


def test_yaml_config_missing_file_raises() -> None:
    with pytest.raises(FileNotFoundError):
        load_yaml_config("/nonexistent/gekto.yaml")


def test_find_config_file() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        assert find_config_file(tmpdir) is None
        (Path(tmpdir) / "gekto.yml").write_text("proxy: {}\n")
        assert find_config_file(tmpdir) == Path(tmpdir) / "gekto.yml"


def test_cli_flags_override_yaml_and_env() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        (Path(tmpdir) / "gekto.yaml").write_text(
            "proxy:\n  port: 3300\n  target: 3000\n"
        )
        args = build_parser().parse_args(["--cwd", tmpdir, "-t", "9000", "--dev"])
        with patch.dict(os.environ, {"GEKTO_PORT": "4100"}, clear=False):
            cfg = resolve_config(args)

    assert cfg.target_port == 9000
    assert cfg.proxy_port == 3300
    assert cfg.dev_mode is True
    assert cfg.working_dir == str(Path(tmpdir).resolve())


def test_cli_parser_defaults_leave_config_untouched() -> None:
    args = build_parser().parse_args([])
    assert isinstance(args, argparse.Namespace)
    assert args.port is None
    assert args.dev is None
    assert args.standalone is None
