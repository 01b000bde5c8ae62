"""Tests for the command line entry point."""
import json
import pytest
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).parent.parent))

from conftest import SCRIPTS_DIR
from edgehost_local.app import build_app
from edgehost_local.cli import build_parser, main
from edgehost_local.config import Settings


def test_parse_arguments():
    """Test the supported flags."""
    args = build_parser().parse_args(["api", "--config", "proj/.edgehost.json", "--port", "9000", "--in-process"])
    assert args.script == "api"
    assert args.config == Path("proj/.edgehost.json")
    assert args.port == 9000
    assert args.in_process is True


def test_defaults():
    args = build_parser().parse_args(["api"])
    assert args.config is None
    assert args.port is None
    assert args.in_process is False


def test_missing_config_exits_with_error(temp_dir, monkeypatch):
    """Test that a config error exits with status 1 before serving."""
    monkeypatch.chdir(temp_dir)
    assert main(["api", "--config", str(temp_dir / "missing.json")]) == 1


def test_unknown_script_exits_with_error(temp_dir, monkeypatch):
    """Test that naming a script the config lacks exits with status 1."""
    monkeypatch.chdir(temp_dir)
    config_path = temp_dir / ".edgehost.json"
    config_path.write_text(json.dumps({"scripts": {"api": {"path": "api.py"}}}))
    assert main(["web", "--config", str(config_path)]) == 1


def test_build_app(temp_dir, monkeypatch):
    """Test wiring an application from a project config."""
    monkeypatch.chdir(temp_dir)
    monkeypatch.delenv("EDGEHOST_ACCOUNT_ID", raising=False)
    monkeypatch.delenv("EDGEHOST_API_TOKEN", raising=False)
    config_path = temp_dir / ".edgehost.json"
    config_path.write_text(
        json.dumps({"scripts": {"hello": {"path": str(SCRIPTS_DIR / "hello.py"), "localInProcess": True}}})
    )
    settings = Settings(config_path=config_path, storage_dir=temp_dir / "storage", external_ip="192.0.2.9")

    app = build_app("hello", settings, port=9123, watch=False)

    assert app.state.script.local_port == 9123
    assert app.state.runner.in_process is True
    assert app.state.runner.credential is None
    assert app.state.external_ip.state == "resolved"
    assert app.openapi_url is None
