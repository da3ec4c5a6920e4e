from __future__ import annotations

import json
import logging

import pytest
import structlog
from pydantic import ValidationError

from adder.bootstrap import Settings, bootstrap, configure_logging, load_client, reset_context
from adder.client import ConnectionMonitor, ConnectionState
from adder.mock_client import MockMessagingClient
from adder.state import SafetyConfig


def make_client(settings, monitor):
    """Factory referenced through MESSAGING_CLIENT in the tests below."""
    monitor.mark_connecting()
    return MockMessagingClient(latency=0.0)


def test_settings_defaults(monkeypatch):
    for name in ("DAILY_LIMIT", "HOURLY_LIMIT", "MIN_DELAY", "MAX_DELAY", "MESSAGING_CLIENT"):
        monkeypatch.delenv(name, raising=False)
    settings = Settings(_env_file=None)
    config = SafetyConfig.from_settings(settings)
    assert config == SafetyConfig()
    assert settings.app_port == 8000


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("DAILY_LIMIT", "500")
    monkeypatch.setenv("MIN_DELAY", "5")
    monkeypatch.setenv("PATTERN_VARIATION", "false")
    settings = Settings(_env_file=None)
    assert settings.daily_limit == 500
    assert settings.min_delay_seconds == 5
    assert settings.pattern_variation_enabled is False


@pytest.mark.parametrize(
    "env",
    [
        {"DAILY_LIMIT": "0"},
        {"MIN_DELAY": "-1"},
        {"MIN_DELAY": "120", "MAX_DELAY": "60"},
    ],
)
def test_settings_validation(monkeypatch, env):
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    with pytest.raises(ValidationError):
        Settings(_env_file=None)


def test_load_client_mock_marks_connected():
    monitor = ConnectionMonitor()
    client = load_client(Settings(_env_file=None, MOCK_MODE=True), monitor)
    assert isinstance(client, MockMessagingClient)
    assert monitor.state is ConnectionState.CONNECTED


def test_load_client_from_factory_path():
    monitor = ConnectionMonitor(ConnectionState.CONNECTED)
    settings = Settings(_env_file=None, MOCK_MODE=False, MESSAGING_CLIENT=f"{__name__}:make_client")
    client = load_client(settings, monitor)
    assert isinstance(client, MockMessagingClient)
    assert monitor.state is ConnectionState.CONNECTING


def test_load_client_rejects_bad_path():
    settings = Settings(_env_file=None, MOCK_MODE=False, MESSAGING_CLIENT="no_factory_here")
    with pytest.raises(ValueError):
        load_client(settings, ConnectionMonitor())


@pytest.mark.asyncio
async def test_bootstrap_basic(monkeypatch, tmp_path):
    monkeypatch.setenv("DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
    try:
        ctx = await bootstrap(force=True)
        assert ctx.settings.app_name
        assert ctx.logger is not None
        assert ctx.monitor.is_ready
        assert ctx.processor.get_status()["status"] == "ready"
        assert await bootstrap() is ctx
    finally:
        reset_context()


def test_request_id_comes_from_contextvars(capsys, tmp_path):
    root = logging.getLogger()
    saved = list(root.handlers)
    configure_logging("INFO", Settings(_env_file=None, LOG_DIR=str(tmp_path / "logs")))
    structlog.contextvars.bind_contextvars(request_id="rid-1")
    try:
        structlog.get_logger("request_id_check").info("request_logged")
    finally:
        structlog.contextvars.clear_contextvars()
        for handler in root.handlers:
            handler.close()
        root.handlers = saved

    [line] = [l for l in capsys.readouterr().out.splitlines() if "request_logged" in l]
    event = json.loads(line)
    assert event["request_id"] == "rid-1"
    assert event["level"] == "info"
