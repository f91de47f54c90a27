from __future__ import annotations

import pytest

from hassrelay.config import RelayConfig
from hassrelay.exceptions import RelayConfigError
from hassrelay.hub import OverflowPolicy

_ENV_VARS = (
    "HASS_TOKEN",
    "LISTEN",
    "HASS_SERVER",
    "HASS_PORT",
    "HASS_TLS",
    "HASSRELAY_QUEUE_SIZE",
    "HASSRELAY_OVERFLOW_POLICY",
    "HASSRELAY_HANDSHAKE_TIMEOUT",
    "HASSRELAY_WORKERS",
    "HASSRELAY_RECONNECT",
    "HASSRELAY_RECONNECT_INITIAL_DELAY",
    "HASSRELAY_RECONNECT_MAX_DELAY",
    "HASSRELAY_LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults() -> None:
    config = RelayConfig(hass_token="abc")

    assert config.listen == "[::1]:8080"
    assert config.hass_url == "ws://localhost:8123/api/websocket"
    assert config.queue_size == 1024
    assert config.overflow_policy is OverflowPolicy.DROP_OLDEST
    assert config.reconnect is False


def test_from_env_reads_variables(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HASS_TOKEN", "env-token")
    monkeypatch.setenv("LISTEN", "0.0.0.0:9000")
    monkeypatch.setenv("HASS_SERVER", "hass.lan")
    monkeypatch.setenv("HASS_PORT", "443")
    monkeypatch.setenv("HASS_TLS", "yes")
    monkeypatch.setenv("HASSRELAY_QUEUE_SIZE", "0")
    monkeypatch.setenv("HASSRELAY_OVERFLOW_POLICY", "drop_newest")
    monkeypatch.setenv("HASSRELAY_WORKERS", "8")
    monkeypatch.setenv("HASSRELAY_RECONNECT", "on")
    monkeypatch.setenv("HASSRELAY_HANDSHAKE_TIMEOUT", "2.5")

    config = RelayConfig.from_env()

    assert config.hass_token == "env-token"
    assert config.listen == "0.0.0.0:9000"
    assert config.hass_url == "wss://hass.lan:443/api/websocket"
    assert config.queue_size == 0
    assert config.overflow_policy is OverflowPolicy.DROP_NEWEST
    assert config.workers == 8
    assert config.reconnect is True
    assert config.handshake_timeout == 2.5


def test_overrides_win_and_none_falls_through(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HASS_TOKEN", "env-token")
    monkeypatch.setenv("HASS_PORT", "not-a-port")
    monkeypatch.setenv("HASS_SERVER", "env-host")

    config = RelayConfig.from_env(hass_port=8124, hass_server=None, listen="127.0.0.1:1")

    assert config.hass_port == 8124
    assert config.hass_server == "env-host"
    assert config.listen == "127.0.0.1:1"


def test_missing_token_is_rejected() -> None:
    with pytest.raises(RelayConfigError, match="HASS_TOKEN"):
        RelayConfig.from_env()


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("HASS_PORT", "eighty"),
        ("HASSRELAY_WORKERS", "1.5"),
        ("HASSRELAY_OVERFLOW_POLICY", "block"),
        ("HASSRELAY_LOG_LEVEL", "LOUD"),
        ("HASSRELAY_WORKERS", "0"),
        ("HASS_PORT", "70000"),
    ],
)
def test_invalid_environment_values(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv("HASS_TOKEN", "env-token")
    monkeypatch.setenv(name, value)

    with pytest.raises(RelayConfigError):
        RelayConfig.from_env()


def test_reconnect_delays_are_validated() -> None:
    with pytest.raises(RelayConfigError):
        RelayConfig(hass_token="abc", reconnect_initial_delay=5.0, reconnect_max_delay=1.0)
