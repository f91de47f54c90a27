"""Relay configuration for hassrelay."""

from __future__ import annotations

import dataclasses
import logging
import os
from typing import Any

from hassrelay._constants import (
    DEFAULT_HANDSHAKE_TIMEOUT,
    DEFAULT_HASS_PORT,
    DEFAULT_HASS_SERVER,
    DEFAULT_LISTEN,
    DEFAULT_QUEUE_SIZE,
    DEFAULT_WORKERS,
    WEBSOCKET_PATH,
)
from hassrelay.exceptions import RelayConfigError
from hassrelay.hub import OverflowPolicy


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


@dataclasses.dataclass(frozen=True)
class RelayConfig:
    """Relay configuration.

    Parameters
    ----------
    hass_token : str
        Long-lived access token issued by Home Assistant.
    listen : str
        ``host:port`` the downstream WebSocket server binds to. IPv6 hosts
        are written in brackets (``[::1]:8080``).
    hass_server : str
        Home Assistant host name or IP.
    hass_port : int
        Home Assistant port.
    hass_tls : bool
        Use ``wss://`` instead of ``ws://`` for the upstream connection.
    queue_size : int
        Per-subscriber buffer size. ``0`` means unbounded.
    overflow_policy : OverflowPolicy
        What a full subscriber buffer does with the next event.
    handshake_timeout : float
        Seconds a downstream connection has, from being accepted, to send
        its complete upgrade request. The upgrade response is bounded by
        the same value.
    workers : int
        Number of ordered event-processing workers. Events for one entity
        always land on the same worker.
    reconnect : bool
        Reconnect to Home Assistant with exponential backoff instead of
        terminating when the live connection drops.
    reconnect_initial_delay : float
        First backoff delay in seconds.
    reconnect_max_delay : float
        Backoff ceiling in seconds.
    log_level : str
        Process log level name.
    """

    hass_token: str
    listen: str = DEFAULT_LISTEN
    hass_server: str = DEFAULT_HASS_SERVER
    hass_port: int = DEFAULT_HASS_PORT
    hass_tls: bool = False
    queue_size: int = DEFAULT_QUEUE_SIZE
    overflow_policy: OverflowPolicy = OverflowPolicy.DROP_OLDEST
    handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT
    workers: int = DEFAULT_WORKERS
    reconnect: bool = False
    reconnect_initial_delay: float = 1.0
    reconnect_max_delay: float = 60.0
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if not self.hass_token or not self.hass_token.strip():
            raise RelayConfigError("A Home Assistant access token is required (HASS_TOKEN)")
        if not 0 < self.hass_port < 65536:
            raise RelayConfigError(f"hass_port out of range: {self.hass_port}")
        if self.queue_size < 0:
            raise RelayConfigError(f"queue_size must be >= 0, got {self.queue_size}")
        if self.workers < 1:
            raise RelayConfigError(f"workers must be >= 1, got {self.workers}")
        if self.handshake_timeout <= 0:
            raise RelayConfigError(f"handshake_timeout must be > 0, got {self.handshake_timeout}")
        if self.reconnect_initial_delay <= 0 or self.reconnect_max_delay < self.reconnect_initial_delay:
            raise RelayConfigError("reconnect delays must satisfy 0 < initial <= max")
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise RelayConfigError(f"Unknown log level: {self.log_level!r}")
        if not isinstance(self.overflow_policy, OverflowPolicy):
            try:
                object.__setattr__(self, "overflow_policy", OverflowPolicy(self.overflow_policy))
            except ValueError as exc:
                raise RelayConfigError(f"Unknown overflow policy: {self.overflow_policy!r}") from exc

    @property
    def hass_url(self) -> str:
        """WebSocket URL of the Home Assistant API."""
        scheme = "wss" if self.hass_tls else "ws"
        return f"{scheme}://{self.hass_server}:{self.hass_port}{WEBSOCKET_PATH}"

    @classmethod
    def from_env(cls, **overrides: Any) -> RelayConfig:
        """Create configuration from environment variables.

        Reads ``HASS_TOKEN``, ``LISTEN``, ``HASS_SERVER``, ``HASS_PORT`` and
        optional ``HASSRELAY_*`` variables. Explicit keyword arguments
        override environment values; ``None`` overrides are ignored so CLI
        flags left unset fall through to the environment.

        Returns
        -------
        RelayConfig
            Populated configuration.
        """
        env = os.environ
        overrides = {key: value for key, value in overrides.items() if value is not None}

        _ENV_CONFIG_MAP = {
            "HASS_TOKEN": "hass_token",
            "LISTEN": "listen",
            "HASS_SERVER": "hass_server",
            "HASSRELAY_OVERFLOW_POLICY": "overflow_policy",
            "HASSRELAY_LOG_LEVEL": "log_level",
        }
        config_kwargs: dict[str, Any] = {"hass_token": ""}
        for env_key, field_name in _ENV_CONFIG_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val

        _ENV_NUMERIC_MAP: dict[str, tuple[str, type]] = {
            "HASS_PORT": ("hass_port", int),
            "HASSRELAY_QUEUE_SIZE": ("queue_size", int),
            "HASSRELAY_WORKERS": ("workers", int),
            "HASSRELAY_HANDSHAKE_TIMEOUT": ("handshake_timeout", float),
            "HASSRELAY_RECONNECT_INITIAL_DELAY": ("reconnect_initial_delay", float),
            "HASSRELAY_RECONNECT_MAX_DELAY": ("reconnect_max_delay", float),
        }
        for env_key, (field_name, convert) in _ENV_NUMERIC_MAP.items():
            val = env.get(env_key)
            if val is None or field_name in overrides:
                continue
            try:
                config_kwargs[field_name] = convert(val)
            except ValueError as exc:
                raise RelayConfigError(f"{env_key} is not a valid {convert.__name__}: {val!r}") from exc

        if "hass_tls" not in overrides:
            config_kwargs["hass_tls"] = _env_bool(env.get("HASS_TLS"), False)
        if "reconnect" not in overrides:
            config_kwargs["reconnect"] = _env_bool(env.get("HASSRELAY_RECONNECT"), False)

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
