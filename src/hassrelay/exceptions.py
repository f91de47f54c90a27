"""Custom exception hierarchy for hassrelay."""

from __future__ import annotations


class HassRelayError(Exception):
    """Base exception for all hassrelay errors."""


class RelayConfigError(HassRelayError):
    """Invalid or missing configuration."""


class UpstreamError(HassRelayError):
    """Failure talking to Home Assistant.

    Every subclass is fatal for the process: without a working upstream
    connection there is no correct state to serve.
    """

    def __init__(self, message: str, *, url: str = "") -> None:
        self.url = url
        super().__init__(message)


class UpstreamConnectError(UpstreamError):
    """The WebSocket connection to Home Assistant could not be opened."""


class UpstreamAuthError(UpstreamError):
    """Home Assistant rejected the access token."""


class UpstreamFetchError(UpstreamError):
    """A command (``get_states``, ``subscribe_events``) failed."""

    def __init__(self, message: str, *, url: str = "", code: str = "") -> None:
        self.code = code
        super().__init__(message, url=url)


class UpstreamConnectionLost(UpstreamError):
    """The live upstream connection ended."""


class SessionError(HassRelayError):
    """Failure scoped to a single downstream client session."""


class HandshakeError(SessionError):
    """The downstream WebSocket handshake failed or timed out."""


class InvalidFilterError(SessionError):
    """The ``hass-listen-entities`` header could not be parsed."""


class DownstreamSendError(SessionError):
    """Writing a message to the downstream client failed."""


class DownstreamClosed(SessionError):
    """The downstream client closed the connection."""


class SubscriptionClosed(HassRelayError):
    """The subscription was removed from the hub and has no buffered events left."""
