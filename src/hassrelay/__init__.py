"""hassrelay - fan out Home Assistant state changes to WebSocket subscribers."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("hassrelay")
except PackageNotFoundError:
    __version__ = "0+local"

from hassrelay.codec import entity_from_payload, snapshot_from_entity
from hassrelay.config import RelayConfig
from hassrelay.connector import ConnectorState, UpstreamConnector
from hassrelay.exceptions import (
    DownstreamClosed,
    DownstreamSendError,
    HandshakeError,
    HassRelayError,
    InvalidFilterError,
    RelayConfigError,
    SessionError,
    SubscriptionClosed,
    UpstreamAuthError,
    UpstreamConnectError,
    UpstreamConnectionLost,
    UpstreamError,
    UpstreamFetchError,
)
from hassrelay.filters import build_filter, parse_entity_filter
from hassrelay.hub import BroadcastHub, OverflowPolicy, StateEvent, Subscription
from hassrelay.models import Snapshot, StateChangedData, UpstreamEntity
from hassrelay.server import RelayServer
from hassrelay.session import RelaySession, SessionStats
from hassrelay.state import EntityStateCache

__all__ = [
    "__version__",
    "BroadcastHub",
    "ConnectorState",
    "DownstreamClosed",
    "DownstreamSendError",
    "EntityStateCache",
    "HandshakeError",
    "HassRelayError",
    "InvalidFilterError",
    "OverflowPolicy",
    "RelayConfig",
    "RelayConfigError",
    "RelayServer",
    "RelaySession",
    "SessionError",
    "SessionStats",
    "Snapshot",
    "StateChangedData",
    "StateEvent",
    "Subscription",
    "SubscriptionClosed",
    "UpstreamAuthError",
    "UpstreamConnectError",
    "UpstreamConnectionLost",
    "UpstreamConnector",
    "UpstreamEntity",
    "UpstreamError",
    "UpstreamFetchError",
    "build_filter",
    "entity_from_payload",
    "parse_entity_filter",
    "snapshot_from_entity",
]
