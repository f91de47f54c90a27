"""Data models for Home Assistant payloads and relayed snapshots."""

from hassrelay.models.entity import StateChangedData, UpstreamEntity
from hassrelay.models.snapshot import Snapshot

__all__ = [
    "Snapshot",
    "StateChangedData",
    "UpstreamEntity",
]
