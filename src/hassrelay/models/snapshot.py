"""Normalized entity snapshot relayed to downstream clients."""

from __future__ import annotations

from functools import cached_property
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Snapshot(BaseModel):
    """Immutable state of one entity at one point in time.

    A snapshot is created once per upstream change and then shared between
    the cache and every subscriber that receives it, so it must never be
    mutated.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    entity_id: str
    state: str
    last_changed: str | None = None
    last_updated: str | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)

    @cached_property
    def message(self) -> str:
        """Compact JSON text sent to downstream clients.

        Computed on first access and reused for every subscriber.
        """
        return self.model_dump_json()
