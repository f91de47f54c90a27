"""Snapshot codec.

Turns Home Assistant state objects into :class:`Snapshot` values. The
transform is total: any mapping (or already-parsed entity) yields a snapshot,
with missing fields mapped to empty values.
"""

from __future__ import annotations

import copy
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from hassrelay.models.entity import UpstreamEntity
from hassrelay.models.snapshot import Snapshot


def entity_from_payload(payload: Any) -> UpstreamEntity | None:
    """Parse a raw state object, returning ``None`` for non-mappings."""
    if isinstance(payload, UpstreamEntity):
        return payload
    if not isinstance(payload, Mapping):
        return None
    try:
        return UpstreamEntity.model_validate(dict(payload))
    except ValidationError:
        # Lenient validators make this unreachable for JSON input; keep the
        # codec total for anything else callers hand us.
        return UpstreamEntity(raw=dict(payload))


def snapshot_from_entity(entity: UpstreamEntity | Mapping[str, Any]) -> Snapshot:
    """Build the relayed snapshot for *entity*.

    Only ``entity_id``, ``state``, ``last_changed``, ``last_updated`` and
    ``attributes`` are carried over. Attributes are deep-copied so the
    snapshot does not alias the upstream payload.
    """
    parsed = entity_from_payload(entity)
    if parsed is None:
        parsed = UpstreamEntity()
    return Snapshot(
        entity_id=parsed.entity_id,
        state=parsed.state,
        last_changed=parsed.last_changed,
        last_updated=parsed.last_updated,
        attributes=copy.deepcopy(parsed.attributes),
    )
