"""Per-client entity filters.

Clients choose the entities they want with the ``hass-listen-entities``
handshake header, a comma-separated list of entity ids. No header means
"every entity".
"""

from __future__ import annotations

from collections.abc import Callable, Iterable

from hassrelay.exceptions import InvalidFilterError
from hassrelay.models.snapshot import Snapshot

EntityFilter = Callable[[str, Snapshot], bool]
"""Pure predicate over ``(entity_id, snapshot)`` evaluated once per event."""


def parse_entity_filter(header: str | None) -> frozenset[str] | None:
    """Parse the header value into a set of entity ids.

    Whitespace around ids is stripped and empty items are ignored. A header
    that is present but names no entity at all is rejected instead of being
    treated as "subscribe to nothing".
    """
    if header is None:
        return None
    entity_ids = frozenset(part.strip() for part in header.split(",") if part.strip())
    if not entity_ids:
        raise InvalidFilterError(f"Entity filter header names no entities: {header!r}")
    return entity_ids


def build_filter(entity_ids: Iterable[str] | None) -> EntityFilter | None:
    """Build a membership predicate, or ``None`` to accept everything."""
    if entity_ids is None:
        return None
    wanted = frozenset(entity_ids)

    def _matches(entity_id: str, _snapshot: Snapshot) -> bool:
        return entity_id in wanted

    return _matches
