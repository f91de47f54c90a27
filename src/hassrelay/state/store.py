"""In-memory entity state cache.

The cache maps ``entity_id`` to the latest :class:`Snapshot`. Every
operation takes the lock only for the dictionary access itself; nothing that
can suspend on I/O ever runs while the lock is held.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable

from hassrelay.codec import snapshot_from_entity
from hassrelay.models.entity import UpstreamEntity
from hassrelay.models.snapshot import Snapshot

_logger = logging.getLogger(__name__)


class EntityStateCache:
    """Single-writer, multi-reader table of entity snapshots."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._entities: dict[str, Snapshot] = {}

    async def initialize(self, entities: Iterable[UpstreamEntity]) -> None:
        """Replace the whole table with the bulk-fetched *entities*."""
        table: dict[str, Snapshot] = {}
        for entity in entities:
            snapshot = snapshot_from_entity(entity)
            if not snapshot.entity_id:
                _logger.debug("Skipping state object without entity_id: %s", entity)
                continue
            table[snapshot.entity_id] = snapshot
        async with self._lock:
            self._entities = table
        _logger.info("Entity state cache initialized with %d entities", len(table))

    async def update(self, entity_id: str, snapshot: Snapshot) -> None:
        """Insert or overwrite the snapshot for *entity_id*."""
        async with self._lock:
            self._entities[entity_id] = snapshot

    async def get(self, entity_id: str) -> Snapshot | None:
        async with self._lock:
            return self._entities.get(entity_id)

    async def snapshot_all(self) -> list[tuple[str, Snapshot]]:
        """Return a copy of the table taken at call time.

        Snapshots are immutable, so a shallow copy of the items is enough
        for readers to iterate without holding the lock.
        """
        async with self._lock:
            return list(self._entities.items())

    def __len__(self) -> int:
        return len(self._entities)

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._entities
