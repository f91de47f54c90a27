"""Upstream connector: owns the Home Assistant connection, the cache and the hub.

Lifecycle::

    idle -> connecting -> authenticating -> syncing -> live -> terminated

Every ``state_changed`` event is decoded, written to the cache and then
published to the hub as one unit. Events are routed to a fixed worker by a
stable hash of the entity id, so changes to one entity are applied in
arrival order while different entities are processed concurrently.
"""

from __future__ import annotations

import asyncio
import logging
import zlib
from collections.abc import Callable, Iterable
from enum import StrEnum
from typing import Any

import aiohttp

from hassrelay._transport import HassTransport, UpstreamTransport
from hassrelay.codec import snapshot_from_entity
from hassrelay.config import RelayConfig
from hassrelay.exceptions import UpstreamAuthError, UpstreamConnectionLost, UpstreamError
from hassrelay.filters import build_filter
from hassrelay.hub import BroadcastHub, Subscription
from hassrelay.models.entity import UpstreamEntity
from hassrelay.models.snapshot import Snapshot
from hassrelay.state.store import EntityStateCache

_logger = logging.getLogger(__name__)

TransportFactory = Callable[[], UpstreamTransport]


class ConnectorState(StrEnum):
    IDLE = "idle"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    SYNCING = "syncing"
    LIVE = "live"
    TERMINATED = "terminated"


class UpstreamConnector:
    """Single writer of the entity cache and single publisher to the hub.

    Usage::

        async with UpstreamConnector(config) as connector:
            subscription = connector.subscribe({"light.kitchen"})
            ...
    """

    def __init__(
        self,
        config: RelayConfig,
        *,
        cache: EntityStateCache | None = None,
        hub: BroadcastHub | None = None,
        transport_factory: TransportFactory | None = None,
        http_session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._config = config
        self.cache = cache if cache is not None else EntityStateCache()
        self.hub = hub if hub is not None else BroadcastHub(max_queue=config.queue_size, policy=config.overflow_policy)
        if transport_factory is None:

            def transport_factory() -> UpstreamTransport:
                return HassTransport(config.hass_url, session=http_session)

        self._transport_factory = transport_factory
        self._transport: UpstreamTransport | None = None
        self._state = ConnectorState.IDLE
        self._initialized = False
        self._queues: list[asyncio.Queue[UpstreamEntity]] = []
        self._workers: list[asyncio.Task[None]] = []
        self.events_processed = 0

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> UpstreamConnector:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    @property
    def state(self) -> ConnectorState:
        return self._state

    def _set_state(self, state: ConnectorState) -> None:
        if state is not self._state:
            _logger.debug("Upstream connector %s -> %s", self._state.value, state.value)
            self._state = state

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Connect, authenticate, sync the cache and go live.

        Raises the matching :class:`UpstreamError` subclass on failure; the
        connector is then ``terminated``.
        """
        transport = self._transport_factory()
        self._transport = transport
        try:
            self._set_state(ConnectorState.CONNECTING)
            _logger.info("Connecting to Home Assistant at %s", self._config.hass_url)
            await transport.connect()

            self._set_state(ConnectorState.AUTHENTICATING)
            await transport.authenticate(self._config.hass_token)
            _logger.debug("Client connected and authenticated to Home Assistant")

            self._set_state(ConnectorState.SYNCING)
            entities = await transport.list_current_entities()
            if self._initialized:
                await self.resync(entities)
            else:
                await self.cache.initialize(entities)
                self._initialized = True

            self._start_workers()
            await transport.on_change(self._dispatch)
        except UpstreamError as exc:
            _logger.error("Upstream connection failed during %s: %s", self._state.value, exc)
            await self._stop_workers(drain=False)
            await transport.close()
            self._set_state(ConnectorState.TERMINATED)
            raise

        self._set_state(ConnectorState.LIVE)
        _logger.info("Live: relaying state changes for %d entities", len(self.cache))

    async def run(self) -> None:
        """Stay live until the upstream connection is lost.

        Without ``reconnect`` the loss is raised as
        :class:`UpstreamConnectionLost` so the process can exit and be
        restarted. With ``reconnect`` the connector retries with exponential
        backoff; rejected credentials remain fatal.
        """
        if self._state is not ConnectorState.LIVE:
            await self.start()

        while True:
            await self._wait_for_disconnect()
            if not self._config.reconnect:
                raise UpstreamConnectionLost("Connection to Home Assistant lost", url=self._config.hass_url)
            await self._reconnect()

    async def _wait_for_disconnect(self) -> None:
        transport = self._transport
        if transport is None:
            return
        await transport.wait_closed()
        _logger.warning("Connection to Home Assistant lost")
        await self._stop_workers(drain=True)
        await transport.close()
        self._set_state(ConnectorState.TERMINATED)

    async def _reconnect(self) -> None:
        delay = self._config.reconnect_initial_delay
        while True:
            _logger.info("Reconnecting to Home Assistant in %.1fs", delay)
            await asyncio.sleep(delay)
            try:
                await self.start()
            except UpstreamAuthError:
                raise
            except UpstreamError as exc:
                _logger.warning("Reconnect attempt failed: %s", exc)
                delay = min(delay * 2, self._config.reconnect_max_delay)
                continue
            return

    async def close(self) -> None:
        """Stop processing, close the upstream connection and every subscription."""
        await self._stop_workers(drain=False)
        transport = self._transport
        self._transport = None
        if transport is not None:
            await transport.close()
        self.hub.close()
        self._set_state(ConnectorState.TERMINATED)

    # ------------------------------------------------------------------
    # Event processing
    # ------------------------------------------------------------------

    def _start_workers(self) -> None:
        self._queues = [asyncio.Queue() for _ in range(self._config.workers)]
        self._workers = [
            asyncio.create_task(self._worker(queue), name=f"hassrelay-worker-{index}")
            for index, queue in enumerate(self._queues)
        ]

    async def _stop_workers(self, *, drain: bool) -> None:
        if drain:
            for queue in self._queues:
                await queue.join()
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        self._queues = []

    def _dispatch(self, entity: UpstreamEntity) -> None:
        """Route a change to the worker owning its entity id."""
        if not self._queues:
            _logger.debug("No workers running, dropping change for %s", entity.entity_id)
            return
        index = zlib.crc32(entity.entity_id.encode("utf-8")) % len(self._queues)
        self._queues[index].put_nowait(entity)

    async def _worker(self, queue: asyncio.Queue[UpstreamEntity]) -> None:
        while True:
            entity = await queue.get()
            try:
                await self.apply_change(entity)
            except Exception:
                _logger.exception("Failed to apply change for %s", entity.entity_id)
            finally:
                queue.task_done()

    async def apply_change(self, entity: UpstreamEntity) -> Snapshot | None:
        """Decode *entity*, update the cache, then publish to the hub."""
        snapshot = snapshot_from_entity(entity)
        if not snapshot.entity_id:
            _logger.debug("Ignoring state change without entity_id")
            return None
        await self.cache.update(snapshot.entity_id, snapshot)
        delivered = self.hub.publish(snapshot.entity_id, snapshot)
        self.events_processed += 1
        _logger.debug("%s -> %r (%d subscribers)", snapshot.entity_id, snapshot.state, delivered)
        return snapshot

    async def resync(self, entities: Iterable[UpstreamEntity]) -> int:
        """Apply a fresh bulk fetch after reconnecting.

        Entities whose snapshot differs from the cached one go through the
        normal update-and-publish path so live subscribers catch up.
        Returns the number of changed entities.
        """
        changed = 0
        for entity in entities:
            snapshot = snapshot_from_entity(entity)
            if not snapshot.entity_id:
                continue
            if await self.cache.get(snapshot.entity_id) == snapshot:
                continue
            await self.cache.update(snapshot.entity_id, snapshot)
            self.hub.publish(snapshot.entity_id, snapshot)
            changed += 1
        _logger.info("Resynced after reconnect, %d entities changed", changed)
        return changed

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    async def current_state(self) -> list[tuple[str, Snapshot]]:
        return await self.cache.snapshot_all()

    def subscribe(self, entity_ids: Iterable[str] | None = None) -> Subscription:
        """Subscribe to live changes of *entity_ids* (all entities when ``None``)."""
        return self.hub.subscribe(build_filter(entity_ids))
