"""Per-connection relay session.

A session subscribes to the hub *before* it reads the cache, sends the
matching cached snapshots, then forwards live events until the client goes
away. Subscribing first means no change can slip between the snapshot and
the live stream; the price is that a change may arrive twice (once in the
snapshot burst, once live). Clients treat every message as an overwrite
keyed by ``entity_id``, so duplicates are harmless.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Protocol

from hassrelay.exceptions import DownstreamClosed, DownstreamSendError
from hassrelay.filters import build_filter
from hassrelay.hub import BroadcastHub, Subscription
from hassrelay.state.store import EntityStateCache

_logger = logging.getLogger(__name__)


class DownstreamTransport(Protocol):
    """Message-oriented connection to one downstream client."""

    async def send(self, message: str) -> None:
        """Send one text message; raises :class:`DownstreamSendError`."""
        ...

    async def recv(self) -> str | None:
        """Return the next text message, or ``None`` once the peer closed."""
        ...

    async def close(self) -> None: ...


@dataclass
class SessionStats:
    snapshot_sent: int = 0
    live_sent: int = 0
    dropped: int = 0

    @property
    def sent(self) -> int:
        return self.snapshot_sent + self.live_sent


class RelaySession:
    """Relay cached and live entity state to one downstream client."""

    def __init__(
        self,
        hub: BroadcastHub,
        cache: EntityStateCache,
        transport: DownstreamTransport,
        entity_ids: frozenset[str] | None = None,
        *,
        peer: str = "unknown",
    ) -> None:
        self._hub = hub
        self._cache = cache
        self._transport = transport
        self._entity_ids = entity_ids
        self.peer = peer
        self.stats = SessionStats()

    async def run(self) -> SessionStats:
        """Run the session to completion.

        Send failures and client disconnects end this session only; they are
        logged and never raised.
        """
        subscription = self._hub.subscribe(build_filter(self._entity_ids))
        _logger.debug(
            "Session %s subscribed (%s)",
            self.peer,
            "all entities" if self._entity_ids is None else f"{len(self._entity_ids)} entities",
        )
        try:
            await self._send_initial_state()
            await self._relay(subscription)
        except DownstreamSendError as exc:
            _logger.info("Sending to %s failed: %s", self.peer, exc)
        except DownstreamClosed:
            _logger.debug("Client %s closed during send", self.peer)
        finally:
            self._hub.unsubscribe(subscription)
            self.stats.dropped = subscription.dropped
            _logger.info(
                "Client connection %s closed (%d sent, %d dropped)",
                self.peer,
                self.stats.sent,
                self.stats.dropped,
            )
        return self.stats

    async def _send_initial_state(self) -> None:
        for entity_id, snapshot in await self._cache.snapshot_all():
            if self._entity_ids is not None and entity_id not in self._entity_ids:
                continue
            await self._transport.send(snapshot.message)
            self.stats.snapshot_sent += 1
        _logger.debug("Sent %d cached entities to %s", self.stats.snapshot_sent, self.peer)

    async def _relay(self, subscription: Subscription) -> None:
        forward = asyncio.create_task(self._forward(subscription))
        watch = asyncio.create_task(self._watch_peer())
        try:
            done, _pending = await asyncio.wait({forward, watch}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            forward.cancel()
            watch.cancel()
            await asyncio.gather(forward, watch, return_exceptions=True)
        for task in done:
            task.result()

    async def _forward(self, subscription: Subscription) -> None:
        async for event in subscription:
            await self._transport.send(event.snapshot.message)
            self.stats.live_sent += 1
        _logger.debug("Subscription for %s closed by the hub", self.peer)

    async def _watch_peer(self) -> None:
        # Clients only listen; anything they send is ignored.
        while (message := await self._transport.recv()) is not None:
            _logger.debug("Ignoring message from %s: %.80s", self.peer, message)
