"""Broadcast hub fanning out state events to filtered subscriptions.

``publish`` is synchronous and never waits on a subscriber: each
subscription owns its own buffer and a full buffer is resolved by the
subscription's :class:`OverflowPolicy`, never by blocking the publisher.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import deque
from dataclasses import dataclass
from enum import StrEnum

from hassrelay.exceptions import SubscriptionClosed
from hassrelay.filters import EntityFilter
from hassrelay.models.snapshot import Snapshot

_logger = logging.getLogger(__name__)


class OverflowPolicy(StrEnum):
    """What a subscription does when its buffer is full."""

    DROP_OLDEST = "drop_oldest"
    """Evict the oldest buffered event to make room for the new one."""
    DROP_NEWEST = "drop_newest"
    """Discard the incoming event and keep the buffer as is."""
    UNBOUNDED = "unbounded"
    """Never drop; memory grows with the backlog."""


@dataclass(frozen=True, slots=True)
class StateEvent:
    """One upstream change as seen by subscribers."""

    entity_id: str
    snapshot: Snapshot


class Subscription:
    """A registered observer with its own delivery buffer.

    Use ``await subscription.get()`` or ``async for event in subscription``.
    Both keep returning buffered events after the subscription is closed and
    stop once the buffer is drained.
    """

    def __init__(
        self,
        subscription_id: int,
        entity_filter: EntityFilter | None,
        *,
        maxsize: int,
        policy: OverflowPolicy,
    ) -> None:
        self.id = subscription_id
        self.filter = entity_filter
        self.policy = policy
        self.maxsize = 0 if policy is OverflowPolicy.UNBOUNDED else maxsize
        self.dropped = 0
        self._buffer: deque[StateEvent] = deque()
        self._wakeup = asyncio.Event()
        self._closed = False

    def __repr__(self) -> str:
        return (
            f"<Subscription id={self.id} policy={self.policy.value} "
            f"pending={len(self._buffer)} dropped={self.dropped} closed={self._closed}>"
        )

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        """Number of buffered events not yet consumed."""
        return len(self._buffer)

    def accepts(self, event: StateEvent) -> bool:
        if self.filter is None:
            return True
        return self.filter(event.entity_id, event.snapshot)

    def offer(self, event: StateEvent) -> bool:
        """Append *event* to the buffer, applying the overflow policy.

        Returns ``False`` when the event was not buffered.
        """
        if self._closed:
            return False
        if self.maxsize and len(self._buffer) >= self.maxsize:
            self.dropped += 1
            if self.policy is OverflowPolicy.DROP_NEWEST:
                _logger.debug("Subscription %s full, dropping %s", self.id, event.entity_id)
                return False
            evicted = self._buffer.popleft()
            _logger.debug("Subscription %s full, evicting %s", self.id, evicted.entity_id)
        self._buffer.append(event)
        self._wakeup.set()
        return True

    def close(self) -> None:
        self._closed = True
        self._wakeup.set()

    async def get(self) -> StateEvent:
        """Wait for the next event.

        Raises :class:`SubscriptionClosed` once the subscription is closed
        and every buffered event has been consumed.
        """
        while not self._buffer:
            if self._closed:
                raise SubscriptionClosed(f"Subscription {self.id} is closed")
            self._wakeup.clear()
            await self._wakeup.wait()
        return self._buffer.popleft()

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> StateEvent:
        try:
            return await self.get()
        except SubscriptionClosed:
            raise StopAsyncIteration from None


class BroadcastHub:
    """Registry of subscriptions and the fan-out path.

    Parameters
    ----------
    max_queue : int
        Default buffer size for new subscriptions. ``0`` means unbounded.
    policy : OverflowPolicy
        Default overflow policy for new subscriptions.
    """

    def __init__(
        self,
        *,
        max_queue: int = 1024,
        policy: OverflowPolicy = OverflowPolicy.DROP_OLDEST,
    ) -> None:
        self._max_queue = max_queue
        self._policy = policy
        self._ids = itertools.count(1)
        self._subscriptions: dict[int, Subscription] = {}

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(
        self,
        entity_filter: EntityFilter | None = None,
        *,
        max_queue: int | None = None,
        policy: OverflowPolicy | None = None,
    ) -> Subscription:
        """Register a new subscription.

        Without *entity_filter* the subscription receives every event.
        """
        subscription = Subscription(
            next(self._ids),
            entity_filter,
            maxsize=self._max_queue if max_queue is None else max_queue,
            policy=self._policy if policy is None else policy,
        )
        self._subscriptions[subscription.id] = subscription
        _logger.debug("Registered %r (%d active)", subscription, len(self._subscriptions))
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Remove *subscription*; buffered events can still be drained."""
        removed = self._subscriptions.pop(subscription.id, None)
        subscription.close()
        if removed is not None:
            _logger.debug("Removed %r (%d active)", subscription, len(self._subscriptions))

    def publish(self, entity_id: str, snapshot: Snapshot) -> int:
        """Deliver one event to every matching subscription.

        Each filter is evaluated exactly once. A filter that raises only
        costs its own subscription the event. Returns the number of
        subscriptions that buffered the event.
        """
        event = StateEvent(entity_id=entity_id, snapshot=snapshot)
        delivered = 0
        for subscription in list(self._subscriptions.values()):
            try:
                matched = subscription.accepts(event)
            except Exception:
                _logger.warning("Filter of subscription %s failed for %s", subscription.id, entity_id, exc_info=True)
                continue
            if matched and subscription.offer(event):
                delivered += 1
        _logger.debug("Published %s to %d/%d subscriptions", entity_id, delivered, len(self._subscriptions))
        return delivered

    def close(self) -> None:
        """Close every subscription (used on shutdown)."""
        subscriptions = list(self._subscriptions.values())
        self._subscriptions.clear()
        for subscription in subscriptions:
            subscription.close()
