"""
Event Streaming - typed watch events and in-memory pub/sub of reconcile
outcomes.

Inbound watch notifications from the store are parsed into a small tagged
union (ResourceCreated, ResourceUpdated, ResourceDeleted) carrying a typed
resource snapshot. Outbound, the controller publishes a ReconcileEvent on
the EventBus after every pass; subscribers (the SSE endpoint, tests waiting
for a resource to settle) consume them without polling.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Optional, Tuple

from models import DevicePluginResource, ReconcileState, utc_timestamp

logger = logging.getLogger(__name__)


# ==================== Inbound Watch Events ====================


@dataclass
class WatchEvent:
    """Base class of parsed watch notifications."""

    resource: DevicePluginResource


@dataclass
class ResourceCreated(WatchEvent):
    """A resource appeared (or was listed when a watch started)."""


@dataclass
class ResourceUpdated(WatchEvent):
    """A resource's spec, metadata or status changed."""


@dataclass
class ResourceDeleted(WatchEvent):
    """A resource was removed from the store."""


_WATCH_EVENT_TYPES = {
    "ADDED": ResourceCreated,
    "MODIFIED": ResourceUpdated,
    "DELETED": ResourceDeleted,
}


def parse_watch_event(event_type: str, obj: Dict[str, Any]) -> WatchEvent:
    """
    Convert a raw (type, object) watch notification into a typed event.

    Raises:
        ValueError: If the event type is unknown
    """
    event_cls = _WATCH_EVENT_TYPES.get(event_type)
    if event_cls is None:
        raise ValueError(f"Unknown watch event type: {event_type}")
    return event_cls(resource=DevicePluginResource.from_object(obj))


# ==================== Reconcile Events ====================


class EventType(Enum):
    """Types of reconcile events."""

    SYNCED = "SYNCED"
    FAILED = "FAILED"
    DELETING = "DELETING"
    GONE = "GONE"


@dataclass
class ReconcileEvent:
    """Event emitted when a reconcile pass finishes."""

    event_type: EventType
    kind: str
    name: str
    state: ReconcileState
    generation: int = 0
    action: str = ""
    message: str = ""
    workload_uid: str = ""
    timestamp: str = field(default_factory=utc_timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "kind": self.kind,
            "name": self.name,
            "state": self.state.value,
            "generation": self.generation,
            "action": self.action,
            "message": self.message,
            "workload_uid": self.workload_uid,
            "timestamp": self.timestamp,
        }

    def to_sse(self) -> str:
        """
        Format the event as an SSE message.

        Returns:
            SSE-formatted string with event type and JSON data lines.
        """
        json_data = json.dumps(self.to_dict())
        return f"event: {self.event_type.value}\ndata: {json_data}\n\n"


EventFilter = Callable[[ReconcileEvent], bool]


class EventSubscription:
    """
    One consumer's view of the bus.

    Iterating yields matching events in publish order and stops once the
    subscription is closed by EventBus.unsubscribe.
    """

    def __init__(self, subscriber_id: str, filter_fn: Optional[EventFilter], size: int):
        self.id = subscriber_id
        self._filter_fn = filter_fn
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=size)

    def matches(self, event: ReconcileEvent) -> bool:
        return self._filter_fn is None or self._filter_fn(event)

    def offer(self, event: Optional[ReconcileEvent]) -> bool:
        """Queue an event (None closes); False if the queue is full."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            return False
        return True

    def __aiter__(self) -> AsyncIterator[ReconcileEvent]:
        return self

    async def __anext__(self) -> ReconcileEvent:
        event = await self._queue.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def wait(
        self,
        predicate: Optional[EventFilter] = None,
        timeout: float = 10.0,
    ) -> Optional[ReconcileEvent]:
        """
        Wait for the next event satisfying ``predicate``.

        Returns:
            The event, or None if the subscription closed first

        Raises:
            asyncio.TimeoutError: If nothing matching arrives within timeout
        """

        async def _first_match() -> Optional[ReconcileEvent]:
            async for event in self:
                if predicate is None or predicate(event):
                    return event
            return None

        return await asyncio.wait_for(_first_match(), timeout=timeout)


class EventBus:
    """
    Fan-out of reconcile events to in-process subscribers.

    Publishing never blocks the controller: a subscriber that falls behind
    loses events rather than stalling reconciliation. The bus also remembers
    the latest event per resource so a new subscriber can start from the
    current picture instead of waiting for the next pass.
    """

    def __init__(self, queue_size: int = 256):
        self._queue_size = queue_size
        self._subscriptions: Dict[str, EventSubscription] = {}
        self._latest: Dict[Tuple[str, str], ReconcileEvent] = {}

    async def publish(self, event: ReconcileEvent) -> None:
        if event.event_type == EventType.GONE:
            self._latest.pop((event.kind, event.name), None)
        else:
            self._latest[(event.kind, event.name)] = event

        for subscription in list(self._subscriptions.values()):
            if not subscription.matches(event):
                continue
            if not subscription.offer(event):
                logger.warning(
                    f"Subscriber {subscription.id} is not keeping up, dropped "
                    f"{event.event_type.value} for {event.kind}/{event.name}"
                )

    def latest(self, kind: str, name: str) -> Optional[ReconcileEvent]:
        """Most recent event of a resource that still exists, if any."""
        return self._latest.get((kind, name))

    async def subscribe(
        self,
        filter_fn: Optional[EventFilter] = None,
        replay: bool = False,
    ) -> Tuple[str, EventSubscription]:
        """
        Start receiving events.

        Args:
            filter_fn: Only events for which this returns True are delivered
            replay: Deliver the latest known event of every matching
                resource first

        Returns:
            Tuple of (subscriber_id, subscription)
        """
        subscription = EventSubscription(str(uuid.uuid4()), filter_fn, self._queue_size)
        if replay:
            for event in self._latest.values():
                if subscription.matches(event):
                    subscription.offer(event)

        self._subscriptions[subscription.id] = subscription
        logger.debug(f"Event subscriber {subscription.id} added")
        return subscription.id, subscription

    async def unsubscribe(self, subscriber_id: str) -> None:
        """Close a subscription; unknown ids are ignored."""
        subscription = self._subscriptions.pop(subscriber_id, None)
        if subscription is None:
            return
        if not subscription.offer(None):
            logger.warning(f"Could not close full subscription {subscriber_id}")
        logger.debug(f"Event subscriber {subscriber_id} removed")

    def subscriber_count(self) -> int:
        return len(self._subscriptions)
