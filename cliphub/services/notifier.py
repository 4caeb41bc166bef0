"""
Realtime Notifier — server push of incremental changes.

Model
  • One logical channel per resource id: `post:{id}`, `thread:{post_id}`
    (a comment thread), `comment:{id}`, `collection:{id}`, `user:{id}` and
    the global `feed`.
  • Every event carries a per-resource sequence number. A subscriber receives
    the events of one resource in the order they were enqueued; there is no
    ordering across resources.
  • Subscriptions end explicitly (unsubscribe) or with the connection.
    Nothing is delivered for a resource after it is unsubscribed, and nothing
    is redelivered after a disconnect — a reconnecting client refetches
    through the Feed Service and resubscribes.
  • Each connection has a bounded queue. A connection that falls behind is
    disconnected instead of silently skipping events.

With the Redis relay enabled, sequence numbers come from Redis and events are
published to a pub/sub channel that every API instance listens on; the local
hub stays the only delivery point.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from cliphub.telemetry import REALTIME_EVENTS_TOTAL, REALTIME_SUBSCRIPTIONS

logger = logging.getLogger(__name__)

RESOURCE_KINDS = ("post", "thread", "comment", "collection", "user")
FEED_RESOURCE = "feed"


def resource(kind: str, ident: str) -> str:
    return f"{kind}:{ident}"


def is_valid_resource(name: str) -> bool:
    if name == FEED_RESOURCE:
        return True
    kind, sep, ident = name.partition(":")
    return bool(sep) and kind in RESOURCE_KINDS and bool(ident)


@dataclass(frozen=True)
class ChangeEvent:
    resource: str
    seq: int
    type: str
    payload: dict[str, Any] = field(default_factory=dict)

    def to_message(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "resource": self.resource,
            "seq": self.seq,
            "payload": self.payload,
        }

    @classmethod
    def from_message(cls, msg: dict[str, Any]) -> "ChangeEvent":
        return cls(
            resource=msg["resource"],
            seq=int(msg["seq"]),
            type=msg["type"],
            payload=msg.get("payload") or {},
        )


class Subscriber:
    """One client connection and the resources it listens to."""

    def __init__(self, queue_size: int) -> None:
        self.id = uuid.uuid4().hex
        self.resources: set[str] = set()
        self.closed = False
        self.close_reason: Optional[str] = None
        self._queue: asyncio.Queue[Optional[ChangeEvent]] = asyncio.Queue(maxsize=queue_size)

    def _offer(self, event: ChangeEvent) -> bool:
        try:
            self._queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            return False

    def _close(self, reason: str) -> None:
        if self.closed:
            return
        self.closed = True
        self.close_reason = reason
        self.resources.clear()
        # Drop anything undelivered and wake the reader
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    async def next_event(self, timeout: Optional[float] = None) -> Optional[ChangeEvent]:
        """
        Next event for a still-subscribed resource. Returns None once the
        subscriber is closed; raises asyncio.TimeoutError when `timeout`
        elapses with nothing to deliver.
        """
        while True:
            if self.closed and self._queue.empty():
                return None
            event = await asyncio.wait_for(self._queue.get(), timeout=timeout)
            if event is None:
                return None
            if event.resource in self.resources:
                return event


class Notifier:
    def __init__(self, queue_size: int = 256, relay=None) -> None:  # noqa: ANN001
        self._queue_size = queue_size
        self._relay = relay
        self._subscribers: dict[str, Subscriber] = {}
        self._by_resource: dict[str, set[str]] = {}
        self._seq: dict[str, int] = {}
        self._listener: Optional[asyncio.Task] = None

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._relay is not None and self._listener is None:
            self._listener = asyncio.create_task(self._relay.listen(self._on_relayed))
            logger.info("Realtime relay listener started")

    async def stop(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        for sub in list(self._subscribers.values()):
            self.disconnect(sub, reason="shutdown")

    # ── Subscriptions ─────────────────────────────────────────────────────

    def connect(self) -> Subscriber:
        sub = Subscriber(self._queue_size)
        self._subscribers[sub.id] = sub
        return sub

    def subscribe(self, sub: Subscriber, name: str) -> None:
        if sub.closed:
            raise RuntimeError("Subscriber is closed")
        if name in sub.resources:
            return
        sub.resources.add(name)
        self._by_resource.setdefault(name, set()).add(sub.id)
        REALTIME_SUBSCRIPTIONS.inc()

    def unsubscribe(self, sub: Subscriber, name: str) -> None:
        if name not in sub.resources:
            return
        sub.resources.discard(name)
        self._forget(sub.id, name)
        REALTIME_SUBSCRIPTIONS.dec()

    def disconnect(self, sub: Subscriber, reason: str = "disconnected") -> None:
        for name in list(sub.resources):
            self.unsubscribe(sub, name)
        self._subscribers.pop(sub.id, None)
        sub._close(reason)

    def subscriber_count(self, name: str) -> int:
        return len(self._by_resource.get(name, ()))

    def _forget(self, sub_id: str, name: str) -> None:
        ids = self._by_resource.get(name)
        if ids is None:
            return
        ids.discard(sub_id)
        if not ids:
            del self._by_resource[name]

    # ── Publishing ────────────────────────────────────────────────────────

    async def publish(self, name: str, event_type: str, payload: dict[str, Any]) -> ChangeEvent:
        """Enqueue a change event for every subscriber of `name`."""
        if self._relay is not None:
            try:
                seq = await self._relay.next_seq(name)
                event = ChangeEvent(name, seq, event_type, payload)
                await self._relay.publish(event.to_message())
                return event
            except Exception as exc:
                logger.warning("Realtime relay unavailable (%s) — delivering locally only", exc)
        seq = self._seq.get(name, 0) + 1
        self._seq[name] = seq
        event = ChangeEvent(name, seq, event_type, payload)
        self.deliver(event)
        return event

    def deliver(self, event: ChangeEvent) -> int:
        delivered = 0
        for sub_id in list(self._by_resource.get(event.resource, ())):
            sub = self._subscribers.get(sub_id)
            if sub is None:
                continue
            if sub._offer(event):
                delivered += 1
            else:
                logger.info(
                    "Subscriber %s fell behind on %s — disconnecting", sub.id, event.resource
                )
                self.disconnect(sub, reason="overflow")
        REALTIME_EVENTS_TOTAL.inc(delivered)
        return delivered

    async def _on_relayed(self, message: dict[str, Any]) -> None:
        try:
            event = ChangeEvent.from_message(message)
        except (KeyError, TypeError, ValueError):
            logger.warning("Malformed realtime relay message: %s", message)
            return
        self.deliver(event)
