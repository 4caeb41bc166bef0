import asyncio

import pytest

from cliphub.services.notifier import ChangeEvent, Notifier, is_valid_resource, resource


async def test_events_arrive_in_order_per_resource():
    notifier = Notifier(queue_size=16)
    sub = notifier.connect()
    notifier.subscribe(sub, "post:p1")

    for count in range(1, 6):
        await notifier.publish("post:p1", "like_count_changed", {"like_count": count})
    await notifier.publish("post:p2", "like_count_changed", {"like_count": 99})

    events = [await sub.next_event(timeout=1) for _ in range(5)]
    assert [e.seq for e in events] == [1, 2, 3, 4, 5]
    assert [e.payload["like_count"] for e in events] == [1, 2, 3, 4, 5]
    with pytest.raises(asyncio.TimeoutError):
        await sub.next_event(timeout=0.05)


async def test_nothing_delivered_after_unsubscribe():
    notifier = Notifier(queue_size=16)
    sub = notifier.connect()
    notifier.subscribe(sub, "thread:p1")
    notifier.subscribe(sub, "feed")

    await notifier.publish("thread:p1", "comment_added", {"text": "queued before unsubscribe"})
    notifier.unsubscribe(sub, "thread:p1")
    await notifier.publish("thread:p1", "comment_added", {"text": "after"})
    await notifier.publish("feed", "post_created", {"post_id": "p2"})

    event = await sub.next_event(timeout=1)
    assert event.resource == "feed"
    assert notifier.subscriber_count("thread:p1") == 0


async def test_slow_subscriber_is_disconnected():
    notifier = Notifier(queue_size=2)
    slow = notifier.connect()
    fast = notifier.connect()
    notifier.subscribe(slow, "post:p1")
    notifier.subscribe(fast, "post:p1")

    await notifier.publish("post:p1", "like_count_changed", {"like_count": 1})
    await fast.next_event(timeout=1)
    await notifier.publish("post:p1", "like_count_changed", {"like_count": 2})
    await fast.next_event(timeout=1)
    await notifier.publish("post:p1", "like_count_changed", {"like_count": 3})

    assert slow.closed and slow.close_reason == "overflow"
    assert await slow.next_event(timeout=1) is None
    assert not fast.closed
    assert (await fast.next_event(timeout=1)).payload["like_count"] == 3
    assert notifier.subscriber_count("post:p1") == 1


async def test_stop_closes_every_connection():
    notifier = Notifier()
    sub = notifier.connect()
    notifier.subscribe(sub, "feed")

    await notifier.stop()

    assert sub.closed and sub.close_reason == "shutdown"
    with pytest.raises(RuntimeError):
        notifier.subscribe(sub, "feed")


class FakeRelay:
    def __init__(self) -> None:
        self.published = []
        self.seq = 100

    async def next_seq(self, name):
        self.seq += 1
        return self.seq

    async def publish(self, message):
        self.published.append(message)

    async def listen(self, handler):
        await asyncio.Event().wait()


async def test_relay_assigns_sequence_and_delivers_on_echo():
    relay = FakeRelay()
    notifier = Notifier(relay=relay)
    sub = notifier.connect()
    notifier.subscribe(sub, "user:u1")

    event = await notifier.publish("user:u1", "profile_updated", {"bio": "hi"})
    assert event.seq == 101
    assert relay.published == [event.to_message()]

    # Delivery happens when the relay echoes the message back to every instance
    await notifier._on_relayed(relay.published[0])
    await notifier._on_relayed({"resource": "user:u1"})
    received = await sub.next_event(timeout=1)
    assert received == ChangeEvent("user:u1", 101, "profile_updated", {"bio": "hi"})


def test_resource_names():
    assert resource("post", "p1") == "post:p1"
    assert is_valid_resource("feed")
    assert is_valid_resource("collection:c1")
    assert not is_valid_resource("media:m1")
    assert not is_valid_resource("post:")
    assert not is_valid_resource("post")
