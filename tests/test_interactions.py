import asyncio
from unittest.mock import AsyncMock

import pytest

from cliphub.clients import kafka_producer
from cliphub.errors import (
    Conflict,
    Forbidden,
    NotFound,
    PartialFailure,
    Unavailable,
    UploadIncomplete,
    ValidationError,
)
from cliphub.models import Collection, Comment, Like, LikedPost, Post, User
from cliphub.services.notifier import resource


@pytest.fixture
def engine(services):
    return services.interactions


@pytest.fixture
async def alice(make_user):
    return await make_user("alice")


@pytest.fixture
async def bob(make_user):
    return await make_user("bob")


@pytest.fixture
def reconcile_requests(monkeypatch):
    mock = AsyncMock()
    monkeypatch.setattr(kafka_producer, "publish_reconcile_request", mock)
    return mock


def failing_increment(store, monkeypatch, should_fail):
    """Make store.increment raise Unavailable whenever should_fail(model, delta) says so."""
    real = store.increment
    calls = []

    async def increment(model, ident, counter, delta, floor=0):
        calls.append((model, ident, counter, delta))
        if should_fail(model, delta, len(calls)):
            raise Unavailable("injected counter failure")
        return await real(model, ident, counter, delta, floor)

    monkeypatch.setattr(store, "increment", increment)
    return calls


# ── Likes ─────────────────────────────────────────────────────────────────

async def test_toggle_twice_restores_count_and_edge(services, engine, alice, bob, make_post):
    post = await make_post("alice")

    first = await engine.toggle_like("post", post.post_id, "bob")
    assert first.liked and first.changed and first.like_count == 1
    assert await services.store.find(Like, ("post", post.post_id, "bob")) is not None
    assert await services.store.find(LikedPost, ("bob", post.post_id)) is not None

    second = await engine.toggle_like("post", post.post_id, "bob")
    assert not second.liked and second.like_count == 0
    assert await services.store.find(Like, ("post", post.post_id, "bob")) is None
    assert await services.store.find(LikedPost, ("bob", post.post_id)) is None
    assert (await services.store.get(Post, post.post_id)).like_count == 0


async def test_concurrent_toggles_by_distinct_users(services, engine, alice, make_post):
    post = await make_post("alice")
    users = [f"fan{i}" for i in range(12)]

    results = await asyncio.gather(*[engine.toggle_like("post", post.post_id, u) for u in users])

    assert all(r.liked for r in results)
    assert sorted(r.like_count for r in results) == list(range(1, len(users) + 1))
    assert (await services.store.get(Post, post.post_id)).like_count == len(users)
    assert await services.store.count(Like) == len(users)


async def test_concurrent_toggles_by_same_user_are_serialised(services, engine, alice, make_post):
    post = await make_post("alice")

    await asyncio.gather(*[engine.toggle_like("post", post.post_id, "bob") for _ in range(4)])

    # Even number of flips: back where we started
    assert (await services.store.get(Post, post.post_id)).like_count == 0
    assert await services.store.find(Like, ("post", post.post_id, "bob")) is None


async def test_set_like_only_acts_on_a_state_change(services, engine, alice, make_post):
    post = await make_post("alice")

    assert (await engine.set_like("post", post.post_id, "bob", True)).changed
    again = await engine.set_like("post", post.post_id, "bob", True)
    assert not again.changed and again.liked and again.like_count == 1

    assert (await engine.set_like("post", post.post_id, "bob", False)).like_count == 0
    noop = await engine.set_like("post", post.post_id, "bob", False)
    assert not noop.changed and noop.like_count == 0


async def test_like_unknown_target(engine):
    with pytest.raises(NotFound):
        await engine.toggle_like("post", "missing", "bob")
    with pytest.raises(ValidationError):
        await engine.toggle_like("user", "alice", "bob")


async def test_toggle_replays_with_the_same_idempotency_key(services, engine, alice, make_post):
    post = await make_post("alice")

    first = await engine.toggle_like("post", post.post_id, "bob", idempotency_key="k1")
    retry = await engine.toggle_like("post", post.post_id, "bob", idempotency_key="k1")

    assert first.liked and retry.liked
    assert not retry.changed
    assert retry.like_count == 1
    assert (await services.store.get(Post, post.post_id)).like_count == 1


async def test_idempotency_key_reused_for_another_operation(engine, alice, make_post):
    post = await make_post("alice")
    await engine.toggle_like("post", post.post_id, "alice", idempotency_key="k1")
    with pytest.raises(Conflict):
        await engine.add_comment(post.post_id, "alice", "hi", idempotency_key="k1")


async def test_idempotency_key_reused_for_another_target(services, engine, alice, bob, make_post):
    first = await make_post("alice")
    second = await make_post("alice")
    await engine.set_like("post", first.post_id, "bob", True, idempotency_key="k1")

    with pytest.raises(Conflict):
        await engine.set_like("post", second.post_id, "bob", True, idempotency_key="k1")
    assert await services.store.find(Like, ("post", second.post_id, "bob")) is None
    assert (await services.store.get(Post, second.post_id)).like_count == 0

    await engine.add_comment(first.post_id, "bob", "hi", idempotency_key="c1")
    with pytest.raises(Conflict):
        await engine.add_comment(second.post_id, "bob", "hi", idempotency_key="c1")
    assert (await services.store.get(Post, second.post_id)).comment_count == 0


async def test_publish_key_reused_for_other_media(services, engine, alice, upload):
    first = await upload("alice")
    second = await upload("alice")
    await engine.publish_post("alice", first, "one", idempotency_key="p1")

    with pytest.raises(Conflict):
        await engine.publish_post("alice", second, "two", idempotency_key="p1")
    assert await services.store.count(Post) == 1


async def test_comment_likes(services, engine, alice, bob, make_post):
    post = await make_post("alice")
    comment = (await engine.add_comment(post.post_id, "bob", "first!")).comment

    result = await engine.toggle_like("comment", comment.comment_id, "alice")
    assert result.liked and result.like_count == 1
    assert (await services.store.get(Comment, comment.comment_id)).like_count == 1
    # Comment likes never enter the liked-post set
    assert await services.store.count(LikedPost) == 0


async def test_counter_failure_retries_then_succeeds(services, engine, alice, make_post, monkeypatch):
    post = await make_post("alice")
    calls = failing_increment(services.store, monkeypatch, lambda model, delta, n: n <= 2)

    result = await engine.toggle_like("post", post.post_id, "bob")

    assert result.like_count == 1
    assert len(calls) == 3


async def test_counter_retries_are_bounded(
    services, engine, alice, make_post, monkeypatch, reconcile_requests
):
    post = await make_post("alice")
    calls = failing_increment(services.store, monkeypatch, lambda model, delta, n: True)

    with pytest.raises(PartialFailure):
        await engine.toggle_like("post", post.post_id, "bob")

    assert len(calls) == services.settings.counter_retry_attempts


async def test_counter_failure_is_partial_and_requests_reconciliation(
    services, engine, alice, make_post, monkeypatch, reconcile_requests
):
    post = await make_post("alice")
    failing_increment(services.store, monkeypatch, lambda model, delta, n: model is Post)

    with pytest.raises(PartialFailure) as info:
        await engine.toggle_like("post", post.post_id, "bob")

    # The edge is the truth; the counter is behind until reconciliation
    assert await services.store.find(Like, ("post", post.post_id, "bob")) is not None
    assert (await services.store.get(Post, post.post_id)).like_count == 0
    assert info.value.details["reconcile"] == [f"post:{post.post_id}"]
    reconcile_requests.assert_awaited_once_with("post", post.post_id, reason="toggle_like")

    report = await services.reconciler.reconcile_post(post.post_id)
    assert report.corrected["posts.like_count"] == 1
    assert (await services.store.get(Post, post.post_id)).like_count == 1


async def test_cancelled_caller_does_not_split_edge_from_counter(services, engine, alice, make_post):
    post = await make_post("alice")

    task = asyncio.create_task(engine.toggle_like("post", post.post_id, "bob"))
    await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    for _ in range(100):
        if (await services.store.get(Post, post.post_id)).like_count == 1:
            break
        await asyncio.sleep(0.02)
    assert (await services.store.get(Post, post.post_id)).like_count == 1
    assert await services.store.find(Like, ("post", post.post_id, "bob")) is not None


# ── Comments ──────────────────────────────────────────────────────────────

async def test_add_comment_validation_and_count(services, engine, alice, bob, make_post):
    post = await make_post("alice")

    with pytest.raises(ValidationError):
        await engine.add_comment(post.post_id, "bob", "")
    with pytest.raises(ValidationError):
        await engine.add_comment(post.post_id, "bob", "   ")
    with pytest.raises(ValidationError):
        await engine.add_comment(post.post_id, "bob", "x" * 501)

    result = await engine.add_comment(post.post_id, "bob", "  nice  ")
    assert result.comment.text == "nice"
    assert result.comment_count == 1
    assert (await services.store.get(Post, post.post_id)).comment_count == 1


async def test_add_comment_requires_existing_post_and_profile(engine, alice):
    with pytest.raises(NotFound):
        await engine.add_comment("missing", "alice", "hello")
    with pytest.raises(NotFound):
        await engine.add_comment("missing", "ghost", "hello")


async def test_add_comment_retry_with_same_key_has_one_effect(services, engine, alice, bob, make_post):
    post = await make_post("alice")

    first = await engine.add_comment(post.post_id, "bob", "hello", idempotency_key="c-1")
    retry = await engine.add_comment(post.post_id, "bob", "hello", idempotency_key="c-1")

    assert retry.replayed
    assert retry.comment.comment_id == first.comment.comment_id
    assert await services.store.count(Comment) == 1
    assert (await services.store.get(Post, post.post_id)).comment_count == 1


async def test_delete_comment_ownership_and_decrement(services, engine, alice, bob, make_post):
    post = await make_post("alice")
    mine = (await engine.add_comment(post.post_id, "bob", "one")).comment
    await engine.add_comment(post.post_id, "alice", "two")
    await engine.toggle_like("comment", mine.comment_id, "alice")

    with pytest.raises(Forbidden):
        await engine.delete_comment(mine.comment_id, "alice")

    assert await engine.delete_comment(mine.comment_id, "bob") == 1
    assert (await services.store.get(Post, post.post_id)).comment_count == 1
    assert await services.store.find(Comment, mine.comment_id) is None
    assert await services.store.find(Like, ("comment", mine.comment_id, "alice")) is None

    with pytest.raises(NotFound):
        await engine.delete_comment(mine.comment_id, "bob")


# ── Posts & collections ───────────────────────────────────────────────────

async def test_publish_with_new_collection_then_reuse(services, engine, alice, make_post):
    first = await make_post("alice", "Take 1", new_collection_title="Demos")
    demos = await services.store.get(Collection, first.collection_id)
    assert demos.title == "Demos" and demos.item_count == 1

    second = await make_post("alice", "Take 2", new_collection_title="Demos")
    assert second.collection_id == demos.collection_id
    assert (await services.store.get(Collection, demos.collection_id)).item_count == 2

    third = await make_post("alice", "Take 3", collection_id=demos.collection_id)
    assert third.collection_id == demos.collection_id
    assert (await services.store.get(Collection, demos.collection_id)).item_count == 3


async def test_publish_validates_media_and_fields(services, engine, alice, bob, upload):
    media_id = await upload("alice")
    image_id = await upload("alice", "image", "image/png")

    with pytest.raises(ValidationError):
        await engine.publish_post("alice", media_id, "")
    with pytest.raises(ValidationError):
        await engine.publish_post("alice", media_id, "t" * 151)
    with pytest.raises(ValidationError):
        await engine.publish_post("alice", image_id, "wrong kind")
    with pytest.raises(Forbidden):
        await engine.publish_post("bob", media_id, "not mine")

    pending = await services.storage.begin_upload("alice", "video", "video/mp4", 10)
    with pytest.raises(UploadIncomplete):
        await engine.publish_post("alice", pending.media_id, "not finalized")


async def test_publish_into_someone_elses_collection(engine, alice, bob, make_post):
    theirs = await engine.create_collection("bob", "Mine")
    with pytest.raises(Forbidden):
        await make_post("alice", collection_id=theirs.collection_id)


async def test_create_collection_duplicate_title(engine, alice):
    await engine.create_collection("alice", "Trips")
    with pytest.raises(Conflict):
        await engine.create_collection("alice", "Trips")
    with pytest.raises(ValidationError):
        await engine.create_collection("alice", "  ")


async def test_assign_moves_counts_between_collections(services, engine, alice, make_post):
    a = await engine.create_collection("alice", "A")
    b = await engine.create_collection("alice", "B")
    post = await make_post("alice", collection_id=a.collection_id)

    moved = await engine.assign_to_collection(post.post_id, b.collection_id, "alice")
    assert moved.changed and moved.previous_collection_id == a.collection_id
    assert (await services.store.get(Collection, a.collection_id)).item_count == 0
    assert (await services.store.get(Collection, b.collection_id)).item_count == 1

    same = await engine.assign_to_collection(post.post_id, b.collection_id, "alice")
    assert not same.changed

    await engine.assign_to_collection(post.post_id, None, "alice")
    assert (await services.store.get(Post, post.post_id)).collection_id is None
    assert (await services.store.get(Collection, b.collection_id)).item_count == 0


async def test_assign_requires_ownership(engine, alice, bob, make_post):
    post = await make_post("alice")
    theirs = await engine.create_collection("bob", "B")
    mine = await engine.create_collection("alice", "A")

    with pytest.raises(Forbidden):
        await engine.assign_to_collection(post.post_id, mine.collection_id, "bob")
    with pytest.raises(Forbidden):
        await engine.assign_to_collection(post.post_id, theirs.collection_id, "alice")


async def test_assign_compensates_when_new_side_fails(services, engine, alice, make_post, monkeypatch):
    a = await engine.create_collection("alice", "A")
    b = await engine.create_collection("alice", "B")
    post = await make_post("alice", collection_id=a.collection_id)
    failing_increment(services.store, monkeypatch, lambda model, delta, n: model is Collection and delta > 0)

    with pytest.raises(Unavailable):
        await engine.assign_to_collection(post.post_id, b.collection_id, "alice")

    assert (await services.store.get(Post, post.post_id)).collection_id == a.collection_id
    assert (await services.store.get(Collection, a.collection_id)).item_count == 1
    assert (await services.store.get(Collection, b.collection_id)).item_count == 0


async def test_assign_old_side_failure_is_partial(
    services, engine, alice, make_post, monkeypatch, reconcile_requests
):
    a = await engine.create_collection("alice", "A")
    b = await engine.create_collection("alice", "B")
    post = await make_post("alice", collection_id=a.collection_id)
    failing_increment(services.store, monkeypatch, lambda model, delta, n: model is Collection and delta < 0)

    with pytest.raises(PartialFailure):
        await engine.assign_to_collection(post.post_id, b.collection_id, "alice")

    assert (await services.store.get(Post, post.post_id)).collection_id == b.collection_id
    reconcile_requests.assert_awaited_once_with("collection", a.collection_id, reason="assign_to_collection")

    await services.reconciler.reconcile_collection(a.collection_id)
    assert (await services.store.get(Collection, a.collection_id)).item_count == 0


async def test_delete_post_cleans_up(services, engine, alice, bob, make_post):
    post = await make_post("alice", new_collection_title="Clips")
    await engine.toggle_like("post", post.post_id, "bob")
    comment = (await engine.add_comment(post.post_id, "bob", "cool")).comment
    await engine.toggle_like("comment", comment.comment_id, "alice")

    with pytest.raises(Forbidden):
        await engine.delete_post(post.post_id, "bob")
    await engine.delete_post(post.post_id, "alice")

    assert await services.store.find(Post, post.post_id) is None
    assert await services.store.count(Comment) == 0
    assert await services.store.count(Like) == 0
    assert await services.store.count(LikedPost) == 0
    assert (await services.store.get(Collection, post.collection_id)).item_count == 0


async def test_like_during_post_deletion_leaves_no_rows(
    services, engine, alice, bob, make_post, monkeypatch
):
    post = await make_post("alice")
    store = services.store
    real = store.delete_where
    outcomes = []

    async def delete_where(model, filters):
        if not outcomes:
            try:
                outcomes.append(await engine.toggle_like("post", post.post_id, "bob"))
            except NotFound as exc:
                outcomes.append(exc)
        return await real(model, filters)

    monkeypatch.setattr(store, "delete_where", delete_where)
    await engine.delete_post(post.post_id, "alice")

    assert isinstance(outcomes[0], NotFound)
    assert await store.count(Like) == 0
    assert await store.count(LikedPost) == 0


async def test_post_deleted_while_like_counter_updates(
    services, engine, alice, bob, make_post, monkeypatch
):
    post = await make_post("alice")
    store = services.store
    real = store.increment

    async def increment(model, ident, counter, delta, floor=0):
        if model is Post and counter == "like_count":
            await engine.delete_post(post.post_id, "alice")
        return await real(model, ident, counter, delta, floor)

    monkeypatch.setattr(store, "increment", increment)
    with pytest.raises(NotFound):
        await engine.toggle_like("post", post.post_id, "bob")

    assert await store.find(Post, post.post_id) is None
    assert await store.count(Like) == 0
    assert await store.count(LikedPost) == 0


# ── Follows ───────────────────────────────────────────────────────────────

async def test_follow_and_unfollow_move_both_counters(services, engine, alice, bob):
    assert (await engine.set_follow("alice", "bob", True)).changed
    assert not (await engine.set_follow("alice", "bob", True)).changed
    assert (await services.store.get(User, "alice")).following_count == 1
    assert (await services.store.get(User, "bob")).follower_count == 1

    await engine.set_follow("alice", "bob", False)
    assert (await services.store.get(User, "alice")).following_count == 0
    assert (await services.store.get(User, "bob")).follower_count == 0

    with pytest.raises(ValidationError):
        await engine.set_follow("alice", "alice", True)
    with pytest.raises(NotFound):
        await engine.set_follow("alice", "nobody", True)


# ── Fan-out ───────────────────────────────────────────────────────────────

async def test_mutations_notify_subscribers(services, engine, alice, make_post):
    post = await make_post("alice")
    sub = services.notifier.connect()
    services.notifier.subscribe(sub, resource("post", post.post_id))
    services.notifier.subscribe(sub, resource("thread", post.post_id))

    await engine.toggle_like("post", post.post_id, "bob")
    await engine.add_comment(post.post_id, "alice", "thanks")

    events = [await sub.next_event(timeout=1) for _ in range(3)]
    assert [e.type for e in events] == ["like_count_changed", "comment_added", "comment_count_changed"]
    assert events[0].payload["like_count"] == 1
    assert events[1].payload["text"] == "thanks"
