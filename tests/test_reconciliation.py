import pytest

from cliphub.models import Collection, Comment, Like, LikedPost, Post, User
from cliphub.workers.reconciler import process_message


@pytest.fixture
async def world(services, make_user, make_post):
    """alice posts into a collection; bob likes, comments and follows."""
    await make_user("alice")
    await make_user("bob")
    post = await make_post("alice", new_collection_title="Demos")
    engine = services.interactions
    await engine.toggle_like("post", post.post_id, "bob")
    comment = (await engine.add_comment(post.post_id, "bob", "nice")).comment
    await engine.toggle_like("comment", comment.comment_id, "alice")
    await engine.set_follow("bob", "alice", True)
    return post, comment


async def corrupt(store, model, ident, **values):
    await store.update(model, ident, values)


async def test_consistent_state_needs_no_corrections(services, world):
    report = await services.reconciler.sweep(batch_size=1)

    assert sum(report.corrected.values()) == 0
    assert report.scanned == {"post": 1, "comment": 1, "collection": 1, "user": 2}


async def test_sweep_restores_every_counter(services, world):
    post, comment = world
    store = services.store
    await corrupt(store, Post, post.post_id, like_count=42, comment_count=0)
    await corrupt(store, Comment, comment.comment_id, like_count=7)
    await corrupt(store, Collection, post.collection_id, item_count=3)
    await corrupt(store, User, "alice", follower_count=0)
    await store.delete_edge(LikedPost, ("bob", post.post_id))

    report = await services.reconciler.sweep()

    assert report.corrected["posts.like_count"] == 1
    assert report.corrected["posts.comment_count"] == 1
    assert report.corrected["comments.like_count"] == 1
    assert report.corrected["collections.item_count"] == 1
    assert report.corrected["users.follower_count"] == 1
    assert report.corrected["liked_posts"] == 1

    fixed = await store.get(Post, post.post_id)
    assert (fixed.like_count, fixed.comment_count) == (1, 1)
    assert (await store.get(Comment, comment.comment_id)).like_count == 1
    assert (await store.get(Collection, post.collection_id)).item_count == 1
    assert (await store.get(User, "alice")).follower_count == 1
    assert await store.find(LikedPost, ("bob", post.post_id)) is not None


async def test_liked_set_drops_rows_without_a_like(services, world):
    post, _ = world
    await services.store.insert_edge(LikedPost(user_id="alice", post_id=post.post_id))

    report = await services.reconciler.reconcile("user", "alice")

    assert report.corrected["liked_posts"] == 1
    assert await services.store.find(LikedPost, ("alice", post.post_id)) is None


async def test_liked_set_drops_likes_of_deleted_posts(services, world):
    post, _ = world
    store = services.store
    await store.delete(Post, post.post_id)

    report = await services.reconciler.reconcile("user", "bob")

    assert report.corrected["likes.orphaned"] == 1
    assert "liked_posts" not in report.corrected
    assert await store.find(Like, ("post", post.post_id, "bob")) is None
    assert await store.find(LikedPost, ("bob", post.post_id)) is None


async def test_liked_set_rechecks_the_edge_before_inserting(services, world, monkeypatch):
    post, _ = world
    store = services.store
    await store.delete_edge(LikedPost, ("bob", post.post_id))
    real = store.find

    async def find(model, ident):
        if model is Like:
            # bob unlikes between the scan and the repair
            await store.delete_edge(Like, ident)
        return await real(model, ident)

    monkeypatch.setattr(store, "find", find)
    await services.reconciler.reconcile("user", "bob")

    assert await real(LikedPost, ("bob", post.post_id)) is None


async def test_reconciling_a_deleted_post_purges_its_rows(services, world):
    post, comment = world
    store = services.store
    await store.delete(Post, post.post_id)

    report = await services.reconciler.reconcile("post", post.post_id)

    assert report.corrected["posts.orphaned_rows"] == 4
    assert await store.count(Comment) == 0
    assert await store.count(Like) == 0
    assert await store.count(LikedPost) == 0


async def test_sweep_removes_comments_of_deleted_posts(services, world):
    post, comment = world
    store = services.store
    await store.delete(Post, post.post_id)

    report = await services.reconciler.sweep()

    assert report.corrected["comments.orphaned"] == 1
    assert await store.find(Comment, comment.comment_id) is None
    assert await store.find(Like, ("comment", comment.comment_id, "alice")) is None
    assert await store.find(Like, ("post", post.post_id, "bob")) is None
    assert await store.count(LikedPost) == 0


async def test_unknown_entity_kind(services):
    with pytest.raises(ValueError):
        await services.reconciler.reconcile("media", "x")


async def test_worker_applies_requests_and_skips_malformed(services, world):
    post, _ = world
    await corrupt(services.store, Post, post.post_id, like_count=9)

    await process_message({"entity": "post", "id": post.post_id, "reason": "toggle_like"}, services.reconciler)
    assert (await services.store.get(Post, post.post_id)).like_count == 1

    await process_message({"entity": "media", "id": "x"}, services.reconciler)
    await process_message({"entity": "post"}, services.reconciler)
