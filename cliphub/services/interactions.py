"""
Interaction Engine — the only writer of derived state.

Every aggregate counter (post like/comment counts, comment like counts,
collection item counts, follower/following counts) and the per-user
liked-set projection is mutated here and nowhere else.

Write pattern for every interaction:

  1. authoritative write   — the edge or child row (Like, Follow, Comment,
                             Post.collection_id), decided by a unique key or a
                             compare-and-set so that exactly one writer wins
  2. derived write(s)      — atomic `c = c + delta` on the counter, paired
                             1:1 with a successful step 1, retried a bounded
                             number of times
  3. fan-out               — notifier events + Kafka interaction event

If step 2 cannot be applied the caller gets PartialFailure: step 1 stands as
the truth and a reconciliation request is published. Mutations run in a
shielded task, so a caller that cancels mid-way never interrupts the pairing
of steps 1 and 2 (and never sees success).

Like toggles are serialised per (user, target) on this instance; different
users or targets proceed in parallel. Idempotency keys are stored in the same
transaction as the step-1 write, so a retried call replays the original
outcome instead of applying a second effect.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from opentelemetry import trace

from cliphub.clients import kafka_producer
from cliphub.config import Settings
from cliphub.errors import (
    CliphubError,
    Conflict,
    Forbidden,
    NotFound,
    PartialFailure,
    Unavailable,
    ValidationError,
)
from cliphub.models import (
    TARGET_COMMENT,
    TARGET_POST,
    Collection,
    Comment,
    Follow,
    Like,
    LikedPost,
    Post,
    User,
)
from cliphub.services.locks import KeyedLocks
from cliphub.services.notifier import FEED_RESOURCE, Notifier, resource
from cliphub.services.reconciliation import purge_post_children
from cliphub.services.storage import IMAGE, VIDEO, StorageGateway
from cliphub.store import EntityStore, IdempotencyMark, eq
from cliphub.telemetry import COUNTER_RETRIES_TOTAL, INTERACTIONS_TOTAL, PARTIAL_FAILURES_TOTAL

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

T = TypeVar("T")

TARGET_MODELS = {TARGET_POST: Post, TARGET_COMMENT: Comment}
COLLECTION_TITLE_MAX = 100


@dataclass
class LikeResult:
    target_kind: str
    target_id: str
    user_id: str
    liked: bool
    like_count: int
    changed: bool


@dataclass
class CommentResult:
    comment: Comment
    comment_count: int
    replayed: bool = False


@dataclass
class AssignResult:
    post_id: str
    collection_id: Optional[str]
    previous_collection_id: Optional[str]
    changed: bool


@dataclass
class FollowResult:
    follower_id: str
    followee_id: str
    following: bool
    changed: bool


class InteractionEngine:
    def __init__(
        self,
        store: EntityStore,
        notifier: Notifier,
        storage: StorageGateway,
        settings: Settings,
    ) -> None:
        self._store = store
        self._notifier = notifier
        self._storage = storage
        self._settings = settings
        self._locks = KeyedLocks()

    # ── Plumbing ──────────────────────────────────────────────────────────

    async def _shielded(self, op: str, coro: Awaitable[T]) -> T:
        """Run a mutation to completion even if the calling request is cancelled."""
        task = asyncio.ensure_future(coro)

        def _log_orphaned(t: asyncio.Task) -> None:
            if not t.cancelled() and t.exception() is not None:
                logger.warning("%s finished after its caller went away: %s", op, t.exception())

        task.add_done_callback(_log_orphaned)
        return await asyncio.shield(task)

    async def _with_retries(self, label: str, step: Callable[[], Awaitable[T]]) -> T:
        attempts = max(1, self._settings.counter_retry_attempts)
        backoff = self._settings.counter_retry_backoff_seconds
        attempt = 1
        while True:
            try:
                return await step()
            except Unavailable:
                if attempt >= attempts:
                    raise
            COUNTER_RETRIES_TOTAL.labels(counter=label).inc()
            logger.info("Retrying %s (attempt %d/%d)", label, attempt + 1, attempts)
            await asyncio.sleep(backoff * (2 ** (attempt - 1)))
            attempt += 1

    async def _bump(self, model, ident: str, counter: str, delta: int) -> int:
        label = f"{model.__tablename__}.{counter}"
        return await self._with_retries(
            label, lambda: self._store.increment(model, ident, counter, delta)
        )

    async def _partial(
        self,
        op: str,
        message: str,
        targets: list[tuple[str, str]],
        details: Optional[dict] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        PARTIAL_FAILURES_TOTAL.labels(operation=op).inc()
        INTERACTIONS_TOTAL.labels(operation=op, outcome="partial").inc()
        logger.error("%s partially applied: %s (targets=%s)", op, message, targets)
        for entity, entity_id in targets:
            await kafka_producer.publish_reconcile_request(entity, entity_id, reason=op)
        raise PartialFailure(
            message,
            {**(details or {}), "reconcile": [f"{e}:{i}" for e, i in targets]},
        ) from cause

    async def _replay(
        self, actor_id: str, key: Optional[str], op: str, target: str
    ) -> Optional[dict]:
        """Outcome recorded under `key`, or None when the key is new."""
        if not key:
            return None
        record = await self._store.get_idempotency(actor_id, key)
        if record is None:
            return None
        result = record.result or {}
        if record.operation != op or result.get("target") != target:
            raise Conflict(
                "Idempotency key was already used for a different operation",
                {"operation": record.operation, "target": result.get("target")},
            )
        INTERACTIONS_TOTAL.labels(operation=op, outcome="replayed").inc()
        return result

    @staticmethod
    def _mark(
        actor_id: str, key: Optional[str], op: str, target: str, result: dict
    ) -> Optional[IdempotencyMark]:
        if not key:
            return None
        return IdempotencyMark(
            actor_id=actor_id, key=key, operation=op, result={**result, "target": target}
        )

    async def _require_profile(self, user_id: str) -> User:
        user = await self._store.find(User, user_id)
        if user is None:
            raise NotFound("Create a profile first", {"entity": "user", "id": user_id})
        return user

    # ── Likes ─────────────────────────────────────────────────────────────

    async def toggle_like(
        self,
        target_kind: str,
        target_id: str,
        user_id: str,
        idempotency_key: Optional[str] = None,
    ) -> LikeResult:
        """Like if not liked, unlike if liked."""
        return await self._shielded(
            "toggle_like",
            self._apply_like(target_kind, target_id, user_id, None, idempotency_key),
        )

    async def set_like(
        self,
        target_kind: str,
        target_id: str,
        user_id: str,
        liked: bool,
        idempotency_key: Optional[str] = None,
    ) -> LikeResult:
        """Bring the edge to the requested state; a no-op when it is already there."""
        return await self._shielded(
            "set_like",
            self._apply_like(target_kind, target_id, user_id, liked, idempotency_key),
        )

    async def _apply_like(
        self,
        kind: str,
        target_id: str,
        user_id: str,
        desired: Optional[bool],
        key: Optional[str],
    ) -> LikeResult:
        model = TARGET_MODELS.get(kind)
        if model is None:
            raise ValidationError(f"Cannot like a '{kind}'")
        op = "toggle_like" if desired is None else ("like" if desired else "unlike")

        with tracer.start_as_current_span(f"interactions.{op}") as span:
            span.set_attribute("target.kind", kind)
            span.set_attribute("target.id", target_id)
            span.set_attribute("user.id", user_id)

            target_ref = resource(kind, target_id)
            async with self._locks.hold((kind, target_id, user_id)):
                replay = await self._replay(user_id, key, op, target_ref)
                if replay is not None:
                    target = await self._store.get(model, target_id)
                    return LikeResult(kind, target_id, user_id, replay["liked"], target.like_count, False)

                target = await self._store.get(model, target_id)
                edge_key = (kind, target_id, user_id)
                currently = await self._store.find(Like, edge_key) is not None
                want = (not currently) if desired is None else desired
                mark = self._mark(user_id, key, op, target_ref, {"liked": want})

                if want == currently:
                    if mark is not None:
                        await self._store.insert(mark.to_record())
                    INTERACTIONS_TOTAL.labels(operation=op, outcome="ok").inc()
                    return LikeResult(kind, target_id, user_id, currently, target.like_count, False)

                if want:
                    applied = await self._store.insert_edge(
                        Like(target_kind=kind, target_id=target_id, user_id=user_id), mark
                    )
                else:
                    applied = await self._store.delete_edge(Like, edge_key, mark)

                if not applied:
                    # Another instance moved the edge first; its delta is its own
                    target = await self._store.get(model, target_id)
                    INTERACTIONS_TOTAL.labels(operation=op, outcome="ok").inc()
                    return LikeResult(kind, target_id, user_id, want, target.like_count, False)

                try:
                    count = await self._bump(model, target_id, "like_count", 1 if want else -1)
                except NotFound:
                    # Target deleted while the edge was being written
                    if want:
                        await self._store.delete_edge(Like, edge_key)
                    raise
                except Unavailable as exc:
                    await self._partial(
                        op,
                        "Like recorded but the like counter could not be updated",
                        [(kind, target_id)],
                        {"liked": want},
                        exc,
                    )

                if kind == TARGET_POST:
                    try:
                        await self._with_retries(
                            "liked_posts", lambda: self._sync_liked_set(user_id, target_id, want)
                        )
                    except Unavailable as exc:
                        await self._partial(
                            op,
                            "Like recorded but the user's liked set could not be updated",
                            [("user", user_id)],
                            {"liked": want, "like_count": count},
                            exc,
                        )

            INTERACTIONS_TOTAL.labels(operation=op, outcome="ok").inc()
            logger.info("%s %s %s by %s → %d", "Liked" if want else "Unliked", kind, target_id, user_id, count)

        payload = {"like_count": count, "user_id": user_id, "liked": want}
        await self._notifier.publish(resource(kind, target_id), "like_count_changed", payload)
        if kind == TARGET_COMMENT:
            await self._notifier.publish(
                resource("thread", target.post_id),
                "comment_like_count_changed",
                {**payload, "comment_id": target_id},
            )
        await kafka_producer.publish_interaction(
            "liked" if want else "unliked", user_id, kind, target_id, like_count=count
        )
        return LikeResult(kind, target_id, user_id, want, count, True)

    async def _sync_liked_set(self, user_id: str, post_id: str, liked: bool) -> None:
        if liked:
            await self._store.insert_edge(LikedPost(user_id=user_id, post_id=post_id))
        else:
            await self._store.delete_edge(LikedPost, (user_id, post_id))

    # ── Comments ──────────────────────────────────────────────────────────

    def _clean_comment(self, text: Optional[str]) -> str:
        cleaned = (text or "").strip()
        if not cleaned:
            raise ValidationError("Comment text must not be empty", {"field": "text"})
        limit = self._settings.comment_max_length
        if len(cleaned) > limit:
            raise ValidationError(
                f"Comment text is limited to {limit} characters",
                {"field": "text", "max_length": limit, "length": len(cleaned)},
            )
        return cleaned

    async def add_comment(
        self,
        post_id: str,
        user_id: str,
        text: str,
        idempotency_key: Optional[str] = None,
    ) -> CommentResult:
        cleaned = self._clean_comment(text)
        return await self._shielded(
            "add_comment", self._add_comment(post_id, user_id, cleaned, idempotency_key)
        )

    async def _add_comment(
        self, post_id: str, user_id: str, text: str, key: Optional[str]
    ) -> CommentResult:
        op = "add_comment"
        with tracer.start_as_current_span("interactions.add_comment") as span:
            span.set_attribute("post.id", post_id)
            span.set_attribute("user.id", user_id)

            replay = await self._replay(user_id, key, op, resource(TARGET_POST, post_id))
            if replay is not None:
                comment = await self._store.get(Comment, replay["comment_id"])
                post = await self._store.get(Post, comment.post_id)
                return CommentResult(comment, post.comment_count, replayed=True)

            await self._require_profile(user_id)
            await self._store.get(Post, post_id)

            comment = Comment(
                comment_id=str(uuid.uuid4()),
                post_id=post_id,
                user_id=user_id,
                text=text,
                like_count=0,
            )
            mark = self._mark(
                user_id, key, op, resource(TARGET_POST, post_id), {"comment_id": comment.comment_id}
            )
            try:
                await self._store.insert(comment, mark)
            except Conflict:
                # Same key landed concurrently: hand back what it produced
                replay = await self._replay(user_id, key, op, resource(TARGET_POST, post_id))
                if replay is None:
                    raise
                comment = await self._store.get(Comment, replay["comment_id"])
                post = await self._store.get(Post, comment.post_id)
                return CommentResult(comment, post.comment_count, replayed=True)

            try:
                count = await self._bump(Post, post_id, "comment_count", 1)
            except NotFound:
                # Post deleted while the comment was being written
                await self._store.delete(Comment, comment.comment_id)
                raise
            except Unavailable as exc:
                await self._partial(
                    op,
                    "Comment posted but the post's comment counter could not be updated",
                    [(TARGET_POST, post_id)],
                    {"comment_id": comment.comment_id},
                    exc,
                )

            INTERACTIONS_TOTAL.labels(operation=op, outcome="ok").inc()
            logger.info("Comment %s added to post %s by %s", comment.comment_id, post_id, user_id)

        await self._notifier.publish(
            resource("thread", post_id),
            "comment_added",
            {
                "comment_id": comment.comment_id,
                "post_id": post_id,
                "user_id": user_id,
                "text": text,
                "created_at": comment.created_at.isoformat(),
            },
        )
        await self._notifier.publish(
            resource(TARGET_POST, post_id), "comment_count_changed", {"comment_count": count}
        )
        await kafka_producer.publish_interaction(
            "commented", user_id, TARGET_POST, post_id, comment_id=comment.comment_id
        )
        return CommentResult(comment, count)

    async def delete_comment(self, comment_id: str, actor_id: str) -> int:
        """Delete your own comment. Returns the post's new comment count."""
        return await self._shielded(
            "delete_comment", self._delete_comment(comment_id, actor_id)
        )

    async def _delete_comment(self, comment_id: str, actor_id: str) -> int:
        op = "delete_comment"
        with tracer.start_as_current_span("interactions.delete_comment") as span:
            span.set_attribute("comment.id", comment_id)
            comment = await self._store.get(Comment, comment_id)
            if comment.user_id != actor_id:
                raise Forbidden("Only the author can delete this comment")

            await self._store.delete_where(
                Like, [eq("target_kind", TARGET_COMMENT), eq("target_id", comment_id)]
            )
            if not await self._store.delete(Comment, comment_id):
                raise NotFound("Comment not found", {"entity": "comment", "id": comment_id})

            try:
                count = await self._bump(Post, comment.post_id, "comment_count", -1)
            except NotFound:
                count = 0  # post removed concurrently; nothing left to count
            except Unavailable as exc:
                await self._partial(
                    op,
                    "Comment deleted but the post's comment counter could not be updated",
                    [(TARGET_POST, comment.post_id)],
                    {"comment_id": comment_id},
                    exc,
                )

            INTERACTIONS_TOTAL.labels(operation=op, outcome="ok").inc()
            logger.info("Comment %s deleted by %s", comment_id, actor_id)

        await self._notifier.publish(
            resource("thread", comment.post_id),
            "comment_deleted",
            {"comment_id": comment_id, "post_id": comment.post_id},
        )
        await self._notifier.publish(
            resource(TARGET_POST, comment.post_id), "comment_count_changed", {"comment_count": count}
        )
        await kafka_producer.publish_interaction(
            "uncommented", actor_id, TARGET_POST, comment.post_id, comment_id=comment_id
        )
        return count

    # ── Collections ───────────────────────────────────────────────────────

    async def create_collection(
        self,
        owner_id: str,
        title: str,
        description: Optional[str] = None,
        cover_media_id: Optional[str] = None,
    ) -> Collection:
        cleaned = (title or "").strip()
        if not cleaned:
            raise ValidationError("Collection title must not be empty", {"field": "title"})
        if len(cleaned) > COLLECTION_TITLE_MAX:
            raise ValidationError(
                f"Collection title is limited to {COLLECTION_TITLE_MAX} characters",
                {"field": "title"},
            )
        await self._require_profile(owner_id)
        if cover_media_id:
            await self._storage.require_ready(cover_media_id, owner_id, IMAGE)

        collection = Collection(
            collection_id=str(uuid.uuid4()),
            user_id=owner_id,
            title=cleaned,
            description=(description or "").strip() or None,
            cover_media_id=cover_media_id,
            item_count=0,
        )
        try:
            await self._store.insert(collection)
        except Conflict as exc:
            raise Conflict(
                f"You already have a collection titled '{cleaned}'", {"title": cleaned}
            ) from exc

        logger.info("Collection %s '%s' created by %s", collection.collection_id, cleaned, owner_id)
        await self._notifier.publish(
            resource("user", owner_id),
            "collection_created",
            {"collection_id": collection.collection_id, "title": cleaned},
        )
        return collection

    async def _collection_by_title(self, owner_id: str, title: str) -> Optional[Collection]:
        page = await self._store.query(
            Collection, [eq("user_id", owner_id), eq("title", title)], limit=1
        )
        return page.items[0] if page.items else None

    async def _resolve_collection(
        self,
        owner_id: str,
        collection_id: Optional[str],
        new_title: Optional[str],
    ) -> Optional[Collection]:
        if collection_id:
            collection = await self._store.get(Collection, collection_id)
            if collection.user_id != owner_id:
                raise Forbidden("Collection belongs to another user")
            return collection
        if new_title and new_title.strip():
            try:
                return await self.create_collection(owner_id, new_title)
            except Conflict:
                existing = await self._collection_by_title(owner_id, new_title.strip())
                if existing is None:
                    raise
                return existing
        return None

    async def assign_to_collection(
        self,
        post_id: str,
        collection_id: Optional[str],
        actor_id: str,
    ) -> AssignResult:
        """Move a post into `collection_id` (or out of any collection with None)."""
        return await self._shielded(
            "assign_to_collection", self._assign(post_id, collection_id, actor_id)
        )

    async def _assign(
        self, post_id: str, collection_id: Optional[str], actor_id: str
    ) -> AssignResult:
        op = "assign_to_collection"
        with tracer.start_as_current_span("interactions.assign_to_collection") as span:
            span.set_attribute("post.id", post_id)
            post = await self._store.get(Post, post_id)
            if post.user_id != actor_id:
                raise Forbidden("Only the owner can move this post")
            if collection_id is not None:
                target = await self._store.get(Collection, collection_id)
                if target.user_id != actor_id:
                    raise Forbidden("Collection belongs to another user")

            previous = post.collection_id
            if previous == collection_id:
                return AssignResult(post_id, collection_id, previous, changed=False)

            # Saga step 1: move the reference (compare-and-set on the old value)
            moved = await self._store.compare_and_set(
                Post, post_id, {"collection_id": collection_id}, {"collection_id": previous}
            )
            if not moved:
                raise Conflict("Post was moved concurrently; reload and retry")

            # Saga step 2: new side +1, compensated by moving the reference back
            if collection_id is not None:
                try:
                    await self._bump(Collection, collection_id, "item_count", 1)
                except (Unavailable, NotFound) as exc:
                    await self._compensate_move(op, post_id, previous, collection_id, exc)

            # Saga step 3: old side -1; past the point of compensation
            if previous is not None:
                try:
                    await self._bump(Collection, previous, "item_count", -1)
                except NotFound:
                    pass  # old collection no longer exists
                except Unavailable as exc:
                    await self._partial(
                        op,
                        "Post moved but the previous collection's count could not be updated",
                        [("collection", previous)],
                        {"post_id": post_id, "collection_id": collection_id},
                        exc,
                    )

            INTERACTIONS_TOTAL.labels(operation=op, outcome="ok").inc()
            logger.info("Post %s moved from %s to %s", post_id, previous, collection_id)

        await self._notifier.publish(
            resource(TARGET_POST, post_id),
            "collection_changed",
            {"collection_id": collection_id, "previous_collection_id": previous},
        )
        if collection_id is not None:
            await self._notifier.publish(
                resource("collection", collection_id), "item_added", {"post_id": post_id}
            )
        if previous is not None:
            await self._notifier.publish(
                resource("collection", previous), "item_removed", {"post_id": post_id}
            )
        return AssignResult(post_id, collection_id, previous, changed=True)

    async def _compensate_move(
        self,
        op: str,
        post_id: str,
        previous: Optional[str],
        attempted: str,
        cause: CliphubError,
    ) -> None:
        try:
            reverted = await self._with_retries(
                "posts.collection_id",
                lambda: self._store.compare_and_set(
                    Post, post_id, {"collection_id": previous}, {"collection_id": attempted}
                ),
            )
        except Unavailable:
            reverted = False
        if reverted:
            INTERACTIONS_TOTAL.labels(operation=op, outcome="error").inc()
            logger.warning("Post %s move to %s rolled back: %s", post_id, attempted, cause)
            raise cause
        targets = [("collection", attempted)]
        if previous is not None:
            targets.append(("collection", previous))
        await self._partial(
            op,
            "Post moved but collection counts could not be updated",
            targets,
            {"post_id": post_id, "collection_id": attempted},
            cause,
        )

    # ── Posts ─────────────────────────────────────────────────────────────

    def _clean_post_fields(self, title: str, description: Optional[str]) -> tuple[str, Optional[str]]:
        cleaned = (title or "").strip()
        if not cleaned:
            raise ValidationError("Post title must not be empty", {"field": "title"})
        if len(cleaned) > self._settings.post_title_max_length:
            raise ValidationError(
                f"Post title is limited to {self._settings.post_title_max_length} characters",
                {"field": "title"},
            )
        desc = (description or "").strip() or None
        if desc and len(desc) > self._settings.post_description_max_length:
            raise ValidationError(
                f"Description is limited to {self._settings.post_description_max_length} characters",
                {"field": "description"},
            )
        return cleaned, desc

    async def publish_post(
        self,
        owner_id: str,
        media_id: str,
        title: str,
        description: Optional[str] = None,
        thumbnail_media_id: Optional[str] = None,
        collection_id: Optional[str] = None,
        new_collection_title: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Post:
        """
        Create a post from a finalized upload. Naming a collection that does
        not exist yet creates it; either way its item count goes up by one.
        """
        cleaned_title, cleaned_desc = self._clean_post_fields(title, description)
        if collection_id and new_collection_title:
            raise ValidationError("Give either collection_id or new_collection_title, not both")
        return await self._shielded(
            "publish_post",
            self._publish_post(
                owner_id,
                media_id,
                cleaned_title,
                cleaned_desc,
                thumbnail_media_id,
                collection_id,
                new_collection_title,
                idempotency_key,
            ),
        )

    async def _publish_post(
        self,
        owner_id: str,
        media_id: str,
        title: str,
        description: Optional[str],
        thumbnail_media_id: Optional[str],
        collection_id: Optional[str],
        new_collection_title: Optional[str],
        key: Optional[str],
    ) -> Post:
        op = "publish_post"
        with tracer.start_as_current_span("interactions.publish_post") as span:
            span.set_attribute("post.user_id", owner_id)

            replay = await self._replay(owner_id, key, op, media_id)
            if replay is not None:
                return await self._store.get(Post, replay["post_id"])

            await self._require_profile(owner_id)
            await self._storage.require_ready(media_id, owner_id, VIDEO)
            if thumbnail_media_id:
                await self._storage.require_ready(thumbnail_media_id, owner_id, IMAGE)
            collection = await self._resolve_collection(owner_id, collection_id, new_collection_title)

            post = Post(
                post_id=str(uuid.uuid4()),
                user_id=owner_id,
                media_id=media_id,
                thumbnail_media_id=thumbnail_media_id,
                title=title,
                description=description,
                collection_id=collection.collection_id if collection else None,
                like_count=0,
                comment_count=0,
            )
            await self._store.insert(
                post, self._mark(owner_id, key, op, media_id, {"post_id": post.post_id})
            )
            span.set_attribute("post.id", post.post_id)

            if collection is not None:
                try:
                    await self._bump(Collection, collection.collection_id, "item_count", 1)
                except Unavailable as exc:
                    await self._partial(
                        op,
                        "Post published but the collection count could not be updated",
                        [("collection", collection.collection_id)],
                        {"post_id": post.post_id},
                        exc,
                    )

            INTERACTIONS_TOTAL.labels(operation=op, outcome="ok").inc()
            logger.info("Post created: %s by user %s", post.post_id, owner_id)

        summary = {"post_id": post.post_id, "user_id": owner_id, "title": title}
        await self._notifier.publish(FEED_RESOURCE, "post_created", summary)
        await self._notifier.publish(resource("user", owner_id), "post_created", summary)
        if collection is not None:
            await self._notifier.publish(
                resource("collection", collection.collection_id), "item_added", {"post_id": post.post_id}
            )
        await kafka_producer.publish_post_event(
            "created", post.post_id, owner_id, collection_id=post.collection_id
        )
        return post

    async def delete_post(self, post_id: str, actor_id: str) -> None:
        await self._shielded("delete_post", self._delete_post(post_id, actor_id))

    async def _delete_post(self, post_id: str, actor_id: str) -> None:
        op = "delete_post"
        with tracer.start_as_current_span("interactions.delete_post") as span:
            span.set_attribute("post.id", post_id)
            post = await self._store.get(Post, post_id)
            if post.user_id != actor_id:
                raise Forbidden("Only the owner can delete this post")

            # Post row first: nothing can attach to a post that is gone
            if not await self._store.delete(Post, post_id):
                raise NotFound("Post not found", {"entity": "post", "id": post_id})

            failed: list[tuple[str, str]] = []
            cause: Optional[Exception] = None
            try:
                await self._with_retries(
                    "posts.children", lambda: purge_post_children(self._store, post_id)
                )
            except Unavailable as exc:
                failed.append((TARGET_POST, post_id))
                cause = exc
            if post.collection_id:
                try:
                    await self._bump(Collection, post.collection_id, "item_count", -1)
                except NotFound:
                    pass
                except Unavailable as exc:
                    failed.append(("collection", post.collection_id))
                    cause = exc
            if failed:
                await self._partial(
                    op,
                    "Post deleted but its comments, likes or collection count were left behind",
                    failed,
                    {"post_id": post_id},
                    cause,
                )

            INTERACTIONS_TOTAL.labels(operation=op, outcome="ok").inc()
            logger.info("Post %s deleted by %s", post_id, actor_id)

        await self._notifier.publish(resource(TARGET_POST, post_id), "post_deleted", {"post_id": post_id})
        await self._notifier.publish(FEED_RESOURCE, "post_deleted", {"post_id": post_id})
        if post.collection_id:
            await self._notifier.publish(
                resource("collection", post.collection_id), "item_removed", {"post_id": post_id}
            )
        await kafka_producer.publish_post_event("deleted", post_id, actor_id)

    # ── Follows ───────────────────────────────────────────────────────────

    async def set_follow(self, follower_id: str, followee_id: str, following: bool) -> FollowResult:
        if follower_id == followee_id:
            raise ValidationError("Cannot follow yourself")
        return await self._shielded(
            "set_follow", self._set_follow(follower_id, followee_id, following)
        )

    async def _set_follow(self, follower_id: str, followee_id: str, following: bool) -> FollowResult:
        op = "follow" if following else "unfollow"
        with tracer.start_as_current_span(f"interactions.{op}"):
            async with self._locks.hold(("follow", follower_id, followee_id)):
                await self._require_profile(follower_id)
                await self._store.get(User, followee_id)

                key = (follower_id, followee_id)
                if following:
                    applied = await self._store.insert_edge(
                        Follow(follower_id=follower_id, followee_id=followee_id)
                    )
                else:
                    applied = await self._store.delete_edge(Follow, key)
                if not applied:
                    return FollowResult(follower_id, followee_id, following, changed=False)

                delta = 1 if following else -1
                failed: list[tuple[str, str]] = []
                cause: Optional[Exception] = None
                for user_id, counter in (
                    (follower_id, "following_count"),
                    (followee_id, "follower_count"),
                ):
                    try:
                        await self._bump(User, user_id, counter, delta)
                    except Unavailable as exc:
                        failed.append(("user", user_id))
                        cause = exc
                if failed:
                    await self._partial(
                        op, "Follow recorded but follower counts could not be updated", failed, cause=cause
                    )

            INTERACTIONS_TOTAL.labels(operation=op, outcome="ok").inc()
            logger.info("%s %s %s", follower_id, "followed" if following else "unfollowed", followee_id)

        await self._notifier.publish(
            resource("user", followee_id),
            "follower_changed",
            {"follower_id": follower_id, "following": following},
        )
        await kafka_producer.publish_interaction(op, follower_id, "user", followee_id)
        return FollowResult(follower_id, followee_id, following, changed=True)
