"""
Reconciler — rebuilds derived counters from their backing rows.

Counters are caches. When a mutation reports PartialFailure the edge or
child row stands as the truth and the counter is left behind; the reconciler
recounts it:

  posts.like_count          ← likes (target_kind=post)
  posts.comment_count       ← comments
  comments.like_count       ← likes (target_kind=comment)
  collections.item_count    ← posts in the collection
  users.follower_count      ← follows (followee)
  users.following_count     ← follows (follower)
  liked_posts               ← likes (target_kind=post) of the user

Each recount is a single UPDATE with a scalar subquery, so it never races an
in-flight increment into a lost update.
"""
import logging
from collections import Counter
from dataclasses import dataclass, field

from opentelemetry import trace

from cliphub.errors import NotFound
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
from cliphub.store import EntityStore, Filter, eq
from cliphub.telemetry import RECONCILE_CORRECTIONS_TOTAL

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

ENTITIES = ("post", "comment", "collection", "user")


async def purge_post_children(store: EntityStore, post_id: str) -> int:
    """Delete the likes, comments and liked-set rows that hang off a post."""
    removed = 0
    after = None
    while True:
        page = await store.query(Comment, [eq("post_id", post_id)], limit=500, after=after)
        ids = [c.comment_id for c in page.items]
        if ids:
            removed += await store.delete_where(
                Like, [eq("target_kind", TARGET_COMMENT), Filter("target_id", "in", ids)]
            )
        if page.next_token is None:
            break
        after = page.next_token
    removed += await store.delete_where(Comment, [eq("post_id", post_id)])
    removed += await store.delete_where(LikedPost, [eq("post_id", post_id)])
    removed += await store.delete_where(
        Like, [eq("target_kind", TARGET_POST), eq("target_id", post_id)]
    )
    return removed


@dataclass
class ReconciliationReport:
    scanned: Counter = field(default_factory=Counter)
    corrected: Counter = field(default_factory=Counter)

    def merge(self, other: "ReconciliationReport") -> None:
        self.scanned.update(other.scanned)
        self.corrected.update(other.corrected)

    def to_dict(self) -> dict:
        return {"scanned": dict(self.scanned), "corrected": dict(self.corrected)}


class Reconciler:
    def __init__(self, store: EntityStore) -> None:
        self._store = store

    async def _fix(self, report: ReconciliationReport, model, ident, counter, source, filters) -> None:
        previous, corrected = await self._store.recount(model, ident, counter, source, filters)
        if previous != corrected:
            label = f"{model.__tablename__}.{counter}"
            report.corrected[label] += 1
            RECONCILE_CORRECTIONS_TOTAL.labels(counter=label).inc()
            logger.warning(
                "Corrected %s for %s: %d → %d", label, ident, previous, corrected
            )

    async def reconcile_post(self, post_id: str) -> ReconciliationReport:
        report = ReconciliationReport()
        if await self._store.find(Post, post_id) is None:
            removed = await purge_post_children(self._store, post_id)
            if removed:
                report.corrected["posts.orphaned_rows"] += removed
                RECONCILE_CORRECTIONS_TOTAL.labels(counter="posts.orphaned_rows").inc(removed)
                logger.warning("Removed %d rows left behind by deleted post %s", removed, post_id)
            return report
        await self._fix(
            report, Post, post_id, "like_count", Like,
            [eq("target_kind", TARGET_POST), eq("target_id", post_id)],
        )
        await self._fix(report, Post, post_id, "comment_count", Comment, [eq("post_id", post_id)])
        report.scanned["post"] += 1
        return report

    async def reconcile_comment(self, comment_id: str) -> ReconciliationReport:
        report = ReconciliationReport()
        comment = await self._store.get(Comment, comment_id)
        if await self._store.find(Post, comment.post_id) is None:
            await self._store.delete_where(
                Like, [eq("target_kind", TARGET_COMMENT), eq("target_id", comment_id)]
            )
            if await self._store.delete(Comment, comment_id):
                report.corrected["comments.orphaned"] += 1
                RECONCILE_CORRECTIONS_TOTAL.labels(counter="comments.orphaned").inc()
                logger.warning("Removed comment %s of deleted post %s", comment_id, comment.post_id)
            return report
        await self._fix(
            report, Comment, comment_id, "like_count", Like,
            [eq("target_kind", TARGET_COMMENT), eq("target_id", comment_id)],
        )
        report.scanned["comment"] += 1
        return report

    async def reconcile_collection(self, collection_id: str) -> ReconciliationReport:
        report = ReconciliationReport()
        await self._fix(
            report, Collection, collection_id, "item_count", Post,
            [eq("collection_id", collection_id)],
        )
        report.scanned["collection"] += 1
        return report

    async def reconcile_user(self, user_id: str) -> ReconciliationReport:
        report = ReconciliationReport()
        await self._fix(report, User, user_id, "follower_count", Follow, [eq("followee_id", user_id)])
        await self._fix(report, User, user_id, "following_count", Follow, [eq("follower_id", user_id)])
        await self._rebuild_liked_set(report, user_id)
        report.scanned["user"] += 1
        return report

    async def _collect(self, model, filters, column: str) -> set[str]:
        values: set[str] = set()
        after = None
        while True:
            page = await self._store.query(model, filters, limit=500, after=after)
            values.update(getattr(row, column) for row in page.items)
            if page.next_token is None:
                return values
            after = page.next_token

    async def _rebuild_liked_set(self, report: ReconciliationReport, user_id: str) -> None:
        truth = await self._collect(
            Like, [eq("user_id", user_id), eq("target_kind", TARGET_POST)], "target_id"
        )
        projected = await self._collect(LikedPost, [eq("user_id", user_id)], "post_id")
        candidates = sorted(truth | projected)
        live = await self._store.get_many(Post, candidates)

        drift = orphaned = 0
        for post_id in candidates:
            edge_key = (TARGET_POST, post_id, user_id)
            if post_id not in live:
                # Neither the like nor its projection outlives the post
                like_gone = await self._store.delete_edge(Like, edge_key)
                row_gone = await self._store.delete_edge(LikedPost, (user_id, post_id))
                orphaned += int(like_gone or row_gone)
                continue
            if (post_id in truth) == (post_id in projected):
                continue
            # Re-read the edge: a toggle may have landed since the scan
            if await self._store.find(Like, edge_key) is not None:
                drift += int(await self._store.insert_edge(LikedPost(user_id=user_id, post_id=post_id)))
            else:
                drift += int(await self._store.delete_edge(LikedPost, (user_id, post_id)))

        if orphaned:
            report.corrected["likes.orphaned"] += orphaned
            RECONCILE_CORRECTIONS_TOTAL.labels(counter="likes.orphaned").inc(orphaned)
            logger.warning("Removed %d likes of deleted posts for %s", orphaned, user_id)
        if drift:
            report.corrected["liked_posts"] += drift
            RECONCILE_CORRECTIONS_TOTAL.labels(counter="liked_posts").inc(drift)
            logger.warning("Rebuilt liked set for %s (%d rows changed)", user_id, drift)

    async def reconcile(self, entity: str, entity_id: str) -> ReconciliationReport:
        """Dispatch a single-entity request (admin call or Kafka message)."""
        handler = {
            "post": self.reconcile_post,
            "comment": self.reconcile_comment,
            "collection": self.reconcile_collection,
            "user": self.reconcile_user,
        }.get(entity)
        if handler is None:
            raise ValueError(f"Unknown entity kind '{entity}'")
        return await handler(entity_id)

    async def sweep(self, batch_size: int = 200) -> ReconciliationReport:
        """Walk every entity in keyset batches and correct any drift."""
        report = ReconciliationReport()
        with tracer.start_as_current_span("reconciler.sweep"):
            for model, handler in (
                (Post, self.reconcile_post),
                (Comment, self.reconcile_comment),
                (Collection, self.reconcile_collection),
                (User, self.reconcile_user),
            ):
                after = None
                while True:
                    page = await self._store.query(model, limit=batch_size, after=after)
                    for obj in page.items:
                        try:
                            report.merge(await handler(getattr(obj, self._pk_name(model))))
                        except NotFound:
                            continue  # deleted since the page was read
                    if page.next_token is None:
                        break
                    after = page.next_token
        logger.info(
            "Reconciliation sweep done: scanned=%s corrected=%s",
            dict(report.scanned),
            dict(report.corrected),
        )
        return report

    @staticmethod
    def _pk_name(model) -> str:
        return {
            Post: "post_id",
            Comment: "comment_id",
            Collection: "collection_id",
            User: "user_id",
        }[model]
