"""
Feed Service — read-only listings.

Every listing is newest-first by (created_at, id) with keyset pagination, so
a client walking the continuation cursors while new posts are written sees
each post that existed when it started at most once and never skips one:
new posts land ahead of the position the cursor points at.

Listing pipeline:
  1. decode + verify the cursor for this listing's scope
  2. one keyset query against the Entity Store (page_size + 1 rows)
  3. author snapshots — LRU cache, one batch fill for the page's misses
  4. media / thumbnail / avatar URLs — one batch lookup in the Storage Gateway
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from opentelemetry import trace

from cliphub.config import Settings
from cliphub.errors import ValidationError
from cliphub.models import TARGET_COMMENT, TARGET_POST, Collection, Comment, Like, LikedPost, Post, User
from cliphub.services.author_cache import AuthorCache, AuthorSnapshot
from cliphub.services.cursor import CursorCodec
from cliphub.services.storage import StorageGateway
from cliphub.store import EntityStore, SortKey, eq
from cliphub.telemetry import FEED_LATENCY

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

POST_ORDER = (SortKey("created_at"), SortKey("post_id"))
COMMENT_ORDER = (SortKey("created_at"), SortKey("comment_id"))
LIKED_ORDER = (SortKey("created_at"), SortKey("post_id"))
COLLECTION_ORDER = (SortKey("created_at", descending=False), SortKey("collection_id", descending=False))


@dataclass
class Author:
    user_id: str
    handle: Optional[str]
    display_name: Optional[str]
    is_verified: bool
    avatar_url: Optional[str] = None


@dataclass
class FeedItem:
    post_id: str
    user_id: str
    title: str
    description: Optional[str]
    collection_id: Optional[str]
    media_id: str
    media_url: Optional[str]
    thumbnail_url: Optional[str]
    like_count: int
    comment_count: int
    created_at: datetime
    author: Author


@dataclass
class CommentItem:
    comment_id: str
    post_id: str
    user_id: str
    text: str
    like_count: int
    created_at: datetime
    author: Author


@dataclass
class FeedPage:
    items: list = field(default_factory=list)
    next_cursor: Optional[str] = None


@dataclass
class LikeState:
    target_kind: str
    target_id: str
    user_id: str
    liked: bool
    like_count: int


class FeedService:
    def __init__(
        self,
        store: EntityStore,
        storage: StorageGateway,
        authors: AuthorCache,
        settings: Settings,
    ) -> None:
        self._store = store
        self._storage = storage
        self._authors = authors
        self._settings = settings
        self._cursors = CursorCodec(settings.cursor_secret, settings.cursor_ttl_seconds)

    def _page_size(self, page_size: Optional[int]) -> int:
        if page_size is None:
            return self._settings.feed_page_size
        limit = self._settings.feed_max_page_size
        if page_size < 1 or page_size > limit:
            raise ValidationError(
                f"page_size must be between 1 and {limit}",
                {"field": "page_size", "max": limit},
            )
        return page_size

    # ── Hydration ─────────────────────────────────────────────────────────

    @staticmethod
    def _author(snapshot: AuthorSnapshot, urls: dict[str, str]) -> Author:
        return Author(
            user_id=snapshot.user_id,
            handle=snapshot.handle,
            display_name=snapshot.display_name,
            is_verified=snapshot.is_verified,
            avatar_url=urls.get(snapshot.avatar_media_id) if snapshot.avatar_media_id else None,
        )

    async def _hydrate_posts(self, posts: list[Post]) -> list[FeedItem]:
        if not posts:
            return []
        authors = await self._authors.get_many([p.user_id for p in posts])
        media_ids = [p.media_id for p in posts] + [p.thumbnail_media_id for p in posts]
        media_ids += [a.avatar_media_id for a in authors.values()]
        urls = await self._storage.get_urls(media_ids)
        return [
            FeedItem(
                post_id=p.post_id,
                user_id=p.user_id,
                title=p.title,
                description=p.description,
                collection_id=p.collection_id,
                media_id=p.media_id,
                media_url=urls.get(p.media_id),
                thumbnail_url=urls.get(p.thumbnail_media_id) if p.thumbnail_media_id else None,
                like_count=p.like_count,
                comment_count=p.comment_count,
                created_at=p.created_at,
                author=self._author(authors[p.user_id], urls),
            )
            for p in posts
        ]

    async def _hydrate_comments(self, comments: list[Comment]) -> list[CommentItem]:
        if not comments:
            return []
        authors = await self._authors.get_many([c.user_id for c in comments])
        urls = await self._storage.get_urls([a.avatar_media_id for a in authors.values()])
        return [
            CommentItem(
                comment_id=c.comment_id,
                post_id=c.post_id,
                user_id=c.user_id,
                text=c.text,
                like_count=c.like_count,
                created_at=c.created_at,
                author=self._author(authors[c.user_id], urls),
            )
            for c in comments
        ]

    async def describe_comment(self, comment: Comment) -> CommentItem:
        return (await self._hydrate_comments([comment]))[0]

    async def _list_posts(
        self,
        listing: str,
        scope: str,
        filters: list,
        cursor: Optional[str],
        page_size: Optional[int],
    ) -> FeedPage:
        size = self._page_size(page_size)
        after = self._cursors.decode(cursor, scope)
        with FEED_LATENCY.labels(listing=listing).time():
            with tracer.start_as_current_span(f"feed.{listing}") as span:
                span.set_attribute("feed.scope", scope)
                page = await self._store.query(Post, filters, POST_ORDER, limit=size, after=after)
                items = await self._hydrate_posts(page.items)
                span.set_attribute("feed.items", len(items))
        next_cursor = self._cursors.encode(scope, page.next_token) if page.next_token else None
        return FeedPage(items=items, next_cursor=next_cursor)

    # ── Listings ──────────────────────────────────────────────────────────

    async def get_feed(self, cursor: Optional[str] = None, page_size: Optional[int] = None) -> FeedPage:
        """Global newest-first feed."""
        return await self._list_posts("feed", "feed", [], cursor, page_size)

    async def get_user_posts(
        self, user_id: str, cursor: Optional[str] = None, page_size: Optional[int] = None
    ) -> FeedPage:
        await self._store.get(User, user_id)
        return await self._list_posts(
            "user", f"user:{user_id}", [eq("user_id", user_id)], cursor, page_size
        )

    async def get_collection_posts(
        self, collection_id: str, cursor: Optional[str] = None, page_size: Optional[int] = None
    ) -> FeedPage:
        await self._store.get(Collection, collection_id)
        return await self._list_posts(
            "collection",
            f"collection:{collection_id}",
            [eq("collection_id", collection_id)],
            cursor,
            page_size,
        )

    async def get_user_collections(self, user_id: str) -> list[Collection]:
        await self._store.get(User, user_id)
        collections: list[Collection] = []
        after = None
        while True:
            page = await self._store.query(
                Collection, [eq("user_id", user_id)], COLLECTION_ORDER, limit=100, after=after
            )
            collections.extend(page.items)
            if page.next_token is None:
                return collections
            after = page.next_token

    async def get_collection(self, collection_id: str) -> Collection:
        return await self._store.get(Collection, collection_id)

    async def get_post(self, post_id: str) -> FeedItem:
        post = await self._store.get(Post, post_id)
        return (await self._hydrate_posts([post]))[0]

    async def get_comments(
        self, post_id: str, cursor: Optional[str] = None, page_size: Optional[int] = None
    ) -> FeedPage:
        size = self._page_size(page_size)
        scope = f"comments:{post_id}"
        after = self._cursors.decode(cursor, scope)
        await self._store.get(Post, post_id)
        with FEED_LATENCY.labels(listing="comments").time():
            page = await self._store.query(
                Comment, [eq("post_id", post_id)], COMMENT_ORDER, limit=size, after=after
            )
            items = await self._hydrate_comments(page.items)
        next_cursor = self._cursors.encode(scope, page.next_token) if page.next_token else None
        return FeedPage(items=items, next_cursor=next_cursor)

    async def get_like_state(self, target_kind: str, target_id: str, user_id: str) -> LikeState:
        model = {TARGET_POST: Post, TARGET_COMMENT: Comment}.get(target_kind)
        if model is None:
            raise ValidationError(f"Cannot like a '{target_kind}'")
        target = await self._store.get(model, target_id)
        edge = await self._store.find(Like, (target_kind, target_id, user_id))
        return LikeState(target_kind, target_id, user_id, edge is not None, target.like_count)

    async def get_liked_posts(
        self, user_id: str, cursor: Optional[str] = None, page_size: Optional[int] = None
    ) -> FeedPage:
        """Posts in the user's liked set, most recently liked first."""
        size = self._page_size(page_size)
        scope = f"liked:{user_id}"
        after = self._cursors.decode(cursor, scope)
        await self._store.get(User, user_id)
        with FEED_LATENCY.labels(listing="liked").time():
            page = await self._store.query(
                LikedPost, [eq("user_id", user_id)], LIKED_ORDER, limit=size, after=after
            )
            posts = await self._store.get_many(Post, [row.post_id for row in page.items])
            # Posts deleted since they were liked drop out of the page
            ordered = [posts[row.post_id] for row in page.items if row.post_id in posts]
            items = await self._hydrate_posts(ordered)
        next_cursor = self._cursors.encode(scope, page.next_token) if page.next_token else None
        return FeedPage(items=items, next_cursor=next_cursor)
