"""
Author snapshot cache for feed rendering.

Every feed item carries a small snapshot of its author. Profiles change
rarely and feeds are read constantly, so snapshots are served from a bounded
read-through LRU with a TTL; misses for a whole page are filled with one
batch query.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from cliphub.models import User
from cliphub.services.cache import LRUCache
from cliphub.store import EntityStore
from cliphub.telemetry import AUTHOR_CACHE_TOTAL

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthorSnapshot:
    user_id: str
    handle: Optional[str]
    display_name: Optional[str]
    is_verified: bool
    avatar_media_id: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "AuthorSnapshot":
        return cls(
            user_id=user.user_id,
            handle=user.handle,
            display_name=user.display_name,
            is_verified=bool(user.is_verified),
            avatar_media_id=user.avatar_media_id,
        )

    @classmethod
    def unknown(cls, user_id: str) -> "AuthorSnapshot":
        return cls(user_id=user_id, handle=None, display_name=None, is_verified=False)


class AuthorCache:
    def __init__(self, store: EntityStore, maxsize: int = 1024, ttl: float = 60.0) -> None:
        self._store = store
        self._cache: LRUCache[AuthorSnapshot] = LRUCache(maxsize=maxsize, ttl=ttl)

    def __len__(self) -> int:
        return len(self._cache)

    async def get_many(self, user_ids: list[str]) -> dict[str, AuthorSnapshot]:
        found: dict[str, AuthorSnapshot] = {}
        missing: list[str] = []
        for user_id in dict.fromkeys(user_ids):
            snapshot = self._cache.get(user_id)
            if snapshot is None:
                missing.append(user_id)
            else:
                found[user_id] = snapshot
        AUTHOR_CACHE_TOTAL.labels(result="hit").inc(len(found))

        if missing:
            AUTHOR_CACHE_TOTAL.labels(result="miss").inc(len(missing))
            users = await self._store.get_many(User, missing)
            for user_id in missing:
                user = users.get(user_id)
                # Deleted / never-created authors are not cached
                if user is None:
                    found[user_id] = AuthorSnapshot.unknown(user_id)
                    continue
                snapshot = AuthorSnapshot.from_user(user)
                self._cache.set(user_id, snapshot)
                found[user_id] = snapshot
        return found

    async def get(self, user_id: str) -> AuthorSnapshot:
        return (await self.get_many([user_id]))[user_id]

    def invalidate(self, user_id: str) -> None:
        self._cache.invalidate(user_id)
        logger.debug("Author snapshot for %s invalidated", user_id)
