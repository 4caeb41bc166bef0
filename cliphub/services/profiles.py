"""
User profiles: signup and profile edits.

The user id is the identity provider's subject. Handles are unique,
lowercase, 3–30 characters of [a-z0-9_.] and cannot change once set.
Follower / following counts are not writable here — they belong to the
Interaction Engine.
"""
import logging
import re
from typing import Any, Optional

from cliphub.errors import Conflict, ValidationError
from cliphub.models import User
from cliphub.services.author_cache import AuthorCache
from cliphub.services.notifier import Notifier, resource
from cliphub.services.storage import IMAGE, StorageGateway
from cliphub.store import EntityStore

logger = logging.getLogger(__name__)

HANDLE_RE = re.compile(r"^[a-z0-9_.]{3,30}$")
DISPLAY_NAME_MAX = 100
BIO_MAX = 500
EDITABLE = ("handle", "display_name", "bio", "avatar_media_id")


def validate_handle(handle: str) -> str:
    cleaned = (handle or "").strip().lower()
    if not HANDLE_RE.match(cleaned):
        raise ValidationError(
            "Handle must be 3-30 characters of a-z, 0-9, '_' or '.'", {"field": "handle"}
        )
    return cleaned


class ProfileService:
    def __init__(
        self,
        store: EntityStore,
        storage: StorageGateway,
        authors: AuthorCache,
        notifier: Notifier,
    ) -> None:
        self._store = store
        self._storage = storage
        self._authors = authors
        self._notifier = notifier

    def _check_fields(self, display_name: Optional[str], bio: Optional[str]) -> None:
        if display_name is not None and len(display_name) > DISPLAY_NAME_MAX:
            raise ValidationError(
                f"Display name is limited to {DISPLAY_NAME_MAX} characters", {"field": "display_name"}
            )
        if bio is not None and len(bio) > BIO_MAX:
            raise ValidationError(f"Bio is limited to {BIO_MAX} characters", {"field": "bio"})

    async def create_profile(
        self,
        user_id: str,
        handle: str,
        display_name: Optional[str] = None,
        bio: Optional[str] = None,
        avatar_media_id: Optional[str] = None,
    ) -> User:
        cleaned = validate_handle(handle)
        self._check_fields(display_name, bio)
        if await self._store.find(User, user_id) is not None:
            raise Conflict("Profile already exists", {"user_id": user_id})
        if avatar_media_id:
            await self._storage.require_ready(avatar_media_id, user_id, IMAGE)

        user = User(
            user_id=user_id,
            handle=cleaned,
            display_name=display_name or cleaned,
            bio=bio,
            avatar_media_id=avatar_media_id,
            is_verified=False,
            follower_count=0,
            following_count=0,
        )
        try:
            await self._store.insert(user)
        except Conflict as exc:
            raise Conflict(f"Handle '{cleaned}' is already taken", {"handle": cleaned}) from exc
        logger.info("Created user %s (id=%s)", cleaned, user_id)
        return user

    async def get_profile(self, user_id: str) -> User:
        return await self._store.get(User, user_id)

    async def update_profile(self, user_id: str, changes: dict[str, Any]) -> User:
        """Apply the editable fields present in `changes`."""
        unknown = set(changes) - set(EDITABLE)
        if unknown:
            raise ValidationError("Fields are not editable", {"fields": sorted(unknown)})
        user = await self._store.get(User, user_id)

        values = dict(changes)
        if "handle" in values:
            handle = validate_handle(values["handle"])
            if user.handle and handle != user.handle:
                raise ValidationError("Handle cannot be changed once set", {"field": "handle"})
            if handle == user.handle:
                values.pop("handle")
            else:
                values["handle"] = handle
        self._check_fields(values.get("display_name"), values.get("bio"))
        if values.get("avatar_media_id"):
            await self._storage.require_ready(values["avatar_media_id"], user_id, IMAGE)
        if not values:
            return user

        try:
            await self._store.update(User, user_id, values)
        except Conflict as exc:
            raise Conflict("Handle is already taken", {"handle": values.get("handle")}) from exc
        self._authors.invalidate(user_id)
        user = await self._store.get(User, user_id)
        logger.info("Profile %s updated (%s)", user_id, ", ".join(sorted(values)))
        await self._notifier.publish(
            resource("user", user_id), "profile_updated", {k: getattr(user, k) for k in values}
        )
        return user
