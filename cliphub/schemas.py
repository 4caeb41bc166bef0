"""
Pydantic request / response schemas for the API layer.
Kept separate from ORM models to avoid coupling transport to storage.

Length limits on text fields are enforced by the services (so the same
rules hold for every caller); the schemas only pin types and shapes.
"""
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field


# ──────────────────────────── Users ───────────────────────────────────────

class UserCreate(BaseModel):
    # Optional; when present it must be the caller
    user_id: Optional[str] = None
    handle: str
    display_name: Optional[str] = None
    bio: Optional[str] = None
    avatar_media_id: Optional[str] = None


class UserUpdate(BaseModel):
    handle: Optional[str] = None
    display_name: Optional[str] = None
    bio: Optional[str] = None
    avatar_media_id: Optional[str] = None


class UserResponse(BaseModel):
    user_id: str
    handle: Optional[str]
    display_name: Optional[str]
    bio: Optional[str] = None
    avatar_media_id: Optional[str] = None
    is_verified: bool
    follower_count: int
    following_count: int
    created_at: datetime

    class Config:
        from_attributes = True


class FollowResponse(BaseModel):
    follower_id: str
    followee_id: str
    following: bool

    class Config:
        from_attributes = True


# ──────────────────────────── Posts ───────────────────────────────────────

class PostCreate(BaseModel):
    user_id: Optional[str] = None
    # Finalized uploads from POST /media/uploads → /media/{id}/finalize
    media_id: str
    thumbnail_media_id: Optional[str] = None
    title: str
    description: Optional[str] = None
    collection_id: Optional[str] = None
    # Creates the collection on the fly (or reuses one with this title)
    new_collection_title: Optional[str] = None


class AuthorOut(BaseModel):
    user_id: str
    handle: Optional[str]
    display_name: Optional[str]
    is_verified: bool
    avatar_url: Optional[str] = None

    class Config:
        from_attributes = True


class PostOut(BaseModel):
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
    author: AuthorOut

    class Config:
        from_attributes = True


class FeedResponse(BaseModel):
    items: list[PostOut]
    next_cursor: Optional[str] = None


class LikeResponse(BaseModel):
    target_kind: str
    target_id: str
    liked: bool
    like_count: int

    class Config:
        from_attributes = True


# ──────────────────────────── Comments ────────────────────────────────────

class CommentCreate(BaseModel):
    user_id: Optional[str] = None
    text: str


class CommentOut(BaseModel):
    comment_id: str
    post_id: str
    user_id: str
    text: str
    like_count: int
    created_at: datetime
    author: Optional[AuthorOut] = None

    class Config:
        from_attributes = True


class CommentCreated(BaseModel):
    comment: CommentOut
    comment_count: int


class CommentDeleted(BaseModel):
    comment_id: str
    comment_count: int


class CommentsResponse(BaseModel):
    items: list[CommentOut]
    next_cursor: Optional[str] = None


# ──────────────────────────── Collections ─────────────────────────────────

class CollectionCreate(BaseModel):
    user_id: Optional[str] = None
    title: str
    description: Optional[str] = None
    cover_media_id: Optional[str] = None


class CollectionOut(BaseModel):
    collection_id: str
    user_id: str
    title: str
    description: Optional[str]
    cover_media_id: Optional[str]
    item_count: int
    created_at: datetime

    class Config:
        from_attributes = True


class CollectionsResponse(BaseModel):
    user_id: str
    items: list[CollectionOut]


class AssignCollection(BaseModel):
    # None takes the post out of its collection
    collection_id: Optional[str] = None


class AssignResponse(BaseModel):
    post_id: str
    collection_id: Optional[str]
    previous_collection_id: Optional[str]

    class Config:
        from_attributes = True


# ──────────────────────────── Media ───────────────────────────────────────

class UploadRequest(BaseModel):
    kind: Literal["video", "image"]
    content_type: str
    size_bytes: int = Field(..., gt=0)


class UploadTargetOut(BaseModel):
    url: str
    method: str
    headers: dict[str, str]
    expires_in: int

    class Config:
        from_attributes = True


class UploadResponse(BaseModel):
    media_id: str
    upload_target: UploadTargetOut

    class Config:
        from_attributes = True


class MediaUrlResponse(BaseModel):
    media_id: str
    url: str


# ──────────────────────────── Admin ───────────────────────────────────────

class ReconcileRequest(BaseModel):
    # Both set → one entity; both empty → full sweep
    entity: Optional[Literal["post", "comment", "collection", "user"]] = None
    id: Optional[str] = None
    batch_size: Optional[int] = Field(None, ge=1, le=1000)


class ReconcileResponse(BaseModel):
    scanned: dict[str, int]
    corrected: dict[str, int]
