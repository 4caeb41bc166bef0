"""
SQLAlchemy ORM models.

Tables:
  users         — profiles + follower/following counters
  follows       — social graph edges (follower → followee)
  posts         — post metadata (media bytes live in MinIO)
  comments      — comment threads, one row per comment
  collections   — named groupings of a user's posts
  likes         — like edges on posts and comments (source of truth)
  liked_posts   — per-user liked-set projection, rebuilt from likes
  media         — upload bookkeeping for the Storage Gateway
  idempotency   — client idempotency keys and the outcome they produced

Counters (like_count, comment_count, item_count, follower_count,
following_count) are caches derived from edge / child rows. Only the
Interaction Engine and the Reconciler write them.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects import mysql
from sqlalchemy.orm import Mapped, mapped_column

from cliphub.database import Base

# Microsecond precision — (created_at, id) is the keyset sort key for feeds
Timestamp = DateTime().with_variant(mysql.DATETIME(fsp=6), "mysql")

TARGET_POST = "post"
TARGET_COMMENT = "comment"

MEDIA_PENDING = "pending"
MEDIA_READY = "ready"


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC — stored as-is in DATETIME columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(Base):
    __tablename__ = "users"

    # Subject id issued by the identity provider
    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    # Unique, immutable once set
    handle: Mapped[Optional[str]] = mapped_column(String(30), unique=True)
    display_name: Mapped[Optional[str]] = mapped_column(String(100))
    avatar_media_id: Mapped[Optional[str]] = mapped_column(String(36))
    bio: Mapped[Optional[str]] = mapped_column(Text)
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    follower_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    following_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(Timestamp, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        Timestamp, default=utcnow, onupdate=utcnow, nullable=False
    )


class Follow(Base):
    __tablename__ = "follows"

    follower_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("users.user_id"), primary_key=True
    )
    followee_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("users.user_id"), primary_key=True
    )
    created_at: Mapped[datetime] = mapped_column(Timestamp, default=utcnow, nullable=False)

    __table_args__ = (
        # "Who follows user X?" — follower_count reconciliation
        Index("idx_followee", "followee_id"),
    )


class Collection(Base):
    __tablename__ = "collections"

    collection_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("users.user_id"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    cover_media_id: Mapped[Optional[str]] = mapped_column(String(36))
    item_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(Timestamp, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "title", name="uq_collection_owner_title"),
    )


class Post(Base):
    __tablename__ = "posts"

    post_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("users.user_id"), nullable=False
    )
    media_id: Mapped[str] = mapped_column(String(36), nullable=False)
    thumbnail_media_id: Mapped[Optional[str]] = mapped_column(String(36))
    title: Mapped[str] = mapped_column(String(150), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    collection_id: Mapped[Optional[str]] = mapped_column(String(36))
    like_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    comment_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(Timestamp, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_posts_created", "created_at", "post_id"),
        Index("idx_posts_user", "user_id", "created_at"),
        Index("idx_posts_collection", "collection_id", "created_at"),
    )


class Comment(Base):
    __tablename__ = "comments"

    comment_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    post_id: Mapped[str] = mapped_column(String(36), nullable=False)
    user_id: Mapped[str] = mapped_column(
        String(128), ForeignKey("users.user_id"), nullable=False
    )
    text: Mapped[str] = mapped_column(Text, nullable=False)
    like_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(Timestamp, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_comments_post", "post_id", "created_at"),
    )


class Like(Base):
    __tablename__ = "likes"

    target_kind: Mapped[str] = mapped_column(String(10), primary_key=True)
    target_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(Timestamp, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_likes_user", "user_id", "target_kind"),
    )


class LikedPost(Base):
    __tablename__ = "liked_posts"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    post_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(Timestamp, default=utcnow, nullable=False)


class Media(Base):
    __tablename__ = "media"

    media_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    owner_id: Mapped[str] = mapped_column(String(128), nullable=False)
    kind: Mapped[str] = mapped_column(String(10), nullable=False)  # 'video' | 'image'
    content_type: Mapped[str] = mapped_column(String(100), nullable=False)
    declared_size: Mapped[int] = mapped_column(Integer, nullable=False)
    object_key: Mapped[str] = mapped_column(String(500), nullable=False)
    status: Mapped[str] = mapped_column(String(10), default=MEDIA_PENDING, nullable=False)
    size_bytes: Mapped[Optional[int]] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(Timestamp, default=utcnow, nullable=False)
    finalized_at: Mapped[Optional[datetime]] = mapped_column(Timestamp)


class IdempotencyRecord(Base):
    __tablename__ = "idempotency"

    actor_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    operation: Mapped[str] = mapped_column(String(64), nullable=False)
    result: Mapped[Optional[dict]] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(Timestamp, default=utcnow, nullable=False)
