"""
Post endpoints:
  POST   /posts                    — publish a post from finalized uploads
  GET    /posts/{id}               — fetch a single post
  DELETE /posts/{id}               — delete your own post
  GET    /posts/{id}/like          — is the post liked by the caller?
  POST   /posts/{id}/like          — like (no-op when already liked)
  DELETE /posts/{id}/like          — unlike (no-op when not liked)
  POST   /posts/{id}/like/toggle   — flip the caller's like
  GET    /posts/{id}/comments      — comment thread, newest first
  POST   /posts/{id}/comments      — add a comment
  PATCH  /posts/{id}/collection    — move the post between collections
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Response, status

from cliphub.auth import ensure_same_user, get_caller
from cliphub.dependencies import Services, get_services
from cliphub.models import TARGET_POST
from cliphub.schemas import (
    AssignCollection,
    AssignResponse,
    CommentCreate,
    CommentCreated,
    CommentsResponse,
    LikeResponse,
    PostCreate,
    PostOut,
)

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("", response_model=PostOut, status_code=status.HTTP_201_CREATED)
async def create_post(
    body: PostCreate,
    caller: str = Depends(get_caller),
    services: Services = Depends(get_services),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
):
    ensure_same_user(caller, body.user_id)
    post = await services.interactions.publish_post(
        owner_id=caller,
        media_id=body.media_id,
        title=body.title,
        description=body.description,
        thumbnail_media_id=body.thumbnail_media_id,
        collection_id=body.collection_id,
        new_collection_title=body.new_collection_title,
        idempotency_key=idempotency_key,
    )
    return await services.feed.get_post(post.post_id)


@router.get("/{post_id}", response_model=PostOut)
async def get_post(
    post_id: str,
    caller: str = Depends(get_caller),
    services: Services = Depends(get_services),
):
    return await services.feed.get_post(post_id)


@router.delete("/{post_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_post(
    post_id: str,
    caller: str = Depends(get_caller),
    services: Services = Depends(get_services),
):
    await services.interactions.delete_post(post_id, caller)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ── Likes ─────────────────────────────────────────────────────────────────

@router.get("/{post_id}/like", response_model=LikeResponse)
async def get_like(
    post_id: str,
    caller: str = Depends(get_caller),
    services: Services = Depends(get_services),
):
    return await services.feed.get_like_state(TARGET_POST, post_id, caller)


@router.post("/{post_id}/like", response_model=LikeResponse)
async def like_post(
    post_id: str,
    caller: str = Depends(get_caller),
    services: Services = Depends(get_services),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
):
    return await services.interactions.set_like(
        TARGET_POST, post_id, caller, True, idempotency_key=idempotency_key
    )


@router.delete("/{post_id}/like", response_model=LikeResponse)
async def unlike_post(
    post_id: str,
    caller: str = Depends(get_caller),
    services: Services = Depends(get_services),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
):
    return await services.interactions.set_like(
        TARGET_POST, post_id, caller, False, idempotency_key=idempotency_key
    )


@router.post("/{post_id}/like/toggle", response_model=LikeResponse)
async def toggle_like(
    post_id: str,
    caller: str = Depends(get_caller),
    services: Services = Depends(get_services),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
):
    return await services.interactions.toggle_like(
        TARGET_POST, post_id, caller, idempotency_key=idempotency_key
    )


# ── Comments ──────────────────────────────────────────────────────────────

@router.get("/{post_id}/comments", response_model=CommentsResponse)
async def list_comments(
    post_id: str,
    cursor: Optional[str] = Query(None),
    page_size: Optional[int] = Query(None),
    caller: str = Depends(get_caller),
    services: Services = Depends(get_services),
):
    return await services.feed.get_comments(post_id, cursor, page_size)


@router.post("/{post_id}/comments", response_model=CommentCreated, status_code=status.HTTP_201_CREATED)
async def add_comment(
    post_id: str,
    body: CommentCreate,
    caller: str = Depends(get_caller),
    services: Services = Depends(get_services),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
):
    ensure_same_user(caller, body.user_id)
    result = await services.interactions.add_comment(
        post_id, caller, body.text, idempotency_key=idempotency_key
    )
    return {
        "comment": await services.feed.describe_comment(result.comment),
        "comment_count": result.comment_count,
    }


# ── Collections ───────────────────────────────────────────────────────────

@router.patch("/{post_id}/collection", response_model=AssignResponse)
async def assign_collection(
    post_id: str,
    body: AssignCollection,
    caller: str = Depends(get_caller),
    services: Services = Depends(get_services),
):
    return await services.interactions.assign_to_collection(post_id, body.collection_id, caller)
