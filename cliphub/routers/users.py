"""
User endpoints:
  POST   /users                   — create the caller's profile
  PATCH  /users/me                — edit the caller's profile
  GET    /users/{id}              — fetch a profile
  GET    /users/{id}/posts        — the user's posts, newest first
  GET    /users/{id}/collections  — the user's collections
  GET    /users/{id}/liked        — posts the user liked, most recent first
  POST   /users/{id}/follow       — follow the user
  DELETE /users/{id}/follow       — unfollow the user
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from cliphub.auth import ensure_same_user, get_caller
from cliphub.dependencies import Services, get_services
from cliphub.schemas import (
    CollectionsResponse,
    FeedResponse,
    FollowResponse,
    UserCreate,
    UserResponse,
    UserUpdate,
)

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def create_user(
    body: UserCreate,
    caller: str = Depends(get_caller),
    services: Services = Depends(get_services),
):
    """Register the caller's profile; the user id is the identity provider subject."""
    ensure_same_user(caller, body.user_id)
    return await services.profiles.create_profile(
        caller,
        body.handle,
        display_name=body.display_name,
        bio=body.bio,
        avatar_media_id=body.avatar_media_id,
    )


@router.patch("/me", response_model=UserResponse)
async def update_me(
    body: UserUpdate,
    caller: str = Depends(get_caller),
    services: Services = Depends(get_services),
):
    return await services.profiles.update_profile(caller, body.model_dump(exclude_unset=True))


@router.get("/{user_id}", response_model=UserResponse)
async def get_user(
    user_id: str,
    caller: str = Depends(get_caller),
    services: Services = Depends(get_services),
):
    return await services.profiles.get_profile(user_id)


@router.get("/{user_id}/posts", response_model=FeedResponse)
async def get_user_posts(
    user_id: str,
    cursor: Optional[str] = Query(None),
    page_size: Optional[int] = Query(None),
    caller: str = Depends(get_caller),
    services: Services = Depends(get_services),
):
    return await services.feed.get_user_posts(user_id, cursor, page_size)


@router.get("/{user_id}/collections", response_model=CollectionsResponse)
async def get_user_collections(
    user_id: str,
    caller: str = Depends(get_caller),
    services: Services = Depends(get_services),
):
    items = await services.feed.get_user_collections(user_id)
    return {"user_id": user_id, "items": items}


@router.get("/{user_id}/liked", response_model=FeedResponse)
async def get_liked_posts(
    user_id: str,
    cursor: Optional[str] = Query(None),
    page_size: Optional[int] = Query(None),
    caller: str = Depends(get_caller),
    services: Services = Depends(get_services),
):
    return await services.feed.get_liked_posts(user_id, cursor, page_size)


@router.post("/{user_id}/follow", response_model=FollowResponse)
async def follow_user(
    user_id: str,
    caller: str = Depends(get_caller),
    services: Services = Depends(get_services),
):
    return await services.interactions.set_follow(caller, user_id, True)


@router.delete("/{user_id}/follow", response_model=FollowResponse)
async def unfollow_user(
    user_id: str,
    caller: str = Depends(get_caller),
    services: Services = Depends(get_services),
):
    return await services.interactions.set_follow(caller, user_id, False)
