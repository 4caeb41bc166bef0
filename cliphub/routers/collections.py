"""
Collection endpoints:
  POST /collections              — create a named collection
  GET  /collections/{id}         — collection detail
  GET  /collections/{id}/posts   — posts in the collection, newest first
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from cliphub.auth import ensure_same_user, get_caller
from cliphub.dependencies import Services, get_services
from cliphub.schemas import CollectionCreate, CollectionOut, FeedResponse

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("", response_model=CollectionOut, status_code=status.HTTP_201_CREATED)
async def create_collection(
    body: CollectionCreate,
    caller: str = Depends(get_caller),
    services: Services = Depends(get_services),
):
    ensure_same_user(caller, body.user_id)
    return await services.interactions.create_collection(
        caller, body.title, description=body.description, cover_media_id=body.cover_media_id
    )


@router.get("/{collection_id}", response_model=CollectionOut)
async def get_collection(
    collection_id: str,
    caller: str = Depends(get_caller),
    services: Services = Depends(get_services),
):
    return await services.feed.get_collection(collection_id)


@router.get("/{collection_id}/posts", response_model=FeedResponse)
async def get_collection_posts(
    collection_id: str,
    cursor: Optional[str] = Query(None),
    page_size: Optional[int] = Query(None),
    caller: str = Depends(get_caller),
    services: Services = Depends(get_services),
):
    return await services.feed.get_collection_posts(collection_id, cursor, page_size)
