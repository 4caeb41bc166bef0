"""
Feed retrieval endpoint — GET /feed?cursor=<opaque>&page_size=<n>

Newest-first global listing. The cursor returned with each page continues
exactly where that page ended; new posts published meanwhile show up on the
next fresh load, never as duplicates or gaps in the walk.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from cliphub.auth import get_caller
from cliphub.dependencies import Services, get_services
from cliphub.schemas import FeedResponse

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("", response_model=FeedResponse)
async def get_feed(
    cursor: Optional[str] = Query(None),
    page_size: Optional[int] = Query(None),
    caller: str = Depends(get_caller),
    services: Services = Depends(get_services),
):
    return await services.feed.get_feed(cursor, page_size)
