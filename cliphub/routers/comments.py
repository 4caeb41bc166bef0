"""
Comment endpoints:
  DELETE /comments/{id}       — delete your own comment
  POST   /comments/{id}/like  — like a comment
  DELETE /comments/{id}/like  — unlike a comment
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header

from cliphub.auth import get_caller
from cliphub.dependencies import Services, get_services
from cliphub.models import TARGET_COMMENT
from cliphub.schemas import CommentDeleted, LikeResponse

logger = logging.getLogger(__name__)
router = APIRouter()


@router.delete("/{comment_id}", response_model=CommentDeleted)
async def delete_comment(
    comment_id: str,
    caller: str = Depends(get_caller),
    services: Services = Depends(get_services),
):
    count = await services.interactions.delete_comment(comment_id, caller)
    return CommentDeleted(comment_id=comment_id, comment_count=count)


@router.post("/{comment_id}/like", response_model=LikeResponse)
async def like_comment(
    comment_id: str,
    caller: str = Depends(get_caller),
    services: Services = Depends(get_services),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
):
    return await services.interactions.set_like(
        TARGET_COMMENT, comment_id, caller, True, idempotency_key=idempotency_key
    )


@router.delete("/{comment_id}/like", response_model=LikeResponse)
async def unlike_comment(
    comment_id: str,
    caller: str = Depends(get_caller),
    services: Services = Depends(get_services),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
):
    return await services.interactions.set_like(
        TARGET_COMMENT, comment_id, caller, False, idempotency_key=idempotency_key
    )
