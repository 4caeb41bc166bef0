"""
Media endpoints (Storage Gateway):
  POST /media/uploads          — reserve a media id and get a pre-signed PUT
  POST /media/{id}/finalize    — confirm the bytes landed; returns the URL
  GET  /media/{id}             — fetch URL for a finalized media object

Upload flow for a post:
  1. POST /media/uploads {kind: video, content_type, size_bytes}
  2. PUT the bytes to upload_target.url with the given headers
  3. POST /media/{media_id}/finalize
  4. (same for the thumbnail with kind=image)
  5. POST /posts {media_id, thumbnail_media_id, title, ...}
"""
import logging

from fastapi import APIRouter, Depends, status

from cliphub.auth import get_caller
from cliphub.dependencies import Services, get_services
from cliphub.schemas import MediaUrlResponse, UploadRequest, UploadResponse

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/uploads", response_model=UploadResponse, status_code=status.HTTP_201_CREATED)
async def begin_upload(
    body: UploadRequest,
    caller: str = Depends(get_caller),
    services: Services = Depends(get_services),
):
    return await services.storage.begin_upload(caller, body.kind, body.content_type, body.size_bytes)


@router.post("/{media_id}/finalize", response_model=MediaUrlResponse)
async def finalize_upload(
    media_id: str,
    caller: str = Depends(get_caller),
    services: Services = Depends(get_services),
):
    url = await services.storage.finalize_upload(media_id, caller)
    return MediaUrlResponse(media_id=media_id, url=url)


@router.get("/{media_id}", response_model=MediaUrlResponse)
async def get_media(
    media_id: str,
    caller: str = Depends(get_caller),
    services: Services = Depends(get_services),
):
    return MediaUrlResponse(media_id=media_id, url=await services.storage.get_url(media_id))
