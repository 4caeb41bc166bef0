"""
Storage Gateway — binary media behind upload / fetch-URL operations.

Upload lifecycle:
  1. begin_upload   — validate kind, content type and declared size, record a
                      pending Media row, hand out a pre-signed PUT target.
                      Nothing is accepted past the limits:
                        video ≤ 50 MB, image ≤ 5 MB (configurable)
  2. (client PUTs the bytes straight to MinIO)
  3. finalize_upload — HEAD the object; a missing object means the blob
                       write never completed. Oversize blobs are deleted.
  4. get_url        — stable for a given media id: a public URL when a CDN
                      base is configured, else a pre-signed GET cached for
                      half its lifetime.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError
from opentelemetry import trace

from cliphub.clients import minio_client
from cliphub.config import Settings
from cliphub.errors import (
    Forbidden,
    QuotaExceeded,
    Unavailable,
    UnsupportedType,
    UploadIncomplete,
    ValidationError,
)
from cliphub.models import MEDIA_PENDING, MEDIA_READY, Media, utcnow
from cliphub.services.cache import LRUCache
from cliphub.store import EntityStore
from cliphub.telemetry import MEDIA_UPLOADS_TOTAL

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

VIDEO = "video"
IMAGE = "image"

# content type → object key extension
CONTENT_TYPES: dict[str, dict[str, str]] = {
    VIDEO: {"video/mp4": "mp4", "video/quicktime": "mov", "video/webm": "webm"},
    IMAGE: {"image/jpeg": "jpg", "image/png": "png", "image/webp": "webp"},
}


@dataclass
class UploadTarget:
    url: str
    method: str
    headers: dict[str, str]
    expires_in: int


@dataclass
class UploadTicket:
    media_id: str
    upload_target: UploadTarget


class StorageGateway:
    def __init__(self, store: EntityStore, s3, settings: Settings) -> None:  # noqa: ANN001
        self._store = store
        self._s3 = s3
        self._settings = settings
        self._bucket = settings.minio_bucket
        self._urls: LRUCache[str] = LRUCache(
            maxsize=10_000, ttl=settings.media_download_url_ttl / 2
        )

    def max_bytes(self, kind: str) -> int:
        if kind == VIDEO:
            return self._settings.video_max_bytes
        return self._settings.image_max_bytes

    async def _call(self, op: str, fn, *args):  # noqa: ANN001
        """Run a blocking boto3 call in a thread, bounded by the storage timeout."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args),
                timeout=self._settings.storage_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            logger.warning("Storage %s timed out", op)
            raise Unavailable(f"Storage {op} timed out") from exc
        except (BotoCoreError, ClientError) as exc:
            logger.warning("Storage %s failed: %s", op, exc)
            raise Unavailable(f"Storage {op} failed") from exc

    # ── Upload ────────────────────────────────────────────────────────────

    async def begin_upload(
        self,
        owner_id: str,
        media_kind: str,
        content_type: str,
        size_bytes: int,
    ) -> UploadTicket:
        with tracer.start_as_current_span("storage.begin_upload") as span:
            span.set_attribute("media.kind", media_kind)
            allowed = CONTENT_TYPES.get(media_kind)
            if allowed is None:
                MEDIA_UPLOADS_TOTAL.labels(kind=str(media_kind), stage="rejected").inc()
                raise UnsupportedType(
                    f"Unsupported media kind '{media_kind}'",
                    {"allowed_kinds": sorted(CONTENT_TYPES)},
                )
            ext = allowed.get(content_type)
            if ext is None:
                MEDIA_UPLOADS_TOTAL.labels(kind=media_kind, stage="rejected").inc()
                raise UnsupportedType(
                    f"Content type '{content_type}' is not accepted for {media_kind}",
                    {"allowed_content_types": sorted(allowed)},
                )
            if size_bytes <= 0:
                raise ValidationError("size_bytes must be positive")
            limit = self.max_bytes(media_kind)
            if size_bytes > limit:
                MEDIA_UPLOADS_TOTAL.labels(kind=media_kind, stage="rejected").inc()
                raise QuotaExceeded(
                    f"{media_kind} uploads are limited to {limit} bytes",
                    {"limit_bytes": limit, "size_bytes": size_bytes},
                )

            media_id = str(uuid.uuid4())
            key = f"{media_kind}/{owner_id}/{media_id}.{ext}"
            await self._store.insert(
                Media(
                    media_id=media_id,
                    owner_id=owner_id,
                    kind=media_kind,
                    content_type=content_type,
                    declared_size=size_bytes,
                    object_key=key,
                    status=MEDIA_PENDING,
                )
            )
            ttl = self._settings.media_upload_url_ttl
            url = await self._call(
                "presign_put",
                minio_client.presign_put,
                self._s3,
                self._bucket,
                key,
                content_type,
                ttl,
            )
            MEDIA_UPLOADS_TOTAL.labels(kind=media_kind, stage="begun").inc()
            logger.info("Upload begun: media %s (%s, %d bytes) for %s", media_id, media_kind, size_bytes, owner_id)
            return UploadTicket(
                media_id=media_id,
                upload_target=UploadTarget(
                    url=url,
                    method="PUT",
                    headers={"Content-Type": content_type},
                    expires_in=ttl,
                ),
            )

    async def finalize_upload(self, media_id: str, actor_id: Optional[str] = None) -> str:
        with tracer.start_as_current_span("storage.finalize_upload") as span:
            span.set_attribute("media.id", media_id)
            media = await self._store.get(Media, media_id)
            if actor_id is not None and media.owner_id != actor_id:
                raise Forbidden("Only the uploader can finalize this media")
            if media.status == MEDIA_READY:
                return await self.get_url(media_id)

            head = await self._call(
                "head_object", minio_client.head_object, self._s3, self._bucket, media.object_key
            )
            if head is None:
                raise UploadIncomplete(
                    "The media bytes were never uploaded", {"media_id": media_id}
                )
            size = int(head.get("ContentLength", 0))
            limit = self.max_bytes(media.kind)
            if size > limit:
                await self._call(
                    "delete_object", minio_client.delete_object, self._s3, self._bucket, media.object_key
                )
                MEDIA_UPLOADS_TOTAL.labels(kind=media.kind, stage="rejected").inc()
                raise QuotaExceeded(
                    f"{media.kind} uploads are limited to {limit} bytes",
                    {"limit_bytes": limit, "size_bytes": size},
                )

            await self._store.update(
                Media,
                media_id,
                {"status": MEDIA_READY, "size_bytes": size, "finalized_at": utcnow()},
                expected={"status": MEDIA_PENDING},
            )
            MEDIA_UPLOADS_TOTAL.labels(kind=media.kind, stage="finalized").inc()
            logger.info("Upload finalized: media %s (%d bytes)", media_id, size)
            return await self.get_url(media_id)

    # ── URLs ──────────────────────────────────────────────────────────────

    def _url_for(self, media: Media) -> str:
        base = self._settings.media_public_base_url
        if base:
            return f"{base.rstrip('/')}/{media.object_key}"
        cached = self._urls.get(media.media_id)
        if cached is not None:
            return cached
        url = minio_client.presign_get(
            self._s3, self._bucket, media.object_key, self._settings.media_download_url_ttl
        )
        self._urls.set(media.media_id, url)
        return url

    async def get_url(self, media_id: str) -> str:
        media = await self._store.get(Media, media_id)
        if media.status != MEDIA_READY:
            raise UploadIncomplete("Media upload has not been finalized", {"media_id": media_id})
        return self._url_for(media)

    async def get_urls(self, media_ids: list[Optional[str]]) -> dict[str, str]:
        """Batch URL lookup for a feed page; unfinished or unknown media are omitted."""
        found = await self._store.get_many(Media, [m for m in media_ids if m])
        return {
            media_id: self._url_for(media)
            for media_id, media in found.items()
            if media.status == MEDIA_READY
        }

    async def require_ready(self, media_id: str, owner_id: str, kind: str) -> Media:
        """Media a post may reference: finalized, owned by the poster, right kind."""
        media = await self._store.get(Media, media_id)
        if media.owner_id != owner_id:
            raise Forbidden("Media belongs to another user", {"media_id": media_id})
        if media.kind != kind:
            raise ValidationError(f"Media {media_id} is not a {kind}", {"media_id": media_id})
        if media.status != MEDIA_READY:
            raise UploadIncomplete("Media upload has not been finalized", {"media_id": media_id})
        return media
