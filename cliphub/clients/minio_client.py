"""
MinIO (S3-compatible) client for media storage.

Clients upload video / image bytes straight to MinIO with a pre-signed PUT
and stream them back with pre-signed GET URLs, so media never passes through
the API service. boto3 is synchronous: the Storage Gateway runs the calls
that touch the network in a worker thread.
"""
import logging
from typing import Optional

import boto3
from botocore.client import Config
from botocore.exceptions import ClientError

from cliphub.config import Settings

logger = logging.getLogger(__name__)


def create_s3_client(settings: Settings):
    scheme = "https" if settings.minio_use_ssl else "http"
    return boto3.client(
        "s3",
        endpoint_url=f"{scheme}://{settings.minio_endpoint}",
        aws_access_key_id=settings.minio_access_key,
        aws_secret_access_key=settings.minio_secret_key,
        config=Config(signature_version="s3v4"),
        region_name="us-east-1",
    )


def ensure_bucket(s3, bucket: str) -> None:
    """Create the media bucket if missing."""
    existing = [b["Name"] for b in s3.list_buckets().get("Buckets", [])]
    if bucket not in existing:
        s3.create_bucket(Bucket=bucket)
        logger.info("Created MinIO bucket '%s'", bucket)
    else:
        logger.info("MinIO bucket '%s' already exists", bucket)


def presign_put(s3, bucket: str, key: str, content_type: str, expires_in: int) -> str:
    """Pre-signed PUT the client uses to upload the object bytes directly."""
    return s3.generate_presigned_url(
        "put_object",
        Params={"Bucket": bucket, "Key": key, "ContentType": content_type},
        ExpiresIn=expires_in,
    )


def presign_get(s3, bucket: str, key: str, expires_in: int) -> str:
    """Generate a temporary pre-signed URL valid for `expires_in` seconds."""
    return s3.generate_presigned_url(
        "get_object",
        Params={"Bucket": bucket, "Key": key},
        ExpiresIn=expires_in,
    )


def head_object(s3, bucket: str, key: str) -> Optional[dict]:
    """Object metadata, or None when the object was never written."""
    try:
        return s3.head_object(Bucket=bucket, Key=key)
    except ClientError as exc:
        code = exc.response.get("Error", {}).get("Code", "")
        if code in ("404", "NoSuchKey", "NotFound"):
            return None
        raise


def delete_object(s3, bucket: str, key: str) -> None:
    s3.delete_object(Bucket=bucket, Key=key)
    logger.debug("Deleted MinIO object %s", key)
