import os

# Must be set before cliphub.config builds its module-level settings
os.environ.setdefault("OTEL_ENABLED", "false")
os.environ.setdefault("KAFKA_ENABLED", "false")
os.environ.setdefault("AUTH_MODE", "header")

from unittest.mock import MagicMock  # noqa: E402

import pytest  # noqa: E402

from cliphub.config import Settings  # noqa: E402
from cliphub.dependencies import build_services, close_services  # noqa: E402


def _presign(op, Params, ExpiresIn):  # noqa: N803
    return f"https://minio.test/{Params['Bucket']}/{Params['Key']}?op={op}&expires={ExpiresIn}"


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'cliphub.db'}",
        kafka_enabled=False,
        otel_enabled=False,
        realtime_relay_enabled=False,
        auth_mode="header",
        admin_user_ids=["admin"],
        counter_retry_backoff_seconds=0.0,
        cursor_secret="test-secret",
    )


@pytest.fixture
def s3():
    """Stand-in for the boto3 S3 client: every uploaded object is 1 KiB."""
    client = MagicMock()
    client.generate_presigned_url.side_effect = _presign
    client.head_object.return_value = {"ContentLength": 1024}
    client.list_buckets.return_value = {"Buckets": [{"Name": "media"}]}
    return client


@pytest.fixture
async def services(settings, s3):
    svc = await build_services(settings, s3=s3)
    yield svc
    await close_services(svc)


@pytest.fixture
def make_user(services):
    async def _make(user_id: str, handle: str = None, **fields):
        handle = handle or f"h_{user_id}".lower().replace("-", "_")
        return await services.profiles.create_profile(user_id, handle, **fields)

    return _make


@pytest.fixture
def upload(services):
    async def _upload(owner: str, kind: str = "video", content_type: str = "video/mp4") -> str:
        ticket = await services.storage.begin_upload(owner, kind, content_type, 1024)
        await services.storage.finalize_upload(ticket.media_id, owner)
        return ticket.media_id

    return _upload


@pytest.fixture
def make_post(services, upload):
    async def _make(owner: str, title: str = "clip", **kwargs):
        media_id = await upload(owner)
        return await services.interactions.publish_post(owner, media_id, title, **kwargs)

    return _make
