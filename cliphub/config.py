"""
Configuration management using Pydantic BaseSettings.
All values can be overridden via environment variables or a .env file.
"""
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ── TiDB (MySQL-protocol compatible) ───────────────────────────────────
    tidb_host: str = "tidb"
    tidb_port: int = 4000
    tidb_user: str = "root"
    tidb_password: str = ""
    tidb_database: str = "cliphub"
    # Full SQLAlchemy URL — takes precedence over the tidb_* fields when set
    # (e.g. sqlite+aiosqlite:///./cliphub.db for local runs).
    database_url: Optional[str] = None
    db_pool_size: int = 20
    db_max_overflow: int = 10

    @property
    def sqlalchemy_url(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"mysql+aiomysql://{self.tidb_user}:{self.tidb_password}"
            f"@{self.tidb_host}:{self.tidb_port}/{self.tidb_database}"
        )

    # ── Redis (realtime relay) ─────────────────────────────────────────────
    redis_host: str = "redis"
    redis_port: int = 6379
    realtime_relay_enabled: bool = False
    realtime_relay_channel: str = "cliphub:realtime"

    # ── Kafka ──────────────────────────────────────────────────────────────
    kafka_enabled: bool = True
    kafka_bootstrap_servers: str = "kafka:9092"
    kafka_topic_posts: str = "post-events"
    kafka_topic_interactions: str = "interaction-events"
    kafka_topic_reconcile: str = "reconcile-requests"
    kafka_consumer_group: str = "reconciler"

    # ── MinIO (S3-compatible) ──────────────────────────────────────────────
    minio_endpoint: str = "minio:9000"
    minio_access_key: str = "minioadmin"
    minio_secret_key: str = "minioadmin"
    minio_bucket: str = "media"
    minio_use_ssl: bool = False
    media_upload_url_ttl: int = 900        # pre-signed PUT validity (s)
    media_download_url_ttl: int = 3600     # pre-signed GET validity (s)
    # When set, get_url returns {base}/{object_key} instead of signing
    media_public_base_url: Optional[str] = None

    # ── Media limits ───────────────────────────────────────────────────────
    video_max_bytes: int = 50 * 1024 * 1024
    image_max_bytes: int = 5 * 1024 * 1024

    # ── Interaction Engine ─────────────────────────────────────────────────
    comment_max_length: int = 500
    post_title_max_length: int = 150
    post_description_max_length: int = 2200
    counter_retry_attempts: int = 3
    counter_retry_backoff_seconds: float = 0.05

    # ── Timeouts ───────────────────────────────────────────────────────────
    store_timeout_seconds: float = 5.0
    storage_timeout_seconds: float = 10.0

    # ── Feed ───────────────────────────────────────────────────────────────
    feed_page_size: int = 20
    feed_max_page_size: int = 100
    cursor_secret: str = "change-me"
    cursor_ttl_seconds: int = 86400
    author_cache_size: int = 1024
    author_cache_ttl_seconds: float = 60.0

    # ── Realtime Notifier ──────────────────────────────────────────────────
    notifier_queue_size: int = 256
    realtime_keepalive_seconds: float = 25.0

    # ── Auth (external identity provider) ──────────────────────────────────
    auth_mode: str = "introspection"       # 'introspection' | 'header'
    identity_introspection_url: str = "http://identity:8080/oauth2/introspect"
    identity_client_id: str = "cliphub-api"
    identity_client_secret: str = ""
    auth_cache_ttl_seconds: float = 30.0
    admin_user_ids: list[str] = []

    # ── Reconciliation ─────────────────────────────────────────────────────
    reconcile_interval_seconds: int = 300
    reconcile_batch_size: int = 200

    # ── Observability ──────────────────────────────────────────────────────
    otel_enabled: bool = True
    otel_exporter_otlp_endpoint: str = "http://jaeger:4317"
    service_name: str = "cliphub-api"
    environment: str = "development"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
