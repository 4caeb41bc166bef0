"""
Service container and FastAPI dependencies.

Everything the routers need is built once per process in `build_services`
(called from the app lifespan) and hung on `app.state.services`. Tests build
their own container around a SQLite database and a mocked S3 client.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi.requests import HTTPConnection
from sqlalchemy.ext.asyncio import AsyncEngine

from cliphub.clients import kafka_producer, minio_client
from cliphub.clients.identity_client import IdentityClient
from cliphub.clients.redis_client import RedisRelay, init_redis
from cliphub.config import Settings
from cliphub.database import create_engine, create_sessionmaker, init_db
from cliphub.services.author_cache import AuthorCache
from cliphub.services.feed import FeedService
from cliphub.services.interactions import InteractionEngine
from cliphub.services.notifier import Notifier
from cliphub.services.profiles import ProfileService
from cliphub.services.reconciliation import Reconciler
from cliphub.services.storage import StorageGateway
from cliphub.store import EntityStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    db: AsyncEngine
    store: EntityStore
    storage: StorageGateway
    notifier: Notifier
    authors: AuthorCache
    interactions: InteractionEngine
    feed: FeedService
    profiles: ProfileService
    reconciler: Reconciler
    identity: IdentityClient
    relay: Optional[RedisRelay] = None


async def build_services(settings: Settings, s3=None, relay: Optional[RedisRelay] = None) -> Services:  # noqa: ANN001
    """Connect every backing system and wire the services together."""
    db = create_engine(settings)
    await init_db(db)
    store = EntityStore(create_sessionmaker(db), timeout=settings.store_timeout_seconds)

    if s3 is None:
        s3 = minio_client.create_s3_client(settings)
        minio_client.ensure_bucket(s3, settings.minio_bucket)
    storage = StorageGateway(store, s3, settings)

    if relay is None and settings.realtime_relay_enabled:
        relay = RedisRelay(await init_redis(settings), settings.realtime_relay_channel)
    notifier = Notifier(queue_size=settings.notifier_queue_size, relay=relay)
    await notifier.start()

    await kafka_producer.init_kafka(settings)

    authors = AuthorCache(
        store, maxsize=settings.author_cache_size, ttl=settings.author_cache_ttl_seconds
    )
    identity = IdentityClient(settings)
    if settings.auth_mode == "introspection":
        await identity.start()

    return Services(
        settings=settings,
        db=db,
        store=store,
        storage=storage,
        notifier=notifier,
        authors=authors,
        interactions=InteractionEngine(store, notifier, storage, settings),
        feed=FeedService(store, storage, authors, settings),
        profiles=ProfileService(store, storage, authors, notifier),
        reconciler=Reconciler(store),
        identity=identity,
        relay=relay,
    )


async def close_services(services: Services) -> None:
    await services.notifier.stop()
    await kafka_producer.stop_kafka()
    await services.identity.stop()
    if services.relay is not None:
        await services.relay.close()
    await services.db.dispose()


def get_services(conn: HTTPConnection) -> Services:
    return conn.app.state.services
