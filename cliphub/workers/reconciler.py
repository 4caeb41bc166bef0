"""
Reconciler Worker — keeps derived counters honest.

Two loops share one Reconciler:
  1. Kafka consumer on 'reconcile-requests' — every PartialFailure publishes
     the entity it left behind; the worker recounts just that entity.
  2. Periodic sweep every `reconcile_interval_seconds` — walks every post,
     comment, collection and user in keyset batches and corrects any drift
     the targeted requests missed (lost messages, crashed requests).

Run with:  python -m cliphub.workers.reconciler   (or `cliphub-reconciler`)
"""
import asyncio
import json
import logging
from typing import Optional

from aiokafka import AIOKafkaConsumer
from opentelemetry import trace

from cliphub.config import Settings, settings as default_settings
from cliphub.database import create_engine, create_sessionmaker, init_db
from cliphub.errors import CliphubError
from cliphub.services.reconciliation import ENTITIES, Reconciler
from cliphub.store import EntityStore
from cliphub.telemetry import setup_tracing

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


# ─────────────────────────── Message Handler ─────────────────────────────

async def process_message(msg: dict, reconciler: Reconciler) -> None:
    entity = msg.get("entity")
    entity_id = msg.get("id")

    if entity not in ENTITIES or not entity_id:
        logger.warning("Malformed reconcile request: %s", msg)
        return

    with tracer.start_as_current_span("reconcile_request") as span:
        span.set_attribute("reconcile.entity", entity)
        span.set_attribute("reconcile.id", entity_id)
        report = await reconciler.reconcile(entity, entity_id)
        logger.info(
            "Reconciled %s %s (reason=%s): corrected=%s",
            entity, entity_id, msg.get("reason"), dict(report.corrected),
        )


# ─────────────────────────── Loops ───────────────────────────────────────

async def sweep_forever(reconciler: Reconciler, settings: Settings) -> None:
    while True:
        try:
            await reconciler.sweep(settings.reconcile_batch_size)
        except CliphubError as exc:
            logger.error("Reconciliation sweep failed: %s", exc)
        await asyncio.sleep(settings.reconcile_interval_seconds)


async def consume_requests(reconciler: Reconciler, settings: Settings) -> None:
    consumer = AIOKafkaConsumer(
        settings.kafka_topic_reconcile,
        bootstrap_servers=settings.kafka_bootstrap_servers,
        group_id=settings.kafka_consumer_group,
        auto_offset_reset="earliest",
        value_deserializer=lambda v: json.loads(v.decode("utf-8")),
    )
    await consumer.start()
    logger.info(
        "Reconciler listening on topic '%s'", settings.kafka_topic_reconcile
    )
    try:
        async for msg in consumer:
            try:
                await process_message(msg.value, reconciler)
            except CliphubError as exc:
                logger.error("Reconcile error for %s: %s", msg.value, exc)
    finally:
        await consumer.stop()


# ─────────────────────────── Main Loop ───────────────────────────────────

async def main(settings: Optional[Settings] = None) -> None:
    settings = settings or default_settings
    setup_tracing(settings)

    engine = create_engine(settings)
    await init_db(engine)
    reconciler = Reconciler(
        EntityStore(create_sessionmaker(engine), timeout=settings.store_timeout_seconds)
    )

    loops = [sweep_forever(reconciler, settings)]
    if settings.kafka_enabled:
        loops.append(consume_requests(reconciler, settings))
    else:
        logger.info("Kafka disabled — running periodic sweeps only")

    try:
        await asyncio.gather(*loops)
    finally:
        await engine.dispose()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
