"""
Async Kafka producer.

Publishes three event types:
  post-events          — post created / deleted.
                         Consumed by: downstream indexing and analytics.
  interaction-events   — like, unlike, comment, follow mutations that succeeded.
                         Consumed by: analytics.
  reconcile-requests   — counters left behind by a PartialFailure.
                         Consumed by: the reconciler worker.

Publishing is best effort: a broker outage is logged and never turns a
successful mutation into a failed one. When Kafka is disabled (local runs,
tests) every publish is a no-op.
"""
import json
import logging
import time
from typing import Optional

from aiokafka import AIOKafkaProducer

from cliphub.config import Settings

logger = logging.getLogger(__name__)

_producer: Optional[AIOKafkaProducer] = None
_topics: dict[str, str] = {}


async def init_kafka(settings: Settings) -> None:
    global _producer
    _topics.update(
        posts=settings.kafka_topic_posts,
        interactions=settings.kafka_topic_interactions,
        reconcile=settings.kafka_topic_reconcile,
    )
    if not settings.kafka_enabled:
        logger.info("Kafka disabled — events will not be published")
        return
    _producer = AIOKafkaProducer(
        bootstrap_servers=settings.kafka_bootstrap_servers,
        value_serializer=lambda v: json.dumps(v).encode("utf-8"),
        acks="all",          # wait for all in-sync replicas
        enable_idempotence=True,
    )
    await _producer.start()
    logger.info(
        "Kafka producer started → %s", settings.kafka_bootstrap_servers
    )


async def stop_kafka() -> None:
    global _producer
    if _producer:
        await _producer.stop()
        _producer = None


async def _send(topic_name: str, payload: dict, key: Optional[str] = None) -> None:
    if _producer is None:
        return
    topic = _topics[topic_name]
    try:
        await _producer.send_and_wait(
            topic, payload, key=key.encode("utf-8") if key else None
        )
    except Exception as exc:
        logger.warning("Kafka publish to %s failed: %s (payload=%s)", topic, exc, payload)


async def publish_post_event(event: str, post_id: str, user_id: str, **fields) -> None:
    """
    Emit a post lifecycle event to 'post-events'.

    Schema:
      { event: 'created'|'deleted', post_id, user_id, timestamp, ... }
    """
    payload = {
        "event": event,
        "post_id": post_id,
        "user_id": user_id,
        "timestamp": int(time.time() * 1000),
        **fields,
    }
    await _send("posts", payload, key=post_id)
    logger.debug("Published post %s event for post_id=%s", event, post_id)


async def publish_interaction(
    event: str, user_id: str, target_kind: str, target_id: str, **fields
) -> None:
    """Keyed by target so every event for one target lands on one partition."""
    payload = {
        "event": event,
        "user_id": user_id,
        "target_kind": target_kind,
        "target_id": target_id,
        "timestamp": int(time.time() * 1000),
        **fields,
    }
    await _send("interactions", payload, key=f"{target_kind}:{target_id}")


async def publish_reconcile_request(entity: str, entity_id: str, reason: str) -> None:
    """Ask the reconciler worker to rebuild one entity's counters."""
    payload = {"entity": entity, "id": entity_id, "reason": reason}
    await _send("reconcile", payload, key=f"{entity}:{entity_id}")
    logger.info("Requested reconciliation of %s %s (%s)", entity, entity_id, reason)
