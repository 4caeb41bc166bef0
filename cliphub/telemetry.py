"""
Observability setup:
  - OpenTelemetry distributed tracing → Jaeger (via OTLP gRPC)
  - Prometheus metrics for feed latency, interaction outcomes, counter
    retries, reconciliation drift, author cache and realtime fan-out

Both are initialised once at startup and injected into FastAPI via middleware.
"""
import logging

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.redis import RedisInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from prometheus_client import Counter, Gauge, Histogram

from cliphub.config import Settings

logger = logging.getLogger(__name__)

# ─────────────────────────── Prometheus Metrics ───────────────────────────
FEED_LATENCY = Histogram(
    "feed_page_latency_seconds",
    "Latency of one feed page (post listing + author join + media URLs)",
    ["listing"],  # 'feed' | 'user' | 'collection' | 'comments'
    buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0],
)

INTERACTIONS_TOTAL = Counter(
    "interactions_total",
    "Interaction Engine operations by outcome",
    ["operation", "outcome"],  # outcome: 'ok' | 'partial' | 'error' | 'replayed'
)

COUNTER_RETRIES_TOTAL = Counter(
    "counter_write_retries_total",
    "Counter writes retried after a failed attempt",
    ["counter"],
)

PARTIAL_FAILURES_TOTAL = Counter(
    "partial_failures_total",
    "Mutations surfaced as PartialFailure (left for reconciliation)",
    ["operation"],
)

RECONCILE_CORRECTIONS_TOTAL = Counter(
    "reconcile_corrections_total",
    "Counters corrected by reconciliation",
    ["counter"],
)

AUTHOR_CACHE_TOTAL = Counter(
    "author_cache_lookups_total",
    "Author snapshot cache lookups",
    ["result"],  # 'hit' | 'miss'
)

REALTIME_SUBSCRIPTIONS = Gauge(
    "realtime_subscriptions",
    "Active realtime subscriptions on this instance",
)

REALTIME_EVENTS_TOTAL = Counter(
    "realtime_events_total",
    "Realtime events enqueued to subscribers",
)

MEDIA_UPLOADS_TOTAL = Counter(
    "media_uploads_total",
    "Storage Gateway upload lifecycle",
    ["kind", "stage"],  # stage: 'begun' | 'finalized' | 'rejected'
)


# ─────────────────────────── OpenTelemetry Setup ──────────────────────────
def setup_tracing(settings: Settings) -> None:
    """Configure the global OTel TracerProvider with OTLP/Jaeger export."""
    if not settings.otel_enabled:
        logger.info("OTel tracing disabled")
        return

    resource = Resource.create(
        {
            "service.name": settings.service_name,
            "deployment.environment": settings.environment,
        }
    )

    provider = TracerProvider(resource=resource)

    try:
        otlp_exporter = OTLPSpanExporter(
            endpoint=settings.otel_exporter_otlp_endpoint,
            insecure=True,
        )
        provider.add_span_processor(BatchSpanProcessor(otlp_exporter))
        logger.info(
            "OTel tracing configured → %s", settings.otel_exporter_otlp_endpoint
        )
    except Exception as exc:
        logger.warning("Could not connect to OTLP exporter: %s — traces disabled", exc)

    trace.set_tracer_provider(provider)

    # Auto-instrument popular libraries so their spans appear in traces
    HTTPXClientInstrumentor().instrument()
    RedisInstrumentor().instrument()
    SQLAlchemyInstrumentor().instrument()


def instrument_app(app, settings: Settings) -> None:  # noqa: ANN001
    """Call after app is created to add FastAPI request spans."""
    if settings.otel_enabled:
        FastAPIInstrumentor.instrument_app(app)
