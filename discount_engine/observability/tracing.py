# ==== OPENTELEMETRY TRACING CONFIGURATION ==== #

"""
OpenTelemetry tracing for the discount engine.

Spans are always created through get_tracer(); they are only exported
when OTEL_EXPORTER_OTLP_ENDPOINT is configured. In that case the
SQLAlchemy engine and outbound httpx calls (payment providers,
notification transports) are instrumented as well.
"""

from typing import Dict

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from discount_engine.observability.logging import get_logger


logger = get_logger(__name__)


def parse_key_values(raw: str | None) -> Dict[str, str]:
    """Parse the OTEL "k1=v1,k2=v2" environment format."""
    pairs = {}
    for part in (raw or "").split(","):
        key, sep, value = part.partition("=")
        if sep and key.strip():
            pairs[key.strip()] = value.strip()
    return pairs


def init_tracing(settings) -> bool:
    """
    Install the OTLP exporter and client instrumentation.

    Args:
        settings: Application settings carrying the OTEL_* keys

    Returns:
        bool: True when spans are exported, False for a no-op setup
    """
    if not settings.OTEL_EXPORTER_OTLP_ENDPOINT:
        return False

    attributes = parse_key_values(settings.OTEL_RESOURCE_ATTRIBUTES)
    attributes["service.name"] = settings.OTEL_SERVICE_NAME or settings.SERVICE_NAME
    attributes.setdefault("deployment.environment", settings.APP_ENV)

    provider = TracerProvider(resource=Resource.create(attributes))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(
        endpoint=settings.OTEL_EXPORTER_OTLP_ENDPOINT,
        headers=parse_key_values(settings.OTEL_EXPORTER_OTLP_HEADERS)
    )))
    trace.set_tracer_provider(provider)

    SQLAlchemyInstrumentor().instrument()
    HTTPXClientInstrumentor().instrument()

    logger.info(
        "Tracing enabled",
        endpoint=settings.OTEL_EXPORTER_OTLP_ENDPOINT,
        service=attributes["service.name"]
    )
    return True


def get_tracer(name: str) -> trace.Tracer:
    return trace.get_tracer(name)
