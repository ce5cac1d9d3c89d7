"""
OpenTelemetry tracing for the Chief of Staff engine.

Opt-in: the SDK provider and OTLP exporter are only installed when
OTEL_EXPORTER_OTLP_ENDPOINT is set.  Without it the API's default no-op
tracer is used, so callers never need guard clauses.

Usage:
    from cos_engine.tracing import configure_tracing, get_tracer
    configure_tracing()  # once at startup

    tracer = get_tracer("cos.engine.agent")
    with tracer.start_as_current_span("agent.run") as span:
        span.set_attribute("agent.tier", "mini")
"""
import logging
import os

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

logger = logging.getLogger("cos.engine.tracing")

_CONFIGURED = False


def configure_tracing() -> bool:
    """
    Initialize the OpenTelemetry SDK with an OTLP exporter.

    Returns True if tracing was configured, False if skipped (no endpoint).
    """
    global _CONFIGURED
    if _CONFIGURED:
        return True

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")
    if not endpoint:
        logger.debug("OTEL_EXPORTER_OTLP_ENDPOINT not set — tracing disabled")
        return False

    resource = Resource.create(
        {
            "service.name": os.environ.get("OTEL_SERVICE_NAME", "cos-engine"),
            "service.version": os.environ.get("COS_VERSION", "2.0.0"),
        }
    )
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, insecure=True)))
    trace.set_tracer_provider(provider)

    _CONFIGURED = True
    logger.info("OpenTelemetry tracing configured → %s", endpoint)
    return True


def get_tracer(name: str = "cos.engine") -> trace.Tracer:
    """Return an OpenTelemetry tracer (no-op until configure_tracing succeeds)."""
    return trace.get_tracer(name)
