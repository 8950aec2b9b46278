"""OpenTelemetry tracing.

Spans: protocol.call, query.execute, discovery.probe, collector.run. Outbound
httpx calls and SQL statements are auto-instrumented once a provider is
installed.
"""

from importlib.metadata import PackageNotFoundError, version

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SpanExporter

from conductor_config.settings import Settings
from conductor_obs.logging import get_logger

logger = get_logger(__name__)


def _package_version() -> str:
    try:
        return version("mcp-conductor")
    except PackageNotFoundError:
        return "0.0.0"


def build_tracer_provider(
    settings: Settings, exporter: SpanExporter | None = None
) -> TracerProvider:
    """Provider tagged with service name, version and environment.

    Spans go to the OTLP collector at OTEL_EXPORTER_OTLP_ENDPOINT unless an
    exporter is passed in.
    """
    provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": settings.OTEL_SERVICE_NAME,
                "service.version": _package_version(),
                "deployment.environment": settings.ENVIRONMENT,
            }
        )
    )
    exporter = exporter or OTLPSpanExporter(endpoint=settings.OTEL_EXPORTER_OTLP_ENDPOINT)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    return provider


def setup_tracing(settings: Settings, engine=None) -> bool:
    """Install the global provider when OTEL_TRACES_ENABLED is set.

    Returns:
        True if tracing was installed
    """
    if not settings.OTEL_TRACES_ENABLED:
        return False

    trace.set_tracer_provider(build_tracer_provider(settings))
    HTTPXClientInstrumentor().instrument()
    if engine is not None:
        SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)

    logger.info(
        "tracing_enabled",
        service=settings.OTEL_SERVICE_NAME,
        endpoint=settings.OTEL_EXPORTER_OTLP_ENDPOINT,
        sql=engine is not None,
    )
    return True


def get_tracer(name: str) -> trace.Tracer:
    """No-op tracer until setup_tracing installs a provider."""
    return trace.get_tracer(name)
