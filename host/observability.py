import logging
from typing import Optional

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter

from opentelemetry.sdk._logs import LoggerProvider, LoggingHandler
from opentelemetry.sdk._logs.export import BatchLogRecordProcessor
from opentelemetry.exporter.otlp.proto.http._log_exporter import OTLPLogExporter
from opentelemetry import _logs as logs

logger = logging.getLogger(__name__)

_tracing_initialized = False


def setup_tracing(service_name: str = "layered-context", endpoint: Optional[str] = None,
                  export_logs: bool = True) -> bool:
    """
    Initializes OpenTelemetry tracing with an OTLP exporter and logging instrumentation.

    Until this runs, ``get_tracer`` hands out no-op tracers, so library code can
    open spans unconditionally.

    Args:
        service_name: Value of the ``service.name`` resource attribute
        endpoint: OTLP/HTTP collector base URL; the exporter's environment
                  defaults apply when None
        export_logs: Also ship log records through OTLP

    Returns:
        True if tracing was initialized by this call
    """
    global _tracing_initialized
    if _tracing_initialized:
        return False

    resource = Resource.create({"service.name": service_name})

    # --- Traces Setup ---
    trace_exporter = OTLPSpanExporter(endpoint=f"{endpoint.rstrip('/')}/v1/traces") if endpoint else OTLPSpanExporter()
    trace_provider = TracerProvider(resource=resource)
    trace_provider.add_span_processor(BatchSpanProcessor(trace_exporter))
    trace.set_tracer_provider(trace_provider)

    # --- Logs Setup ---
    if export_logs:
        log_exporter = OTLPLogExporter(endpoint=f"{endpoint.rstrip('/')}/v1/logs") if endpoint else OTLPLogExporter()
        log_provider = LoggerProvider(resource=resource)
        log_provider.add_log_record_processor(BatchLogRecordProcessor(log_exporter))
        logs.set_logger_provider(log_provider)

        # Attach the OTel handler to the root logger
        otel_handler = LoggingHandler(logger_provider=log_provider)
        logging.getLogger().addHandler(otel_handler)

    _tracing_initialized = True
    logger.info(f"OpenTelemetry tracing initialized for service '{service_name}'")
    return True


def get_tracer(name: str) -> trace.Tracer:
    """
    Returns a tracer with the specified name.

    Spans are recorded only after setup_tracing() has been run.
    """
    return trace.get_tracer(name)
