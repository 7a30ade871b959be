"""Logging and tracing setup for the API process.

Log lines carry the active trace and span ids so a request can be followed
from the HTTP middleware down to the store calls made by live views.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from importlib import metadata
import logging
import os

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import DEPLOYMENT_ENVIRONMENT, SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from opentelemetry.trace import Span

from jobchat.core.config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s trace_id=%(trace_id)s span_id=%(span_id)s %(message)s"
PLAIN_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_EMPTY_TRACE_ID = "0" * 32
_EMPTY_SPAN_ID = "0" * 16

_default_record_factory = logging.getLogRecordFactory()
_correlation_installed = False
_httpx_instrumentor = HTTPXClientInstrumentor()
_tracer = trace.get_tracer("jobchat")


@dataclass(slots=True)
class TelemetryRuntime:
    provider: TracerProvider | None = None
    exporting: bool = False


def configure_logging(settings: Settings) -> None:
    correlate = settings.otel_log_correlation
    if correlate:
        _install_log_correlation()
    if logging.getLogger().handlers:
        return
    logging.basicConfig(
        level=settings.log_level.upper(),
        format=LOG_FORMAT if correlate else PLAIN_LOG_FORMAT,
    )


def setup_api_telemetry(app: FastAPI, settings: Settings) -> TelemetryRuntime:
    if not settings.otel_enabled:
        return TelemetryRuntime()

    provider = TracerProvider(
        resource=Resource.create(
            {
                SERVICE_NAME: settings.otel_service_name,
                SERVICE_VERSION: _service_version(),
                DEPLOYMENT_ENVIRONMENT: settings.environment,
            }
        ),
        sampler=ParentBased(TraceIdRatioBased(settings.otel_trace_sample_ratio)),
    )
    exporter = _build_exporter(settings)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))

    trace.set_tracer_provider(provider)
    FastAPIInstrumentor.instrument_app(app, tracer_provider=provider, excluded_urls="healthz")
    _httpx_instrumentor.instrument(tracer_provider=provider)
    return TelemetryRuntime(provider=provider, exporting=exporter is not None)


def shutdown_api_telemetry(app: FastAPI, runtime: TelemetryRuntime) -> None:
    if runtime.provider is None:
        return
    FastAPIInstrumentor.uninstrument_app(app)
    _httpx_instrumentor.uninstrument()
    if runtime.exporting:
        runtime.provider.force_flush()
    runtime.provider.shutdown()


@contextmanager
def inbox_span(name: str, *, user_id: str, **attributes: str) -> Iterator[Span]:
    """Span around one view operation, tagged with the acting user."""

    with _tracer.start_as_current_span(name) as span:
        span.set_attribute("jobchat.user_id", user_id)
        for key, value in attributes.items():
            span.set_attribute(f"jobchat.{key}", value)
        yield span


def _build_exporter(settings: Settings) -> OTLPSpanExporter | None:
    # The exporter reads the standard OTEL_EXPORTER_OTLP_* variables itself
    # when no explicit endpoint is configured.
    endpoint = settings.otel_exporter_otlp_endpoint
    if not endpoint and not (
        os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT") or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    ):
        logging.getLogger(__name__).info("no OTLP endpoint; spans for %s stay in-process", settings.otel_service_name)
        return None

    headers = _parse_headers(settings.otel_exporter_otlp_headers)
    return OTLPSpanExporter(endpoint=endpoint or None, headers=headers or None)


def _parse_headers(raw: str | None) -> dict[str, str]:
    """Parse ``key=value,key2=value2``; items without ``=`` or a key are skipped."""

    pairs = (item.partition("=") for item in (raw or "").split(","))
    return {key.strip(): value.strip() for key, sep, value in pairs if sep and key.strip()}


def _service_version() -> str:
    try:
        return metadata.version("jobchat")
    except metadata.PackageNotFoundError:
        return "0.0.0"


def _install_log_correlation() -> None:
    global _correlation_installed
    if _correlation_installed:
        return

    def record_factory(*args: object, **kwargs: object) -> logging.LogRecord:
        record = _default_record_factory(*args, **kwargs)
        context = trace.get_current_span().get_span_context()
        record.trace_id = format(context.trace_id, "032x") if context.is_valid else _EMPTY_TRACE_ID
        record.span_id = format(context.span_id, "016x") if context.is_valid else _EMPTY_SPAN_ID
        return record

    logging.setLogRecordFactory(record_factory)
    _correlation_installed = True
