"""OpenTelemetry spans around pipeline stages."""

from __future__ import annotations

import functools
from typing import Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

SERVICE_NAME = "icecale"

_provider: Optional[TracerProvider] = None


def init_tracing(endpoint: Optional[str]) -> None:
    """Export spans to an OTLP/HTTP collector when an endpoint is configured.

    Without an endpoint the API's default no-op tracer stays in place.
    """
    global _provider
    if not endpoint or _provider is not None:
        return

    resource = Resource.create({"service.name": SERVICE_NAME})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)
    _provider = provider


def shutdown_tracing() -> None:
    global _provider
    if _provider is not None:
        _provider.shutdown()
        _provider = None


def traced(func):
    """Run the wrapped function inside a span named after it."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        tracer = trace.get_tracer(SERVICE_NAME)
        with tracer.start_as_current_span(func.__name__):
            return func(*args, **kwargs)

    return wrapper
