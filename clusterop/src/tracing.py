from __future__ import annotations

import logging
import os
from collections.abc import Mapping

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

LOGGER = logging.getLogger(__name__)

_TRACING_INITIALIZED = False


def otlp_traces_endpoint(env: Mapping[str, str]) -> str:
    endpoint_base = env.get(
        "OTEL_EXPORTER_OTLP_ENDPOINT",
        "http://otel-collector.monitoring.svc:4318",
    )
    return env.get("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT") or (
        endpoint_base
        if endpoint_base.endswith("/v1/traces")
        else endpoint_base.rstrip("/") + "/v1/traces"
    )


def configure_tracing(enabled: bool, env: Mapping[str, str] | None = None) -> bool:
    """Install an OTLP/HTTP tracer provider and instrument httpx, once per process.

    Spans around client resolution and guaranteed updates are no-ops until
    this runs. Returns whether tracing is active.
    """
    global _TRACING_INITIALIZED

    if not enabled:
        return False
    if _TRACING_INITIALIZED:
        return True

    values = env if env is not None else os.environ
    endpoint = otlp_traces_endpoint(values)
    resource = Resource.create({
        "service.name": values.get("OTEL_SERVICE_NAME", "clusterop"),
        "service.namespace": values.get("OTEL_SERVICE_NAMESPACE", "clusterop"),
    })

    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)
    HTTPXClientInstrumentor().instrument()
    _TRACING_INITIALIZED = True
    LOGGER.info("OpenTelemetry tracing enabled (OTLP endpoint=%s)", endpoint)
    return True
