"""OpenTelemetry + Prometheus fallback wiring for the memproxy service."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI

from memproxy import config

logger = logging.getLogger("memproxy.observability")


_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None
_fastapi_instrumentor: Any | None = None

_forward_counter: Any | None = None
_forward_latency_hist: Any | None = None
_capture_failure_counter: Any | None = None
_sync_counter: Any | None = None
_tokens_counter: Any | None = None

_prom_enabled = False
_prom_forward_counter: Any | None = None
_prom_forward_latency_hist: Any | None = None
_prom_capture_failure_counter: Any | None = None
_prom_sync_counter: Any | None = None
_prom_tokens_counter: Any | None = None


def _normalize_otlp_endpoint(base_endpoint: str, signal_path: str) -> str:
    endpoint = (base_endpoint or "").strip()
    if not endpoint:
        return ""
    if endpoint.endswith(signal_path):
        return endpoint
    if endpoint.endswith("/"):
        endpoint = endpoint[:-1]
    if endpoint.endswith("/v1"):
        return f"{endpoint}{signal_path[3:]}"
    return f"{endpoint}{signal_path}"


def _labels(**values: Any) -> dict[str, str]:
    return {key: (str(value or "")).strip() or "unknown" for key, value in values.items()}


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _enabled, _tracer, _trace_provider, _meter_provider, _fastapi_instrumentor
    global _forward_counter, _forward_latency_hist, _capture_failure_counter, _sync_counter, _tokens_counter
    global _prom_enabled
    global _prom_forward_counter, _prom_forward_latency_hist, _prom_capture_failure_counter
    global _prom_sync_counter, _prom_tokens_counter

    if _initialized:
        if _enabled and app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return

    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (MEMPROXY_OTEL_ENABLED=false)")
        return

    try:
        from opentelemetry import metrics, trace
        from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError as exc:
        logger.warning("OpenTelemetry dependencies unavailable: %s", exc)
        return

    traces_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/traces")
    metrics_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/metrics")
    service_name = config.OTEL_SERVICE_NAME or "memproxy"

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.namespace": "memproxy",
        }
    )

    trace_provider = TracerProvider(resource=resource)
    trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=traces_endpoint or None)))
    trace.set_tracer_provider(trace_provider)
    tracer = trace.get_tracer("memproxy.proxy")

    metric_reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=metrics_endpoint or None)
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("memproxy.proxy")

    _forward_counter = meter.create_counter(
        "memproxy_forwarded_requests_total",
        unit="1",
        description="Requests relayed to an upstream provider",
    )
    _forward_latency_hist = meter.create_histogram(
        "memproxy_forward_latency_ms",
        unit="ms",
        description="Upstream round-trip latency",
    )
    _capture_failure_counter = meter.create_counter(
        "memproxy_capture_failures_total",
        unit="1",
        description="Capture pipeline failures by stage",
    )
    _sync_counter = meter.create_counter(
        "memproxy_sync_tasks_total",
        unit="1",
        description="Tasks pushed to the team memory API by outcome",
    )
    _tokens_counter = meter.create_counter(
        "memproxy_tokens_total",
        unit="1",
        description="Token totals by agent and model",
    )

    _trace_provider = trace_provider
    _meter_provider = meter_provider
    _tracer = tracer
    _fastapi_instrumentor = FastAPIInstrumentor()
    _enabled = True

    if app:
        _fastapi_instrumentor.instrument_app(app)

    if config.PROM_PORT > 0:
        try:
            from prometheus_client import Counter, Histogram, start_http_server

            start_http_server(config.PROM_PORT)
            _prom_enabled = True
            _prom_forward_counter = Counter(
                "memproxy_forwarded_requests_total",
                "Requests relayed to an upstream provider",
                ["agent", "status"],
            )
            _prom_forward_latency_hist = Histogram(
                "memproxy_forward_latency_ms",
                "Upstream round-trip latency",
                ["agent"],
            )
            _prom_capture_failure_counter = Counter(
                "memproxy_capture_failures_total",
                "Capture pipeline failures by stage",
                ["stage"],
            )
            _prom_sync_counter = Counter(
                "memproxy_sync_tasks_total",
                "Tasks pushed to the team memory API by outcome",
                ["result"],
            )
            _prom_tokens_counter = Counter(
                "memproxy_tokens_total",
                "Token totals by agent and model",
                ["agent", "model", "direction"],
            )
            logger.info("Prometheus fallback metrics server listening on port %s", config.PROM_PORT)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Prometheus fallback not started: %s", exc)
            _prom_enabled = False

    logger.info(
        "OpenTelemetry initialized (service=%s endpoint=%s)",
        service_name,
        config.OTEL_ENDPOINT,
    )


def shutdown(app: FastAPI | None = None) -> None:
    global _enabled
    if not _initialized:
        return
    try:
        if app and _fastapi_instrumentor:
            _fastapi_instrumentor.uninstrument_app(app)
    except Exception as exc:  # noqa: BLE001
        logger.debug("FastAPI uninstrument failed: %s", exc)
    for provider in (_meter_provider, _trace_provider):
        try:
            if provider is not None:
                provider.shutdown()
        except Exception as exc:  # noqa: BLE001
            logger.debug("Telemetry provider shutdown failed: %s", exc)
    _enabled = False


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None):
    if not _enabled or _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(name) as span:
        if attributes:
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(key, value)
        yield span


def record_forward(agent: str, status: int | str, duration_ms: float) -> None:
    labels = _labels(agent=agent, status=status)
    latency = max(0.0, float(duration_ms))
    if _enabled and _forward_counter is not None:
        _forward_counter.add(1, labels)
    if _enabled and _forward_latency_hist is not None:
        _forward_latency_hist.record(latency, {"agent": labels["agent"]})
    if _prom_enabled and _prom_forward_counter is not None:
        _prom_forward_counter.labels(**labels).inc()
    if _prom_enabled and _prom_forward_latency_hist is not None:
        _prom_forward_latency_hist.labels(agent=labels["agent"]).observe(latency)


def record_capture_failure(stage: str) -> None:
    labels = _labels(stage=stage)
    if _enabled and _capture_failure_counter is not None:
        _capture_failure_counter.add(1, labels)
    if _prom_enabled and _prom_capture_failure_counter is not None:
        _prom_capture_failure_counter.labels(**labels).inc()


def record_sync(result: str, count: int = 1) -> None:
    safe_count = max(0, int(count))
    if safe_count == 0:
        return
    labels = _labels(result=result)
    if _enabled and _sync_counter is not None:
        _sync_counter.add(safe_count, labels)
    if _prom_enabled and _prom_sync_counter is not None:
        _prom_sync_counter.labels(**labels).inc(safe_count)


def record_tokens(agent: str, model: str, input_tokens: int, output_tokens: int) -> None:
    base = _labels(agent=agent, model=model)
    in_tokens = max(0, int(input_tokens))
    out_tokens = max(0, int(output_tokens))
    if _enabled and _tokens_counter is not None:
        if in_tokens > 0:
            _tokens_counter.add(in_tokens, {**base, "direction": "input"})
        if out_tokens > 0:
            _tokens_counter.add(out_tokens, {**base, "direction": "output"})
    if _prom_enabled and _prom_tokens_counter is not None:
        if in_tokens > 0:
            _prom_tokens_counter.labels(**base, direction="input").inc(in_tokens)
        if out_tokens > 0:
            _prom_tokens_counter.labels(**base, direction="output").inc(out_tokens)
