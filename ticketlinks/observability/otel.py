"""OpenTelemetry + Prometheus fallback wiring for the ticketlinks backend."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI

from ticketlinks import config

logger = logging.getLogger("ticketlinks.observability")


_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None
_fastapi_instrumentor: Any | None = None

_sync_counter: Any | None = None
_sync_latency_hist: Any | None = None
_parser_failure_counter: Any | None = None
_link_changes_counter: Any | None = None
_queue_events_counter: Any | None = None

_prom_enabled = False
_prom_sync_counter: Any | None = None
_prom_sync_latency_hist: Any | None = None
_prom_parser_failure_counter: Any | None = None
_prom_link_changes_counter: Any | None = None
_prom_queue_events_counter: Any | None = None


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


def _prom_labels(**extra: Any) -> dict[str, str]:
    return {key: (str(value) if value is not None else "").strip() or "unknown" for key, value in extra.items()}


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _enabled, _tracer, _trace_provider, _meter_provider, _fastapi_instrumentor
    global _sync_counter, _sync_latency_hist, _parser_failure_counter
    global _link_changes_counter, _queue_events_counter
    global _prom_enabled
    global _prom_sync_counter, _prom_sync_latency_hist, _prom_parser_failure_counter
    global _prom_link_changes_counter, _prom_queue_events_counter

    if _initialized:
        if _enabled and app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return

    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (TICKETLINKS_OTEL_ENABLED=false)")
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
    service_name = config.OTEL_SERVICE_NAME or "ticketlinks"

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.namespace": "ticketlinks",
        }
    )

    trace_provider = TracerProvider(resource=resource)
    trace_exporter = OTLPSpanExporter(endpoint=traces_endpoint or None)
    trace_provider.add_span_processor(BatchSpanProcessor(trace_exporter))
    trace.set_tracer_provider(trace_provider)
    tracer = trace.get_tracer("ticketlinks.backend")

    metric_reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=metrics_endpoint or None)
    )
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("ticketlinks.backend")

    _sync_counter = meter.create_counter(
        "ticketlinks_sync_runs_total",
        unit="1",
        description="Repository ticket-link sync runs by outcome",
    )
    _sync_latency_hist = meter.create_histogram(
        "ticketlinks_sync_latency_ms",
        unit="ms",
        description="Latency of repository ticket-link syncs",
    )
    _parser_failure_counter = meter.create_counter(
        "ticketlinks_parser_failures_total",
        unit="1",
        description="Count of commit log parse failures",
    )
    _link_changes_counter = meter.create_counter(
        "ticketlinks_link_changes_total",
        unit="1",
        description="Link rows inserted or deleted by syncs",
    )
    _queue_events_counter = meter.create_counter(
        "ticketlinks_queue_events_total",
        unit="1",
        description="Sync queue pushes, absorbed duplicates and job outcomes",
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
            _prom_sync_counter = Counter(
                "ticketlinks_sync_runs_total",
                "Repository ticket-link sync runs by outcome",
                ["result", "trigger"],
            )
            _prom_sync_latency_hist = Histogram(
                "ticketlinks_sync_latency_ms",
                "Latency of repository ticket-link syncs",
                ["result"],
            )
            _prom_parser_failure_counter = Counter(
                "ticketlinks_parser_failures_total",
                "Count of commit log parse failures",
                ["parser"],
            )
            _prom_link_changes_counter = Counter(
                "ticketlinks_link_changes_total",
                "Link rows inserted or deleted by syncs",
                ["action"],
            )
            _prom_queue_events_counter = Counter(
                "ticketlinks_queue_events_total",
                "Sync queue pushes, absorbed duplicates and job outcomes",
                ["queue", "event"],
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
    try:
        if _meter_provider is not None:
            _meter_provider.shutdown()
    except Exception as exc:  # noqa: BLE001
        logger.debug("Meter provider shutdown failed: %s", exc)
    try:
        if _trace_provider is not None:
            _trace_provider.shutdown()
    except Exception as exc:  # noqa: BLE001
        logger.debug("Trace provider shutdown failed: %s", exc)
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


def record_sync(result: str, duration_ms: float, *, trigger: str) -> None:
    labels = {"result": result or "unknown", "trigger": trigger or "unknown"}
    if _enabled and _sync_counter is not None:
        _sync_counter.add(1, labels)
    if _enabled and _sync_latency_hist is not None:
        _sync_latency_hist.record(max(0.0, float(duration_ms)), {"result": labels["result"]})
    if _prom_enabled and _prom_sync_counter is not None:
        _prom_sync_counter.labels(**_prom_labels(result=result, trigger=trigger)).inc()
    if _prom_enabled and _prom_sync_latency_hist is not None:
        _prom_sync_latency_hist.labels(**_prom_labels(result=result)).observe(max(0.0, float(duration_ms)))


def record_parser_failure(parser: str) -> None:
    labels = {"parser": parser or "unknown"}
    if _enabled and _parser_failure_counter is not None:
        _parser_failure_counter.add(1, labels)
    if _prom_enabled and _prom_parser_failure_counter is not None:
        _prom_parser_failure_counter.labels(**_prom_labels(parser=parser)).inc()


def record_link_changes(*, inserted: int, deleted: int) -> None:
    for action, count in (("insert", inserted), ("delete", deleted)):
        safe_count = max(0, int(count))
        if safe_count == 0:
            continue
        if _enabled and _link_changes_counter is not None:
            _link_changes_counter.add(safe_count, {"action": action})
        if _prom_enabled and _prom_link_changes_counter is not None:
            _prom_link_changes_counter.labels(**_prom_labels(action=action)).inc(safe_count)


def record_queue_event(queue: str, event: str) -> None:
    labels = {"queue": queue or "unknown", "event": event or "unknown"}
    if _enabled and _queue_events_counter is not None:
        _queue_events_counter.add(1, labels)
    if _prom_enabled and _prom_queue_events_counter is not None:
        _prom_queue_events_counter.labels(**_prom_labels(queue=queue, event=event)).inc()
