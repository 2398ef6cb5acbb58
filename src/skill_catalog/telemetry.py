"""OpenTelemetry integration for the skill catalog pipeline.

OTel is an optional dependency (``[otel]`` extra). Without it, or when
disabled in settings, tracers and meters are no-op stubs so workers can
instrument unconditionally.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from loguru import logger

if TYPE_CHECKING:
    from collections.abc import Iterator

    from skill_catalog.settings import ObservabilitySettings

try:
    from opentelemetry import metrics as otel_metrics
    from opentelemetry import trace as otel_trace

    _HAS_OTEL = True
except ModuleNotFoundError:
    _HAS_OTEL = False

# ---------------------------------------------------------------------------
# No-op stubs
# ---------------------------------------------------------------------------


class _NoOpSpan:
    def set_attribute(self, key: str, value: Any) -> None:
        pass

    def record_exception(self, exception: BaseException, **kwargs: Any) -> None:
        pass

    def __enter__(self) -> _NoOpSpan:
        return self

    def __exit__(self, *args: object) -> None:
        pass


class _NoOpTracer:
    def start_as_current_span(self, name: str, **kwargs: Any) -> _NoOpSpan:  # noqa: ARG002
        return _NoOpSpan()

    @contextmanager
    def start_span(self, name: str, **kwargs: Any) -> Iterator[_NoOpSpan]:  # noqa: ARG002
        yield _NoOpSpan()


class _NoOpCounter:
    def add(self, amount: int | float, attributes: dict[str, Any] | None = None) -> None:
        pass


class _NoOpHistogram:
    def record(self, amount: int | float, attributes: dict[str, Any] | None = None) -> None:
        pass


_initialized: bool = False
_enabled: bool = False


def get_tracer(name: str) -> Any:
    """Return an OTel ``Tracer`` or a ``_NoOpTracer``."""
    if _HAS_OTEL and _enabled:
        return otel_trace.get_tracer(name)
    return _NoOpTracer()


# ---------------------------------------------------------------------------
# Metric instruments
# ---------------------------------------------------------------------------


@dataclass
class _Metrics:
    """Central registry of pipeline metric instruments."""

    work_items_total: Any = field(default_factory=_NoOpCounter)  # attrs: stage, outcome
    classifications_total: Any = field(default_factory=_NoOpCounter)  # attrs: method
    tier_transitions_total: Any = field(default_factory=_NoOpCounter)  # attrs: to
    job_duration: Any = field(default_factory=_NoOpHistogram)  # attrs: job
    github_latency: Any = field(default_factory=_NoOpHistogram)
    classifier_latency: Any = field(default_factory=_NoOpHistogram)  # attrs: classifier


_metrics = _Metrics()


def get_metrics() -> _Metrics:
    """Return the centralized metrics namespace."""
    return _metrics


# ---------------------------------------------------------------------------
# Initialization / shutdown
# ---------------------------------------------------------------------------


def init_telemetry(settings: ObservabilitySettings) -> None:
    """Configure OTel providers and instruments. Only the first call has effect."""
    global _initialized, _enabled, _metrics  # noqa: PLW0603

    if _initialized:
        return
    _initialized = True

    if not settings.enabled or not _HAS_OTEL:
        logger.debug("Telemetry disabled (enabled={}, otel_installed={})", settings.enabled, _HAS_OTEL)
        return

    _enabled = True

    from opentelemetry.sdk.metrics import MeterProvider  # noqa: PLC0415
    from opentelemetry.sdk.resources import Resource  # noqa: PLC0415
    from opentelemetry.sdk.trace import TracerProvider  # noqa: PLC0415
    from opentelemetry.sdk.trace.sampling import TraceIdRatioBased  # noqa: PLC0415

    resource = Resource.create({"service.name": settings.service_name, "service.version": _get_version()})

    tracer_provider = TracerProvider(resource=resource, sampler=TraceIdRatioBased(settings.sample_rate))
    span_exporter = _build_span_exporter(settings)
    if span_exporter is not None:
        from opentelemetry.sdk.trace.export import BatchSpanProcessor  # noqa: PLC0415

        tracer_provider.add_span_processor(BatchSpanProcessor(span_exporter))
    otel_trace.set_tracer_provider(tracer_provider)

    metric_reader = _build_metric_reader(settings)
    readers = [metric_reader] if metric_reader is not None else []
    otel_metrics.set_meter_provider(MeterProvider(resource=resource, metric_readers=readers))

    meter = otel_metrics.get_meter("skill_catalog")
    _metrics = _Metrics(
        work_items_total=meter.create_counter("catalog_work_items_total", description="Work items handled"),
        classifications_total=meter.create_counter(
            "catalog_classifications_total", description="Classifications saved, by method"
        ),
        tier_transitions_total=meter.create_counter(
            "catalog_tier_transitions_total", description="Tier changes written by the tier engine"
        ),
        job_duration=meter.create_histogram(
            "catalog_job_duration_seconds", description="Scheduled job duration", unit="s"
        ),
        github_latency=meter.create_histogram(
            "catalog_github_latency_seconds", description="Source platform request latency", unit="s"
        ),
        classifier_latency=meter.create_histogram(
            "catalog_classifier_latency_seconds", description="Remote classifier latency", unit="s"
        ),
    )

    logger.info("Telemetry initialized (exporter={}, sample_rate={})", settings.exporter, settings.sample_rate)


def shutdown_telemetry() -> None:
    """Flush and shut down OTel providers. Safe to call even when not initialized."""
    global _initialized, _enabled  # noqa: PLW0603

    if not _initialized or not _enabled or not _HAS_OTEL:
        return

    for provider in (otel_trace.get_tracer_provider(), otel_metrics.get_meter_provider()):
        if hasattr(provider, "shutdown"):
            provider.shutdown()

    _initialized = False
    _enabled = False
    logger.debug("Telemetry shut down")


def _get_version() -> str:
    try:
        from importlib.metadata import version  # noqa: PLC0415

        return version("skill-catalog")
    except Exception:
        return "0.0.0-dev"


def _build_span_exporter(settings: ObservabilitySettings) -> Any:
    if settings.exporter == "none":
        return None
    if settings.exporter == "console":
        from opentelemetry.sdk.trace.export import ConsoleSpanExporter  # noqa: PLC0415

        return ConsoleSpanExporter()
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter  # noqa: PLC0415

    return OTLPSpanExporter(endpoint=settings.endpoint)


def _build_metric_reader(settings: ObservabilitySettings) -> Any:
    if settings.exporter == "none":
        return None
    from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader  # noqa: PLC0415

    if settings.exporter == "console":
        from opentelemetry.sdk.metrics.export import ConsoleMetricExporter  # noqa: PLC0415

        return PeriodicExportingMetricReader(ConsoleMetricExporter())
    from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter  # noqa: PLC0415

    return PeriodicExportingMetricReader(OTLPMetricExporter(endpoint=settings.endpoint))
