"""OpenTelemetry adapter for pipeline metrics.

Counters and histograms are created lazily on first use; without
opentelemetry-sdk installed every call is a no-op.
"""

import logging
from dataclasses import dataclass
from importlib import import_module
from typing import Any

from bookmark_rag.application.ports.telemetry_port import TelemetryPort

logger = logging.getLogger(__name__)


@dataclass
class OtelConfig:
    """Configuration for OpenTelemetry."""

    service_name: str = "bookmark-rag"
    otlp_endpoint: str | None = None  # e.g., "http://localhost:4317"
    environment: str = "production"
    enable_console: bool = False  # Debug: print metrics to console


class OpenTelemetryAdapter(TelemetryPort):
    """OpenTelemetry adapter for metrics.

    Metrics:
    - Counters: incr() for events (degraded analyses, stream retries, terminal outcomes)
    - Histograms: observe() for distributions (first-delta latency, candidate counts)
    """

    def __init__(self, cfg: OtelConfig) -> None:
        self._cfg = cfg
        self._meter: Any | None = None
        self._counters: dict[str, Any] = {}
        self._histograms: dict[str, Any] = {}
        self._init_otel()

    @property
    def enabled(self) -> bool:
        return self._meter is not None

    def _init_otel(self) -> None:
        try:
            otel_sdk = import_module("opentelemetry.sdk.metrics")
            otel_export = import_module("opentelemetry.sdk.metrics.export")
            otel_metrics = import_module("opentelemetry.metrics")
            otel_resources = import_module("opentelemetry.sdk.resources")
        except ImportError:
            logger.info("opentelemetry-sdk not installed, metrics disabled")
            return

        resource = otel_resources.Resource.create(
            {
                "service.name": self._cfg.service_name,
                "deployment.environment": self._cfg.environment,
            }
        )
        readers = []
        if self._cfg.otlp_endpoint:
            try:
                otel_otlp = import_module("opentelemetry.exporter.otlp.proto.grpc.metric_exporter")
            except ImportError:
                logger.warning("OTLP exporter not installed, %s ignored", self._cfg.otlp_endpoint)
            else:
                exporter = otel_otlp.OTLPMetricExporter(endpoint=self._cfg.otlp_endpoint)
                readers.append(otel_export.PeriodicExportingMetricReader(exporter))
        if self._cfg.enable_console:
            readers.append(
                otel_export.PeriodicExportingMetricReader(otel_export.ConsoleMetricExporter())
            )

        provider = otel_sdk.MeterProvider(resource=resource, metric_readers=readers)
        otel_metrics.set_meter_provider(provider)
        self._meter = otel_metrics.get_meter(__name__)

    def incr(self, name: str, tags: dict) -> None:
        """Increment a counter metric.

        Examples:
            - incr("rag.analysis.degraded", {"reason": "unavailable"})
            - incr("rag.stream.terminal", {"outcome": "cancelled"})
        """
        if self._meter is None:
            return
        if name not in self._counters:
            self._counters[name] = self._meter.create_counter(
                name=name, description=f"Counter for {name}"
            )
        self._counters[name].add(1, attributes=tags)

    def observe(self, name: str, value: float, tags: dict) -> None:
        """Record a value on a histogram.

        Examples:
            - observe("rag.stream.first_delta_ms", 412.0, {})
            - observe("rag.retrieval.candidates", 12, {"degraded": "false"})
        """
        if self._meter is None:
            return
        if name not in self._histograms:
            self._histograms[name] = self._meter.create_histogram(
                name=name, description=f"Histogram for {name}"
            )
        self._histograms[name].record(value, attributes=tags)
