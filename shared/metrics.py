"""
Prometheus metrics for the groups engine.
"""

from typing import Dict, Any, Optional, Sequence, Tuple, Type
import time
from contextlib import contextmanager

from prometheus_client import Counter, Histogram, Gauge, Info, CollectorRegistry, start_http_server

# name -> (metric type, help text, label names)
ENGINE_METRICS: Dict[str, Tuple[Type, str, Sequence[str]]] = {
    "group_mutations_total": (Counter, "Permission mutations by outcome", ("operation", "status")),
    "group_resolutions_total": (Counter, "Best-group resolutions by result", ("result",)),
    "storage_operation_duration_seconds": (Histogram, "Storage call latency", ("operation",)),
    "storage_failures_total": (Counter, "Failed or timed out storage calls", ("operation",)),
    "loaded_subjects": (Gauge, "Subjects held in the in-memory registries", ("subject_type",)),
}


class MetricsCollector:
    """Engine metrics, registered on ``registry`` or the process default."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        kwargs = {} if self.registry is None else {"registry": self.registry}

        info = Info("service_info", "Groups engine information", **kwargs)
        info.info({"service": self.service_name, "version": "1.0.0"})
        self._metrics["service_info"] = info

        for name, (metric_type, description, labels) in ENGINE_METRICS.items():
            self._metrics[name] = metric_type(name, description, list(labels), **kwargs)

    def get_metric(self, name: str):
        return self._metrics.get(name)

    def start_metrics_server(self, port: int = 9090):
        """Expose the metrics over HTTP."""
        if self.registry is not None:
            start_http_server(port, registry=self.registry)
        else:
            start_http_server(port)

    @contextmanager
    def time_operation(self, operation_name: str, **labels):
        """Observe the block's duration on a histogram."""
        start_time = time.time()
        try:
            yield
        finally:
            self.observe_histogram(operation_name, time.time() - start_time, **labels)

    def increment_counter(self, metric_name: str, **labels):
        metric = self._metrics.get(metric_name)
        if metric is not None:
            metric.labels(**labels).inc()

    def set_gauge(self, metric_name: str, value: float, **labels):
        metric = self._metrics.get(metric_name)
        if metric is not None:
            metric.labels(**labels).set(value)

    def observe_histogram(self, metric_name: str, value: float, **labels):
        metric = self._metrics.get(metric_name)
        if metric is not None:
            metric.labels(**labels).observe(value)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for the engine."""
    return MetricsCollector(service_name, registry)
