"""
Shared metrics for the AEMaaCS client.
"""

from prometheus_client import Counter, Histogram, Gauge, Info, CollectorRegistry
from dataclasses import dataclass, asdict
from typing import Dict, Any, Optional, List
import math
import time

from aem_shared.logging import get_logger


_CIRCUIT_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}


class MetricsCollector:
    """Prometheus metrics for orchestrated AEM calls.

    Each collector owns its registry so several clients (or tests) can live
    in one process without duplicate-registration errors.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up client metrics."""

        self._metrics["client_info"] = Info(
            "aem_client",
            "AEM client information",
            registry=self.registry
        )
        self._metrics["client_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        self._metrics["requests_total"] = Counter(
            "aem_requests_total",
            "Total orchestrated AEM requests",
            ["method", "operation", "outcome"],
            registry=self.registry
        )

        self._metrics["request_duration_seconds"] = Histogram(
            "aem_request_duration_seconds",
            "Orchestrated AEM request duration in seconds",
            ["method", "operation"],
            registry=self.registry
        )

        self._metrics["errors_total"] = Counter(
            "aem_errors_total",
            "Total failed AEM requests by error kind",
            ["error_kind"],
            registry=self.registry
        )

        self._metrics["cache_events_total"] = Counter(
            "aem_cache_events_total",
            "Cache lookups by result",
            ["result"],
            registry=self.registry
        )

        self._metrics["circuit_state"] = Gauge(
            "aem_circuit_state",
            "Circuit breaker state (0=closed, 1=half_open, 2=open)",
            ["circuit"],
            registry=self.registry
        )

        self._metrics["transport_attempts_total"] = Counter(
            "aem_transport_attempts_total",
            "Transport calls actually sent to AEM",
            ["operation"],
            registry=self.registry
        )

        self._metrics["fallbacks_total"] = Counter(
            "aem_fallbacks_total",
            "Fallback invocations",
            ["operation", "outcome"],
            registry=self.registry
        )

        self._metrics["health_checks_total"] = Counter(
            "aem_health_checks_total",
            "Health check results",
            ["status"],
            registry=self.registry
        )

    def record_request(self, method: str, operation: str, success: bool, duration: float):
        """Record one orchestrated request."""
        self._metrics["requests_total"].labels(
            method=method,
            operation=operation,
            outcome="success" if success else "failure"
        ).inc()

        self._metrics["request_duration_seconds"].labels(
            method=method,
            operation=operation
        ).observe(duration)

    def record_error(self, error_kind: str):
        self._metrics["errors_total"].labels(error_kind=error_kind).inc()

    def record_cache_event(self, hit: bool):
        self._metrics["cache_events_total"].labels(result="hit" if hit else "miss").inc()

    def record_circuit_state(self, circuit: str, state: str):
        self._metrics["circuit_state"].labels(circuit=circuit).set(_CIRCUIT_STATE_VALUES.get(state, 0))

    def record_transport_attempts(self, operation: str, attempts: int):
        if attempts:
            self._metrics["transport_attempts_total"].labels(operation=operation).inc(attempts)

    def record_fallback(self, operation: str, success: bool):
        self._metrics["fallbacks_total"].labels(
            operation=operation,
            outcome="success" if success else "failure"
        ).inc()

    def record_health_check(self, status: str):
        self._metrics["health_checks_total"].labels(status=status).inc()


@dataclass
class OperationMetrics:
    """Aggregated timings for one logical operation."""

    operation: str
    count: int = 0
    total_duration: float = 0.0
    avg_duration: float = 0.0
    min_duration: float = math.inf
    max_duration: float = 0.0
    success_count: int = 0
    error_count: int = 0
    success_rate: float = 0.0


class PerformanceMonitor:
    """In-process performance counters keyed by operation name."""

    def __init__(self, slow_threshold: float = 5.0):
        self.slow_threshold = slow_threshold
        self._metrics: Dict[str, OperationMetrics] = {}
        self.logger = get_logger("performance_monitor")

    def start_operation(self, operation_id: str, operation: str) -> "OperationTimer":
        return OperationTimer(operation_id, operation, self)

    def record_operation(self, operation_id: str, operation: str, duration: float, success: bool):
        metrics = self._metrics.setdefault(operation, OperationMetrics(operation=operation))

        metrics.count += 1
        metrics.total_duration += duration
        metrics.avg_duration = metrics.total_duration / metrics.count
        metrics.min_duration = min(metrics.min_duration, duration)
        metrics.max_duration = max(metrics.max_duration, duration)
        if success:
            metrics.success_count += 1
        else:
            metrics.error_count += 1
        metrics.success_rate = metrics.success_count / metrics.count

        if duration > self.slow_threshold:
            self.logger.warning(
                "Slow operation detected",
                operation_id=operation_id,
                operation=operation,
                duration=duration,
            )

    def get_metrics(self) -> List[Dict[str, Any]]:
        return [asdict(m) for m in self._metrics.values()]

    def get_metrics_for_operation(self, operation: str) -> Optional[OperationMetrics]:
        return self._metrics.get(operation)

    def reset_metrics(self):
        self._metrics.clear()


class OperationTimer:
    """Measures one operation and reports it to its monitor exactly once."""

    def __init__(self, operation_id: str, operation: str, monitor: PerformanceMonitor):
        self.operation_id = operation_id
        self.operation = operation
        self._monitor = monitor
        self._start = time.monotonic()
        self._duration: Optional[float] = None

    def end(self, success: bool) -> float:
        if self._duration is None:
            self._duration = time.monotonic() - self._start
            self._monitor.record_operation(self.operation_id, self.operation, self._duration, success)
        return self._duration
