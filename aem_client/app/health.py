"""
Health reporting for an AEM client instance.
"""

import asyncio
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, Optional, TYPE_CHECKING

from pydantic import BaseModel, Field

from aem_shared.circuit_breaker import CircuitBreakerState
from aem_shared.logging import get_logger
from .models import OperationContext, RequestOptions

if TYPE_CHECKING:
    from .client import AEMHttpClient


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


_SEVERITY = {HealthStatus.HEALTHY: 0, HealthStatus.DEGRADED: 1, HealthStatus.UNHEALTHY: 2}


class ComponentHealth(BaseModel):
    status: HealthStatus
    message: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    last_check: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    response_time: Optional[float] = None


class HealthReport(BaseModel):
    status: HealthStatus
    service: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    uptime_seconds: float
    components: Dict[str, ComponentHealth]


class HealthChecker:
    """Aggregates breaker, cache and connectivity health for one client.

    The overall status is the worst status of any component.
    """

    def __init__(self, client: "AEMHttpClient", probe_timeout: float = 5.0):
        self.client = client
        self.probe_timeout = probe_timeout
        self.logger = get_logger("aem.health")
        self._started = time.monotonic()
        self.last_report: Optional[HealthReport] = None

    async def check(self) -> HealthReport:
        breakers, cache, connectivity = await asyncio.gather(
            self.check_circuit_breakers(),
            self.check_cache(),
            self.check_connectivity(),
        )
        components = {
            "circuit_breakers": breakers,
            "cache": cache,
            "aem_connectivity": connectivity,
        }
        overall = max((c.status for c in components.values()), key=_SEVERITY.__getitem__)

        report = HealthReport(
            status=overall,
            service=self.client.config.service_name,
            uptime_seconds=time.monotonic() - self._started,
            components=components,
        )
        self.last_report = report
        self.client.metrics.record_health_check(overall.value)
        if overall != HealthStatus.HEALTHY:
            self.logger.warning(
                "Health check reported problems",
                status=overall.value,
                components={name: c.status.value for name, c in components.items()},
            )
        return report

    async def check_circuit_breakers(self) -> ComponentHealth:
        states = self.client.circuit_breakers.get_all_states()
        open_circuits = [
            name for name, state in states.items()
            if state["state"] == CircuitBreakerState.OPEN.value
        ]
        if open_circuits:
            return ComponentHealth(
                status=HealthStatus.DEGRADED,
                message=f"{len(open_circuits)} circuit(s) open",
                details={"open": open_circuits, "total": len(states)},
            )
        return ComponentHealth(
            status=HealthStatus.HEALTHY,
            message="All circuits closed",
            details={"total": len(states)},
        )

    async def check_cache(self) -> ComponentHealth:
        if self.client.cache is None:
            return ComponentHealth(status=HealthStatus.HEALTHY, message="Caching disabled")

        start = time.monotonic()
        try:
            stats = await self.client.cache.get_stats()
        except Exception as e:
            self.logger.error("Cache health check failed", error=str(e))
            return ComponentHealth(
                status=HealthStatus.UNHEALTHY,
                message="Cache statistics unavailable",
                details={"error": str(e)},
                response_time=time.monotonic() - start,
            )

        if stats.get("available") is False:
            status, message = HealthStatus.DEGRADED, "Cache backend unreachable"
        else:
            status, message = HealthStatus.HEALTHY, "Cache is operational"
        return ComponentHealth(
            status=status,
            message=message,
            details={key: stats.get(key) for key in ("backend", "size", "hit_rate")},
            response_time=time.monotonic() - start,
        )

    async def check_connectivity(self) -> ComponentHealth:
        path = self.client.config.health_check_path
        start = time.monotonic()
        response = await self.client.get(
            path,
            options=RequestOptions(
                timeout=self.probe_timeout,
                retries=1,
                cache=False,
                context=OperationContext(operation="healthCheck", resource=path),
            ),
        )
        elapsed = time.monotonic() - start

        if response.success:
            return ComponentHealth(
                status=HealthStatus.HEALTHY,
                message="AEM is accessible and responding",
                response_time=elapsed,
            )

        error = response.error
        # Any HTTP answer proves the instance is reachable
        status = HealthStatus.DEGRADED if error.details.get("status_code") else HealthStatus.UNHEALTHY
        return ComponentHealth(
            status=status,
            message=error.message,
            details={"error_code": error.code.value, "status_code": error.details.get("status_code")},
            response_time=elapsed,
        )
