"""
Health check aggregation — deep health probe for all subsystems.

Checks:
    • Storage reachability (activity store ping)
    • Deadline scheduler running / pending checks
    • Email sender pool (active accounts or a legacy fallback account)
    • SMS channel configuration

Returns a structured health report suitable for:
    - Kubernetes liveness/readiness probes
    - Load balancer health checks
    - Monitoring dashboards
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List

from backend.app.core.config import settings

if TYPE_CHECKING:
    from backend.app.services import ServiceContainer

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # alarms may not reach every contact
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    latency_ms: float = 0.0
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.message:
            d["message"] = self.message
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class HealthReport:
    status: HealthStatus = HealthStatus.HEALTHY
    version: str = settings.APP_VERSION
    environment: str = settings.ENVIRONMENT
    timestamp: str = ""
    uptime_seconds: float = 0.0
    components: List[ComponentHealth] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": self.version,
            "environment": self.environment,
            "timestamp": self.timestamp or datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": round(self.uptime_seconds, 1),
            "components": [c.to_dict() for c in self.components],
        }


# Track application start time
_start_time = time.monotonic()


async def check_storage(container: "ServiceContainer") -> ComponentHealth:
    comp = ComponentHealth(name="storage", details={"backend": container.backend})
    start = time.monotonic()
    try:
        await container.store.ping()
        comp.message = "Store reachable"
    except Exception as e:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = str(e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_scheduler(container: "ServiceContainer") -> ComponentHealth:
    comp = ComponentHealth(name="scheduler")
    start = time.monotonic()
    scheduler = container.scheduler
    comp.details = {
        "jobstore": settings.SCHEDULER_JOBSTORE,
        "compact": scheduler.compact,
    }
    try:
        comp.details["pending_checks"] = scheduler.pending_count()
    except Exception as e:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = str(e)
    else:
        if scheduler.running:
            comp.message = "Running"
        else:
            comp.status = HealthStatus.UNHEALTHY
            comp.message = "Scheduler not running; deadline checks will not fire"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_sender_pool(container: "ServiceContainer") -> ComponentHealth:
    comp = ComponentHealth(name="sender_pool")
    start = time.monotonic()
    try:
        active = await container.sender_repository.list_active()
        total = await container.sender_repository.count()
        legacy_user = await container.settings_provider.get_setting("EMAIL_USER")
        comp.details = {"active": len(active), "total": total}
        if active:
            comp.message = f"{len(active)} active sender(s)"
        elif total == 0 and legacy_user:
            comp.message = "Legacy account will be used"
        else:
            comp.status = HealthStatus.DEGRADED
            comp.message = "No active email sender; email alarms will fail"
    except Exception as e:
        comp.status = HealthStatus.DEGRADED
        comp.message = str(e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_sms() -> ComponentHealth:
    comp = ComponentHealth(name="sms", details={"provider": settings.SMS_PROVIDER})
    if settings.SMS_PROVIDER == "simulation":
        comp.status = HealthStatus.DEGRADED if settings.is_production else HealthStatus.HEALTHY
        comp.message = "Simulation mode, SMS is only logged"
    elif settings.SMS_PROVIDER == "http" and not settings.SMS_GATEWAY_URL:
        comp.status = HealthStatus.DEGRADED
        comp.message = "SMS_GATEWAY_URL is not configured"
    else:
        comp.message = "Gateway configured"
    return comp


async def run_health_check(container: "ServiceContainer") -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    checks = [
        check_storage(container),
        check_scheduler(container),
        check_sender_pool(container),
        check_sms(),
    ]

    # Run all checks
    for coro in checks:
        comp = await coro
        report.components.append(comp)

    # Aggregate status
    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    return report
