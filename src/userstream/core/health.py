"""
Health checker for the service dependencies.

- Durable store reachable (required for readiness)
- Cache reachable (reported, never blocks readiness)
- Ingestion pipeline running (required when enabled)
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import structlog

from .interfaces import UserCache, UserStore
from .pipeline import IngestionPipeline

logger = structlog.get_logger(__name__)

CHECK_TIMEOUT_SECONDS = 2.0


@dataclass
class HealthCheck:
    """Individual health check result."""
    name: str
    status: str  # "healthy", "unhealthy", "degraded"
    message: str
    details: Dict[str, Any]
    last_check: float


@dataclass
class HealthStatus:
    """Overall health status."""
    is_healthy: bool
    checks: Dict[str, HealthCheck]
    failed_checks: List[str]
    timestamp: float


class HealthChecker:
    """Readiness checks run in parallel on each /readyz call."""

    def __init__(
        self,
        store: UserStore,
        cache: UserCache,
        pipeline: Optional[IngestionPipeline] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.pipeline = pipeline

    async def check_all(self) -> HealthStatus:
        """Perform all health checks and return overall status."""
        results = await asyncio.gather(
            self._check_store(),
            self._check_cache(),
            return_exceptions=True,
        )

        checks: Dict[str, HealthCheck] = {}
        for name, result in zip(["database", "cache"], results):
            if isinstance(result, BaseException):
                status = "degraded" if name == "cache" else "unhealthy"
                checks[name] = HealthCheck(
                    name=name,
                    status=status,
                    message=f"Check failed: {result}",
                    details={"error": str(result), "error_type": type(result).__name__},
                    last_check=time.time(),
                )
            else:
                checks[name] = result

        checks["pipeline"] = self._check_pipeline()

        # A degraded cache only slows reads down
        failed_checks = [name for name, check in checks.items() if check.status == "unhealthy"]

        return HealthStatus(
            is_healthy=not failed_checks,
            checks=checks,
            failed_checks=failed_checks,
            timestamp=time.time(),
        )

    async def _check_store(self) -> HealthCheck:
        await asyncio.wait_for(self.store.ping(), timeout=CHECK_TIMEOUT_SECONDS)  # type: ignore[attr-defined]
        return HealthCheck(
            name="database",
            status="healthy",
            message="Database reachable",
            details={},
            last_check=time.time(),
        )

    async def _check_cache(self) -> HealthCheck:
        await asyncio.wait_for(self.cache.ping(), timeout=CHECK_TIMEOUT_SECONDS)  # type: ignore[attr-defined]
        return HealthCheck(
            name="cache",
            status="healthy",
            message="Cache reachable",
            details={},
            last_check=time.time(),
        )

    def _check_pipeline(self) -> HealthCheck:
        if self.pipeline is None:
            return HealthCheck(
                name="pipeline",
                status="healthy",
                message="Ingestion pipeline disabled",
                details={},
                last_check=time.time(),
            )

        state = self.pipeline.state.value
        stats = self.pipeline.error_sink.stats
        healthy = self.pipeline.is_running and not self.pipeline.failed_stages
        return HealthCheck(
            name="pipeline",
            status="healthy" if healthy else "unhealthy",
            message=f"Ingestion pipeline {state}",
            details={
                "state": state,
                "errors_total": stats.total,
                "errors_dropped": stats.dropped,
                "failed_stages": list(self.pipeline.failed_stages),
            },
            last_check=time.time(),
        )
