"""
Health, readiness and metrics endpoints
Bodies follow the draft "Health Check Response Format for HTTP APIs":
each check reports pass / warn / fail with an optional observed value
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine
from typing import Callable, Dict, Any, Mapping, Optional
import os
import time
import redis
from datetime import datetime
from enum import Enum
import psutil

from .logging_config import get_logger

logger = get_logger(__name__)

Check = Dict[str, Any]

class HealthStatus(str, Enum):
    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"

def _check(status: HealthStatus, component: str, value: Optional[float] = None,
           unit: Optional[str] = None, output: Optional[str] = None) -> Check:
    result = {"status": status.value, "componentType": component, "time": datetime.utcnow().isoformat() + "Z"}
    if value is not None:
        result["observedValue"] = round(value, 2)
        result["observedUnit"] = unit
    if output:
        result["output"] = output
    return result

def _threshold(value: float, fail_below: float, warn_below: float) -> HealthStatus:
    if value < fail_below:
        return HealthStatus.FAIL
    if value < warn_below:
        return HealthStatus.WARN
    return HealthStatus.PASS

def overall(checks: Mapping[str, Check]) -> HealthStatus:
    seen = {check["status"] for check in checks.values()}
    for status in (HealthStatus.FAIL, HealthStatus.WARN):
        if status.value in seen:
            return status
    return HealthStatus.PASS

class ServiceHealth:
    """
    Probes for one service

    Args:
        service_name: Reported as serviceId
        version: Reported service version
        engine_provider: Returns the engine in use; called per probe so a
            rebound engine is picked up
        broker_url: Task broker (Redis); unreachable is a warning, not a failure
        required_settings: Name -> value pairs that must be set for startup to pass
    """

    def __init__(
        self,
        service_name: str,
        version: str = "1.0.0",
        engine_provider: Optional[Callable[[], Engine]] = None,
        broker_url: Optional[str] = None,
        required_settings: Optional[Mapping[str, Any]] = None,
    ):
        self.service_name = service_name
        self.version = version
        self.engine_provider = engine_provider
        self.broker_url = broker_url
        self.required_settings = dict(required_settings or {})
        self.started_at = time.time()
        self.probe_count = 0

    def create_health_router(self) -> APIRouter:
        router = APIRouter(tags=["health"])

        @router.get("/health")
        def health() -> Dict[str, Any]:
            return {
                "status": HealthStatus.PASS.value,
                "service": self.service_name,
                "version": self.version,
                "releaseId": os.getenv("RELEASE_ID", "unknown"),
            }

        @router.get("/health/live")
        def live() -> Dict[str, Any]:
            return {"status": "alive"}

        @router.get("/health/ready")
        def ready() -> JSONResponse:
            checks = self.readiness_checks()
            status = overall(checks)
            return JSONResponse(
                status_code=503 if status is HealthStatus.FAIL else 200,
                content={
                    "status": status.value,
                    "serviceId": self.service_name,
                    "version": self.version,
                    "checks": checks,
                },
            )

        @router.get("/health/startup")
        def startup() -> JSONResponse:
            checks = self.startup_checks()
            failed = overall(checks) is HealthStatus.FAIL
            return JSONResponse(
                status_code=503 if failed else 200,
                content={"status": "starting" if failed else "started", "checks": checks},
            )

        @router.get("/metrics")
        def metrics() -> Dict[str, Any]:
            process = psutil.Process()
            memory = process.memory_info()
            return {
                "service": self.service_name,
                "version": self.version,
                "uptime_seconds": round(time.time() - self.started_at, 1),
                "probes": self.probe_count,
                "process": {
                    "rss_bytes": memory.rss,
                    "cpu_percent": process.cpu_percent(),
                    "threads": process.num_threads(),
                },
            }

        return router

    def readiness_checks(self) -> Dict[str, Check]:
        self.probe_count += 1
        checks = {}
        if self.engine_provider is not None:
            checks["database:connectivity"] = self._database()
        if self.broker_url:
            checks["broker:connectivity"] = self._broker()
        checks["storage:disk_space"] = self._disk()
        checks["system:memory"] = self._memory()
        return checks

    def startup_checks(self) -> Dict[str, Check]:
        checks = {"config:settings": self._settings()}
        if self.engine_provider is not None:
            checks["database:migrations"] = self._migrations()
        return checks

    def _database(self) -> Check:
        started = time.perf_counter()
        try:
            with self.engine_provider().connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            logger.error(f"Database probe failed: {e}")
            return _check(HealthStatus.FAIL, "datastore", output=str(e))
        return _check(HealthStatus.PASS, "datastore", (time.perf_counter() - started) * 1000, "ms")

    def _broker(self) -> Check:
        started = time.perf_counter()
        try:
            redis.from_url(self.broker_url, socket_connect_timeout=1).ping()
        except Exception as e:
            # Events fall back to the remediation table while the broker is down
            logger.warning(f"Broker probe failed: {e}")
            return _check(HealthStatus.WARN, "broker", output=str(e))
        return _check(HealthStatus.PASS, "broker", (time.perf_counter() - started) * 1000, "ms")

    def _disk(self) -> Check:
        free_gb = psutil.disk_usage("/").free / 1024 ** 3
        return _check(_threshold(free_gb, 1, 5), "system", free_gb, "GB")

    def _memory(self) -> Check:
        available_mb = psutil.virtual_memory().available / 1024 ** 2
        return _check(_threshold(available_mb, 100, 500), "system", available_mb, "MB")

    def _migrations(self) -> Check:
        try:
            applied = inspect(self.engine_provider()).has_table("alembic_version")
        except Exception as e:
            return _check(HealthStatus.FAIL, "datastore", output=str(e))
        if not applied:
            return _check(HealthStatus.WARN, "datastore", output="alembic_version table not found")
        return _check(HealthStatus.PASS, "datastore")

    def _settings(self) -> Check:
        missing = sorted(name for name, value in self.required_settings.items() if value in (None, ""))
        if missing:
            return _check(HealthStatus.FAIL, "configuration", output=f"Missing settings: {', '.join(missing)}")
        return _check(HealthStatus.PASS, "configuration")
