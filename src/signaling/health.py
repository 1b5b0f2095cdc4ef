"""Health check endpoints for the signaling server.

Provides HTTP health check endpoints for load balancers, monitoring systems,
and orchestration tools (e.g., Docker healthcheck, Kubernetes liveness probe),
plus a Prometheus metrics endpoint.
"""

import logging
import time

from aiohttp import web

from src.signaling.media.base import MediaEngine
from src.signaling.metrics import MetricsCollector, get_metrics_collector
from src.signaling.registry import SessionRegistry

logger = logging.getLogger(__name__)


class HealthCheckHandler:
    """Health check handler for the signaling server.

    Provides /health endpoint that checks:
    - Media engine liveness
    - Registry size (clients, producers, transports)
    - Service uptime
    """

    def __init__(
        self,
        registry: SessionRegistry | None = None,
        engine: MediaEngine | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        """Initialize health check handler.

        Args:
            registry: SessionRegistry instance (optional)
            engine: MediaEngine instance (optional)
            metrics: Metrics collector (defaults to the global collector)
        """
        self.registry = registry
        self.engine = engine
        self.start_time = time.time()
        self.metrics_collector = metrics or get_metrics_collector()

    def _uptime(self) -> float:
        return time.time() - self.start_time

    def _registry_counts(self) -> dict[str, int]:
        if self.registry is None:
            return {}
        snapshot = self.registry.snapshot()
        return {
            "clients": snapshot.clients,
            "producers": snapshot.producers,
            "transports": snapshot.transports,
        }

    async def health_check(self, request: web.Request) -> web.Response:
        """Health check endpoint.

        Returns:
            200 OK: Media engine is alive
            503 Service Unavailable: Media engine is dead or missing

        Response format:
        {
            "status": "healthy" | "unhealthy",
            "uptime_seconds": float,
            "media_engine": bool,
            "registry": {"clients": int, "producers": int, "transports": int}
        }
        """
        engine_ok = self.engine is not None and self.engine.is_alive
        body = {
            "status": "healthy" if engine_ok else "unhealthy",
            "uptime_seconds": self._uptime(),
            "media_engine": engine_ok,
            "registry": self._registry_counts(),
        }
        logger.debug("Health check performed", extra={"status": body["status"]})
        return web.json_response(body, status=200 if engine_ok else 503)

    async def readiness_check(self, request: web.Request) -> web.Response:
        """Readiness check endpoint.

        Ready means the media engine is alive and accepting work, which is
        the same condition as /health.
        """
        return await self.health_check(request)

    async def liveness_check(self, request: web.Request) -> web.Response:
        """Liveness check endpoint.

        Returns OK if the process is running, even if the engine is down.
        """
        return web.json_response({"status": "alive", "uptime_seconds": self._uptime()})

    async def metrics_endpoint(self, request: web.Request) -> web.Response:
        """Prometheus metrics endpoint (text format 0.0.4)."""
        try:
            text = self.metrics_collector.export_prometheus()
        except Exception as e:
            logger.error("Prometheus export failed", extra={"error": str(e)}, exc_info=True)
            return web.Response(text=f"# export failed: {e}\n", status=500)

        return web.Response(
            text=text,
            content_type="text/plain",
            charset="utf-8",
            headers={"X-Prometheus-Format-Version": "0.0.4"},
        )

    async def metrics_summary(self, request: web.Request) -> web.Response:
        """JSON metrics summary for dashboards and debugging."""
        try:
            summary = self.metrics_collector.get_summary()
        except Exception as e:
            logger.error("Metrics summary failed", extra={"error": str(e)}, exc_info=True)
            return web.json_response({"status": "error", "error": str(e)}, status=500)

        return web.json_response(
            {"status": "ok", "uptime_seconds": self._uptime(), "metrics": summary}
        )


def setup_health_routes(
    app: web.Application,
    registry: SessionRegistry | None = None,
    engine: MediaEngine | None = None,
    metrics: MetricsCollector | None = None,
) -> None:
    """Register health, readiness, liveness and metrics routes on ``app``."""
    handler = HealthCheckHandler(registry=registry, engine=engine, metrics=metrics)

    app.add_routes(
        [
            web.get("/health", handler.health_check),
            web.get("/readiness", handler.readiness_check),
            web.get("/liveness", handler.liveness_check),
            web.get("/metrics", handler.metrics_endpoint),
            web.get("/metrics/summary", handler.metrics_summary),
        ]
    )
    logger.info("Health routes registered", extra={"routes": len(app.router.routes())})
