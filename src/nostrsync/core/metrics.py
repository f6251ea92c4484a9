"""
Prometheus metrics and their HTTP endpoint.

Metric objects are module-level singletons shared by every service.
[BaseService.run_forever()][nostrsync.core.base_service.BaseService.run_forever]
records cycle outcomes on its own; the backend coordinator adds per-item
dispatch latency and its own named gauges and counters through
``set_gauge()`` / ``inc_counter()``.

Nothing is exported unless ``metrics.enabled`` is set in the service
configuration; the endpoint itself is an aiohttp application served by
[MetricsServer][nostrsync.core.metrics.MetricsServer].

```text
SERVICE_INFO                 static labels, set once at startup
SERVICE_GAUGE                point-in-time values {service, name}
SERVICE_COUNTER              cumulative totals    {service, name}
CYCLE_DURATION_SECONDS       run() duration       {service}
DISPATCH_DURATION_SECONDS    one inbox item       {service, item}
```
"""

from __future__ import annotations

from aiohttp import web
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)
from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class MetricsConfig(BaseModel):
    """Where (and whether) to expose ``/metrics``.

    Bind ``host`` to ``0.0.0.0`` only when a scraper outside the machine
    needs access.
    """

    enabled: bool = Field(default=False, description="Enable metrics collection")
    port: int = Field(default=8000, ge=1024, le=65535, description="Metrics HTTP port")
    host: str = Field(default="127.0.0.1", description="Metrics HTTP bind address")
    path: str = Field(default="/metrics", description="Metrics endpoint path")


# ---------------------------------------------------------------------------
# Metric Objects
# ---------------------------------------------------------------------------

SERVICE_INFO = Info(
    "nostrsync_service",
    "Static service information",
)

CYCLE_DURATION_SECONDS = Histogram(
    "nostrsync_cycle_duration_seconds",
    "Duration of one service cycle in seconds",
    ["service"],
    buckets=(0.5, 1, 5, 10, 30, 60, 120, 300, 600),
)

# Labels set by run_forever: cycles_success, cycles_failed, errors_<Type>,
# consecutive_failures, last_cycle_timestamp. The backend adds e.g.
# pending_events, relays_connected, items_dispatched, items_dropped.
SERVICE_GAUGE = Gauge(
    "nostrsync_service_gauge",
    "Point-in-time service values",
    ["service", "name"],
)

SERVICE_COUNTER = Counter(
    "nostrsync_service_counter",
    "Cumulative service totals",
    ["service", "name"],
)

DISPATCH_DURATION_SECONDS = Histogram(
    "nostrsync_dispatch_duration_seconds",
    "Time spent dispatching one command or relay message",
    ["service", "item"],
    buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5),
)


# ---------------------------------------------------------------------------
# HTTP Server
# ---------------------------------------------------------------------------


class MetricsServer:
    """aiohttp server answering Prometheus scrapes on ``config.path``.

    Examples:
        ```python
        server = MetricsServer(MetricsConfig(enabled=True, port=9100))
        await server.start()
        ...
        await server.stop()
        ```
    """

    def __init__(self, config: MetricsConfig) -> None:
        self._config = config
        self._runner: web.AppRunner | None = None

    @property
    def is_running(self) -> bool:
        return self._runner is not None

    async def start(self) -> None:
        """Bind and serve, unless metrics are disabled.

        Raises:
            OSError: If the address cannot be bound.
        """
        if not self._config.enabled or self._runner is not None:
            return

        app = web.Application()
        app.router.add_get(self._config.path, self._handle_metrics)

        runner = web.AppRunner(app, access_log=None)
        await runner.setup()
        site = web.TCPSite(runner, self._config.host, self._config.port)
        try:
            await site.start()
        except OSError:
            await runner.cleanup()
            raise
        self._runner = runner

    async def stop(self) -> None:
        """Release the port. No-op when not started."""
        if self._runner is None:
            return
        runner, self._runner = self._runner, None
        await runner.cleanup()

    @staticmethod
    async def _handle_metrics(_request: web.Request) -> web.Response:
        return web.Response(body=generate_latest(), headers={"Content-Type": CONTENT_TYPE_LATEST})


async def start_metrics_server(config: MetricsConfig | None = None) -> MetricsServer:
    """Create a [MetricsServer][nostrsync.core.metrics.MetricsServer] and start it.

    The caller owns the returned server and must ``stop()`` it on shutdown.
    """
    server = MetricsServer(config or MetricsConfig())
    await server.start()
    return server
