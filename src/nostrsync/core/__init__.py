"""Infrastructure layer: database, service lifecycle, logging, metrics.

Depends only on [nostrsync.models][nostrsync.models]; depended upon by
[nostrsync.services][nostrsync.services].

Attributes:
    Pool: asyncpg pool with retry and JSON codecs.
        See [Pool][nostrsync.core.pool.Pool].
    LocalCacheStore: Facade handing out typed
        [CacheSession][nostrsync.core.store.CacheSession] objects. Services
        use it, never the pool directly.
    BaseService: Generic service lifecycle with ``run()`` /
        ``run_forever()``, YAML factories and metrics.
    Logger: Structured ``key=value`` / JSON logger.
    MetricsServer: Prometheus ``/metrics`` endpoint.
    load_yaml: Safe YAML loading.

Examples:
    ```python
    from nostrsync.core import LocalCacheStore

    store = LocalCacheStore.from_yaml("config/store.yaml")
    async with store:
        async with store.session() as s:
            contacts = await s.fetch_contacts()
    ```
"""

from .base_service import BaseService, BaseServiceConfig, ConfigT
from .logger import Logger, StructuredFormatter, format_kv_pairs
from .metrics import (
    CYCLE_DURATION_SECONDS,
    DISPATCH_DURATION_SECONDS,
    SERVICE_COUNTER,
    SERVICE_GAUGE,
    SERVICE_INFO,
    MetricsConfig,
    MetricsServer,
    start_metrics_server,
)
from .pool import (
    DatabaseConfig,
    Pool,
    PoolConfig,
    PoolLimitsConfig,
    PoolRetryConfig,
    PoolTimeoutsConfig,
    ServerSettingsConfig,
)
from .store import CacheSession, LocalCacheStore, StoreConfig, StoreTimeoutsConfig
from .yaml import load_yaml


__all__ = [
    "CYCLE_DURATION_SECONDS",
    "DISPATCH_DURATION_SECONDS",
    "SERVICE_COUNTER",
    "SERVICE_GAUGE",
    "SERVICE_INFO",
    "BaseService",
    "BaseServiceConfig",
    "CacheSession",
    "ConfigT",
    "DatabaseConfig",
    "LocalCacheStore",
    "Logger",
    "MetricsConfig",
    "MetricsServer",
    "Pool",
    "PoolConfig",
    "PoolLimitsConfig",
    "PoolRetryConfig",
    "PoolTimeoutsConfig",
    "ServerSettingsConfig",
    "StoreConfig",
    "StoreTimeoutsConfig",
    "StructuredFormatter",
    "format_kv_pairs",
    "load_yaml",
    "start_metrics_server",
]
