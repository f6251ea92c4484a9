"""
Generic lifecycle for long-running nostrsync services.

``BaseService[ConfigT]`` gives a service a named
[Logger][nostrsync.core.logger.Logger], a shutdown flag backed by
``asyncio.Event``, an interval loop
([run_forever()][nostrsync.core.base_service.BaseService.run_forever]) with
a consecutive-failure limit, and Prometheus bookkeeping through
[nostrsync.core.metrics][nostrsync.core.metrics].

Lifecycle:

```text
async with store:              # LocalCacheStore connects the pool
    async with service:        # clears the shutdown flag
        await service.run_forever()   # or: await service.run()  (--once)
```

See Also:
    [LocalCacheStore][nostrsync.core.store.LocalCacheStore]: Injected into
        every service.
    [BackendCoordinator][nostrsync.services.backend.service.BackendCoordinator]:
        The concrete service of this package.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, ClassVar, Generic, Self, TypeVar, cast

from pydantic import BaseModel, Field

from .logger import Logger
from .metrics import (
    CYCLE_DURATION_SECONDS,
    SERVICE_COUNTER,
    SERVICE_GAUGE,
    SERVICE_INFO,
    MetricsConfig,
)
from .yaml import load_yaml


if TYPE_CHECKING:
    from types import TracebackType

    from nostrsync.models.constants import ServiceName

    from .store import LocalCacheStore


# ---------------------------------------------------------------------------
# Base Configuration
# ---------------------------------------------------------------------------


class BaseServiceConfig(BaseModel):
    """Fields every looping service shares.

    Subclass to add service-specific sections.
    """

    interval: float = Field(default=60.0, ge=1.0, description="Seconds between run cycles")
    max_consecutive_failures: int = Field(
        default=5,
        ge=0,
        description="Stop after this many consecutive failed cycles (0 = unlimited)",
    )
    metrics: MetricsConfig = Field(
        default_factory=MetricsConfig,
        description="Prometheus metrics configuration",
    )


ConfigT = TypeVar("ConfigT", bound=BaseServiceConfig)


class BaseService(ABC, Generic[ConfigT]):
    """Abstract base of every service.

    Subclasses set ``SERVICE_NAME`` and ``CONFIG_CLASS`` and implement
    [run()][nostrsync.core.base_service.BaseService.run].

    Attributes:
        SERVICE_NAME: Identifier used for the logger and metric labels.
        CONFIG_CLASS: Pydantic model the factories parse configuration into.
        _store: [LocalCacheStore][nostrsync.core.store.LocalCacheStore]
            used for all persistence.
        _config: Typed configuration.
        _logger: Logger named after the service.
        _shutdown_event: Set once shutdown was requested.
    """

    SERVICE_NAME: ClassVar[ServiceName]
    CONFIG_CLASS: ClassVar[type[BaseModel]]

    def __init__(self, store: LocalCacheStore, config: ConfigT | None = None) -> None:
        self._store = store
        self._config: ConfigT = (
            config if config is not None else cast("ConfigT", self.CONFIG_CLASS())
        )
        self._logger = Logger(self.SERVICE_NAME)
        self._shutdown_event = asyncio.Event()

    @property
    def config(self) -> ConfigT:
        return self._config

    @abstractmethod
    async def run(self) -> None:
        """Do one bounded unit of work and return.

        Called once per cycle by
        [run_forever()][nostrsync.core.base_service.BaseService.run_forever].
        """
        ...

    def request_shutdown(self) -> None:
        """Ask the service to stop. Safe to call from a signal handler."""
        self._shutdown_event.set()

    @property
    def is_running(self) -> bool:
        return not self._shutdown_event.is_set()

    async def wait(self, timeout: float) -> bool:  # noqa: ASYNC109
        """Sleep up to *timeout* seconds, waking early on shutdown.

        Returns:
            ``True`` if shutdown was requested, ``False`` if the time elapsed.
        """
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=timeout)
        except TimeoutError:
            return False
        return True

    async def run_forever(self) -> None:
        """Call ``run()`` every ``config.interval`` seconds until told to stop.

        A failed cycle is logged and counted; after
        ``config.max_consecutive_failures`` failures in a row the loop gives
        up (``0`` means never). A successful cycle resets the streak.
        ``CancelledError``, ``KeyboardInterrupt`` and ``SystemExit`` are
        never treated as failures and always propagate.

        Metrics (when enabled): counters ``cycles_success``,
        ``cycles_failed``, ``errors_<ExceptionType>``; gauges
        ``consecutive_failures``, ``last_cycle_timestamp``; histogram
        ``CYCLE_DURATION_SECONDS``.
        """
        interval = self._config.interval
        max_failures = self._config.max_consecutive_failures

        if self._config.metrics.enabled:
            SERVICE_INFO.info({"service": str(self.SERVICE_NAME)})

        self._logger.info(
            "run_forever_started", interval=interval, max_consecutive_failures=max_failures
        )

        failures = 0
        while self.is_running:
            started = time.monotonic()
            try:
                await self.run()
            except (asyncio.CancelledError, KeyboardInterrupt, SystemExit):
                raise
            except Exception as e:  # noqa: BLE001  # top-level boundary of the cycle loop
                failures += 1
                self.inc_counter("cycles_failed")
                self.inc_counter(f"errors_{type(e).__name__}")
                self.set_gauge("consecutive_failures", failures)
                self._logger.error("run_cycle_error", error=str(e), consecutive_failures=failures)
                if max_failures and failures >= max_failures:
                    self._logger.critical(
                        "max_consecutive_failures_reached", failures=failures, limit=max_failures
                    )
                    break
            else:
                failures = 0
                self.inc_counter("cycles_success")
                if self._config.metrics.enabled:
                    CYCLE_DURATION_SECONDS.labels(service=self.SERVICE_NAME).observe(
                        time.monotonic() - started
                    )
                self.set_gauge("last_cycle_timestamp", time.time())
                self.set_gauge("consecutive_failures", 0)
                self._logger.info("cycle_completed", next_cycle_s=interval)

            if await self.wait(interval):
                break

        self._logger.info("run_forever_stopped")

    # -------------------------------------------------------------------------
    # Factory Methods
    # -------------------------------------------------------------------------

    @classmethod
    def from_yaml(cls, config_path: str, store: LocalCacheStore, **kwargs: Any) -> Self:
        """Build the service from a YAML file parsed into ``CONFIG_CLASS``."""
        return cls.from_dict(load_yaml(config_path), store=store, **kwargs)

    @classmethod
    def from_dict(cls, data: dict[str, Any], store: LocalCacheStore, **kwargs: Any) -> Self:
        """Build the service from a mapping parsed into ``CONFIG_CLASS``.

        Raises:
            pydantic.ValidationError: If *data* does not match the model.
        """
        config = cast("ConfigT", cls.CONFIG_CLASS(**data))
        return cls(store=store, config=config, **kwargs)

    # -------------------------------------------------------------------------
    # Context Manager
    # -------------------------------------------------------------------------

    async def __aenter__(self) -> Self:
        self._shutdown_event.clear()
        self._logger.info("service_started")
        return self

    async def __aexit__(
        self,
        _exc_type: type[BaseException] | None,
        _exc_val: BaseException | None,
        _exc_tb: TracebackType | None,
    ) -> None:
        self._shutdown_event.set()
        self._logger.info("service_stopped")

    # -------------------------------------------------------------------------
    # Custom Metrics
    # -------------------------------------------------------------------------

    def set_gauge(self, name: str, value: float) -> None:
        """Set ``SERVICE_GAUGE{service, name}``. No-op when metrics are off."""
        if not self._config.metrics.enabled:
            return
        SERVICE_GAUGE.labels(service=self.SERVICE_NAME, name=name).set(value)

    def inc_counter(self, name: str, value: float = 1) -> None:
        """Increment ``SERVICE_COUNTER{service, name}``. No-op when metrics are off."""
        if not self._config.metrics.enabled:
            return
        SERVICE_COUNTER.labels(service=self.SERVICE_NAME, name=name).inc(value)
