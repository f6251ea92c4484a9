"""CLI entry point for nostrsync services.

Runs a service in one-shot mode (``--once``: a single sync, then exit) or
continuously, syncing every ``interval`` seconds with a Prometheus metrics
server alongside. Without a presentation layer attached, notifications are
drained into the log.

Examples:
    ```bash
    python -m nostrsync backend --once
    python -m nostrsync backend --log-level DEBUG
    python -m nostrsync backend --config config/services/backend.yaml
    ```
"""

import argparse
import asyncio
import contextlib
import logging
import signal
import sys
from pathlib import Path
from typing import Any, NamedTuple

from nostrsync.core import LocalCacheStore, start_metrics_server
from nostrsync.core.base_service import BaseService
from nostrsync.core.exceptions import ConnectionPoolError
from nostrsync.core.logger import Logger, StructuredFormatter
from nostrsync.core.yaml import load_yaml
from nostrsync.models.constants import ServiceName
from nostrsync.services.backend import BackendCoordinator


CONFIG_BASE = Path("config")
STORE_CONFIG = CONFIG_BASE / "store.yaml"


class ServiceEntry(NamedTuple):
    """Registry entry mapping a service to its class and default config path."""

    cls: type[BaseService[Any]]
    config_path: Path


SERVICE_REGISTRY: dict[str, ServiceEntry] = {
    ServiceName.BACKEND: ServiceEntry(
        BackendCoordinator, CONFIG_BASE / "services" / "backend.yaml"
    ),
}

logger = Logger("cli")


async def _log_notifications(service: BackendCoordinator) -> None:
    while True:
        notification = await service.next_notification()
        logger.debug("notification", type=type(notification).__name__)


async def run_service(
    service_name: str,
    service_class: type[BaseService[Any]],
    store: LocalCacheStore,
    service_dict: dict[str, Any],
    *,
    once: bool,
) -> int:
    """Run a service in one-shot or continuous mode.

    Args:
        service_name: Service identifier used for logging.
        service_class: The BaseService subclass to instantiate.
        store: Connected cache store.
        service_dict: Parsed service configuration (without ``pool`` key).
        once: If True, sync once and exit. If False, run until signalled.

    Returns:
        Exit code: 0 for success, 1 for failure.
    """
    if service_dict:
        service = service_class.from_dict(service_dict, store=store)
    else:
        service = service_class(store=store)

    drain: asyncio.Task[None] | None = None
    if isinstance(service, BackendCoordinator):
        drain = asyncio.create_task(_log_notifications(service))

    try:
        if once:
            try:
                async with service:
                    await service.run()
                logger.info(f"{service_name}_completed")
                return 0
            except Exception as e:  # noqa: BLE001  # CLI error boundary for one-shot mode
                logger.error(f"{service_name}_failed", error=str(e))
                return 1

        metrics_config = service.config.metrics
        metrics_server = await start_metrics_server(metrics_config)
        if metrics_config.enabled:
            logger.info(
                "metrics_server_started",
                host=metrics_config.host,
                port=metrics_config.port,
                path=metrics_config.path,
            )

        def handle_signal(sig: signal.Signals) -> None:
            logger.info("shutdown_signal", signal=sig.name)
            service.request_shutdown()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, handle_signal, sig)

        try:
            async with service:
                await service.run_forever()
            return 0
        except Exception as e:  # noqa: BLE001  # CLI error boundary for continuous mode
            logger.error(f"{service_name}_failed", error=str(e))
            return 1
        finally:
            await metrics_server.stop()
            if metrics_config.enabled:
                logger.info("metrics_server_stopped")
    finally:
        if drain is not None:
            drain.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await drain


def parse_args() -> argparse.Namespace:
    """Parse command-line arguments for the service runner."""
    parser = argparse.ArgumentParser(
        prog="nostrsync",
        description="nostrsync service runner",
    )

    parser.add_argument(
        "service",
        choices=list(SERVICE_REGISTRY.keys()),
        help="Service to run",
    )

    parser.add_argument(
        "--config",
        type=Path,
        help="Service config path (default: config/services/<service>.yaml)",
    )

    parser.add_argument(
        "--store-config",
        type=Path,
        default=STORE_CONFIG,
        help=f"Store config path (default: {STORE_CONFIG})",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Log level (default: INFO)",
    )

    parser.add_argument(
        "--once",
        action="store_true",
        help="Sync once and exit (default: run continuously)",
    )

    return parser.parse_args()


def setup_logging(level: str) -> None:
    """Install a ``StructuredFormatter`` on the root handler.

    Output of ``Logger`` and of plain ``logging.getLogger()`` calls is
    unified as ``level name message key=value ...``.
    """
    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter())
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, level))


def _load_yaml_dict(path: Path) -> dict[str, Any]:
    """Load a YAML file as a dict, returning ``{}`` if the file does not exist."""
    if not path.exists():
        logger.warning("config_not_found", path=str(path))
        return {}
    return load_yaml(str(path))


def _apply_pool_overrides(
    store_dict: dict[str, Any],
    pool_overrides: dict[str, Any] | None,
    service_name: str,
) -> None:
    """Merge per-service pool overrides into the store configuration.

    ``user`` and ``password_env`` go to ``pool.database``, ``min_size`` and
    ``max_size`` to ``pool.limits``. ``application_name`` defaults to the
    service name.
    """
    pool = store_dict.setdefault("pool", {})
    server_settings = pool.setdefault("server_settings", {})
    server_settings.setdefault("application_name", service_name)

    if not pool_overrides:
        return

    if "application_name" in pool_overrides:
        server_settings["application_name"] = pool_overrides["application_name"]

    db_overrides = {k: pool_overrides[k] for k in ("user", "password_env") if k in pool_overrides}
    if db_overrides:
        pool.setdefault("database", {}).update(db_overrides)

    limits_overrides = {
        k: pool_overrides[k] for k in ("min_size", "max_size") if k in pool_overrides
    }
    if limits_overrides:
        pool.setdefault("limits", {}).update(limits_overrides)


async def main() -> int:
    """Parse args, connect the store and run the service."""
    args = parse_args()
    setup_logging(args.log_level)

    entry = SERVICE_REGISTRY[args.service]
    config_path = args.config or entry.config_path

    store_dict = _load_yaml_dict(args.store_config)
    service_dict = _load_yaml_dict(config_path)
    pool_overrides = service_dict.pop("pool", None)
    _apply_pool_overrides(store_dict, pool_overrides, args.service)

    store = LocalCacheStore.from_dict(store_dict)

    try:
        async with store:
            return await run_service(
                service_name=args.service,
                service_class=entry.cls,
                store=store,
                service_dict=service_dict,
                once=args.once,
            )
    except (ConnectionError, ConnectionPoolError) as e:
        logger.error("connection_failed", error=str(e))
        return 1
    except KeyboardInterrupt:
        logger.info("interrupted")
        return 130


def cli() -> None:
    """Synchronous entry point for console_scripts."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
