"""
Unit tests for the nostrsync.__main__ CLI module.

Tests:
- SERVICE_REGISTRY and default paths
- parse_args argument parsing
- setup_logging installs the structured formatter
- Pool overrides merged into the store configuration
- run_service in one-shot and continuous mode
- main() wiring and connection failures
"""

import logging
from pathlib import Path
from typing import ClassVar
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from nostrsync.__main__ import (
    CONFIG_BASE,
    SERVICE_REGISTRY,
    STORE_CONFIG,
    _apply_pool_overrides,
    main,
    parse_args,
    run_service,
    setup_logging,
)
from nostrsync.core.base_service import BaseService, BaseServiceConfig
from nostrsync.core.exceptions import ConnectionPoolError
from nostrsync.core.logger import StructuredFormatter
from nostrsync.models.constants import ServiceName
from nostrsync.services.backend import BackendCoordinator


class OneShotService(BaseService[BaseServiceConfig]):
    SERVICE_NAME: ClassVar[ServiceName] = ServiceName.BACKEND
    CONFIG_CLASS: ClassVar[type[BaseServiceConfig]] = BaseServiceConfig

    async def run(self) -> None:
        pass


@pytest.fixture
def mock_store() -> MagicMock:
    store = MagicMock()
    store.__aenter__ = AsyncMock(return_value=store)
    store.__aexit__ = AsyncMock(return_value=False)
    return store


@pytest.fixture
def mock_metrics_server() -> MagicMock:
    server = MagicMock()
    server.stop = AsyncMock()
    return server


# ============================================================================
# Registry and arguments
# ============================================================================


class TestServiceRegistry:
    """SERVICE_REGISTRY."""

    def test_backend_registered(self) -> None:
        assert set(SERVICE_REGISTRY) == {"backend"}
        assert SERVICE_REGISTRY["backend"].cls is BackendCoordinator

    def test_config_paths(self) -> None:
        assert SERVICE_REGISTRY["backend"].config_path == CONFIG_BASE / "services" / "backend.yaml"
        assert Path("config/store.yaml") == STORE_CONFIG


class TestParseArgs:
    """parse_args()."""

    def test_service_required(self) -> None:
        with patch("sys.argv", ["prog"]), pytest.raises(SystemExit):
            parse_args()

    def test_invalid_service_rejected(self) -> None:
        with patch("sys.argv", ["prog", "finder"]), pytest.raises(SystemExit):
            parse_args()

    def test_defaults(self) -> None:
        with patch("sys.argv", ["prog", "backend"]):
            args = parse_args()
        assert args.config is None
        assert args.store_config == STORE_CONFIG
        assert args.log_level == "INFO"
        assert args.once is False

    def test_all_options(self) -> None:
        argv = [
            "prog",
            "backend",
            "--once",
            "--log-level",
            "DEBUG",
            "--config",
            "a.yaml",
            "--store-config",
            "b.yaml",
        ]
        with patch("sys.argv", argv):
            args = parse_args()
        assert args.once is True
        assert args.log_level == "DEBUG"
        assert args.config == Path("a.yaml")
        assert args.store_config == Path("b.yaml")


class TestSetupLogging:
    """setup_logging()."""

    def test_installs_structured_formatter(self) -> None:
        before = list(logging.root.handlers)
        level = logging.root.level
        try:
            setup_logging("WARNING")
            added = [h for h in logging.root.handlers if h not in before]
            assert isinstance(added[0].formatter, StructuredFormatter)
            assert logging.root.level == logging.WARNING
        finally:
            logging.root.handlers[:] = before
            logging.root.setLevel(level)


class TestPoolOverrides:
    """_apply_pool_overrides()."""

    def test_application_name_defaults_to_service(self) -> None:
        store_dict: dict = {}
        _apply_pool_overrides(store_dict, None, "backend")
        assert store_dict["pool"]["server_settings"]["application_name"] == "backend"

    def test_overrides_are_routed(self) -> None:
        store_dict = {"pool": {"database": {"host": "db"}}}
        _apply_pool_overrides(
            store_dict,
            {"user": "sync", "password_env": "SYNC_PW", "max_size": 3, "application_name": "x"},
            "backend",
        )
        pool = store_dict["pool"]
        assert pool["database"] == {"host": "db", "user": "sync", "password_env": "SYNC_PW"}
        assert pool["limits"] == {"max_size": 3}
        assert pool["server_settings"]["application_name"] == "x"


# ============================================================================
# run_service
# ============================================================================


class TestRunService:
    """run_service()."""

    async def test_oneshot_success(self, mock_store: MagicMock) -> None:
        result = await run_service("backend", OneShotService, mock_store, {}, once=True)
        assert result == 0

    async def test_oneshot_uses_config(self, mock_store: MagicMock) -> None:
        with patch.object(OneShotService, "run", AsyncMock()) as run:
            result = await run_service(
                "backend", OneShotService, mock_store, {"interval": 120.0}, once=True
            )
        assert result == 0
        run.assert_awaited_once()

    async def test_oneshot_failure(self, mock_store: MagicMock) -> None:
        with patch.object(OneShotService, "run", AsyncMock(side_effect=RuntimeError("boom"))):
            result = await run_service("backend", OneShotService, mock_store, {}, once=True)
        assert result == 1

    async def test_continuous_starts_and_stops_metrics(
        self, mock_store: MagicMock, mock_metrics_server: MagicMock
    ) -> None:
        with (
            patch.object(OneShotService, "run_forever", AsyncMock()),
            patch(
                "nostrsync.__main__.start_metrics_server",
                AsyncMock(return_value=mock_metrics_server),
            ) as start,
        ):
            result = await run_service("backend", OneShotService, mock_store, {}, once=False)
        assert result == 0
        start.assert_awaited_once()
        mock_metrics_server.stop.assert_awaited_once()

    async def test_continuous_failure(
        self, mock_store: MagicMock, mock_metrics_server: MagicMock
    ) -> None:
        with (
            patch.object(OneShotService, "run_forever", AsyncMock(side_effect=RuntimeError("x"))),
            patch(
                "nostrsync.__main__.start_metrics_server",
                AsyncMock(return_value=mock_metrics_server),
            ),
        ):
            result = await run_service("backend", OneShotService, mock_store, {}, once=False)
        assert result == 1
        mock_metrics_server.stop.assert_awaited_once()


# ============================================================================
# main
# ============================================================================


class TestMain:
    """main()."""

    async def test_wires_configs(self, tmp_path: Path, mock_store: MagicMock) -> None:
        service_config = tmp_path / "backend.yaml"
        service_config.write_text("interval: 120.0\npool:\n  user: sync\n")
        store_config = tmp_path / "store.yaml"
        store_config.write_text("pool:\n  database:\n    host: cache-db\n")
        argv = [
            "prog",
            "backend",
            "--once",
            "--config",
            str(service_config),
            "--store-config",
            str(store_config),
        ]

        with (
            patch("sys.argv", argv),
            patch("nostrsync.__main__.setup_logging"),
            patch("nostrsync.__main__.LocalCacheStore") as store_cls,
            patch("nostrsync.__main__.run_service", AsyncMock(return_value=0)) as run,
        ):
            store_cls.from_dict.return_value = mock_store
            assert await main() == 0

        store_dict = store_cls.from_dict.call_args.args[0]
        assert store_dict["pool"]["database"] == {"host": "cache-db", "user": "sync"}
        assert store_dict["pool"]["server_settings"]["application_name"] == "backend"
        assert run.call_args.kwargs["service_dict"] == {"interval": 120.0}
        assert run.call_args.kwargs["once"] is True

    async def test_missing_config_files(self, tmp_path: Path, mock_store: MagicMock) -> None:
        argv = [
            "prog",
            "backend",
            "--config",
            str(tmp_path / "none.yaml"),
            "--store-config",
            str(tmp_path / "none-either.yaml"),
        ]
        with (
            patch("sys.argv", argv),
            patch("nostrsync.__main__.setup_logging"),
            patch("nostrsync.__main__.LocalCacheStore") as store_cls,
            patch("nostrsync.__main__.run_service", AsyncMock(return_value=0)) as run,
        ):
            store_cls.from_dict.return_value = mock_store
            assert await main() == 0
        assert run.call_args.kwargs["service_dict"] == {}

    async def test_connection_error(self, tmp_path: Path, mock_store: MagicMock) -> None:
        mock_store.__aenter__ = AsyncMock(side_effect=ConnectionPoolError("no database"))
        argv = ["prog", "backend", "--store-config", str(tmp_path / "store.yaml")]
        with (
            patch("sys.argv", argv),
            patch("nostrsync.__main__.setup_logging"),
            patch("nostrsync.__main__.LocalCacheStore") as store_cls,
        ):
            store_cls.from_dict.return_value = mock_store
            assert await main() == 1
