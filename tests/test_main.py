import logging
import tempfile
import unittest
from pathlib import Path
from unittest import mock
from zoneinfo import ZoneInfo

from daysync.errors import ConfigError
from daysync.ics_proxy import IcsProxy
from daysync.ingestion import ProxyFeedFetcher
from daysync.main import build_coordinator, build_ingestor, configure_logging, main
from daysync.models import AppConfig
from daysync.sync_client import HttpSyncTransport, RemoteStoreTransport


class BuildersTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_coordinator_prefers_http_transport(self) -> None:
        config = AppConfig.from_dict(
            {
                "sync": {"base_url": "https://planner.example.com", "password": "pw"},
                "remote": {"db_path": str(self.root / "remote.db")},
                "local": {"db_path": str(self.root / "local.db")},
            }
        )
        coordinator = build_coordinator(config)
        self.assertIsInstance(coordinator.transport, HttpSyncTransport)
        self.assertTrue((self.root / "local.db").exists())

    def test_coordinator_falls_back_to_remote_binding(self) -> None:
        config = AppConfig.from_dict(
            {
                "server": {"user_id": "alice"},
                "remote": {"db_path": str(self.root / "remote.db")},
                "local": {"db_path": str(self.root / "local.db")},
            }
        )
        coordinator = build_coordinator(config)
        self.assertIsInstance(coordinator.transport, RemoteStoreTransport)
        self.assertEqual(coordinator.transport.user_id, "alice")

    def test_coordinator_without_any_target(self) -> None:
        config = AppConfig.from_dict({"local": {"db_path": str(self.root / "local.db")}})
        with self.assertRaises(ConfigError):
            build_coordinator(config)

    def test_ingestor_uses_proxy_endpoint_and_timezone(self) -> None:
        config = AppConfig.from_dict(
            {
                "sync": {"base_url": "https://planner.example.com/", "password": "pw"},
                "calendar": {"timezone": "Europe/Berlin"},
            }
        )
        ingestor = build_ingestor(config)
        self.assertIsInstance(ingestor.fetcher, ProxyFeedFetcher)
        self.assertEqual(ingestor.fetcher.proxy_url, "https://planner.example.com/ics-proxy")
        self.assertIsInstance(ingestor.fetcher.fallback, IcsProxy)
        self.assertEqual(ingestor.tz, ZoneInfo("Europe/Berlin"))

    def test_ingestor_fetches_directly_without_server(self) -> None:
        ingestor = build_ingestor(AppConfig())
        self.assertIsInstance(ingestor.fetcher, IcsProxy)
        self.assertIsNone(ingestor.tz)


class ConfigureLoggingTests(unittest.TestCase):
    def test_sets_level_and_single_handler(self) -> None:
        logger = configure_logging("debug")
        configure_logging("warning")
        self.assertEqual(logger.level, logging.WARNING)
        self.assertEqual(len(logger.handlers), 1)


class MainTests(unittest.TestCase):
    def test_startup_logs_masked_config_and_runs_server(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            config_path.write_text(
                "server:\n  app_password: hunter2\nsync:\n  password: s3cret\n", encoding="utf-8"
            )
            env = {"DAYSYNC_CONFIG_PATH": str(config_path), "DAYSYNC_PORT": "9090"}
            with mock.patch.dict("os.environ", env, clear=True), mock.patch("daysync.main.uvicorn.run") as run:
                with self.assertLogs("daysync.main", level="INFO") as logs:
                    main()

        output = "\n".join(logs.output)
        self.assertIn("***", output)
        self.assertNotIn("hunter2", output)
        self.assertNotIn("s3cret", output)
        run.assert_called_once()
        self.assertEqual(run.call_args.kwargs["port"], 9090)
        self.assertTrue(run.call_args.kwargs["factory"])


if __name__ == "__main__":
    unittest.main()
