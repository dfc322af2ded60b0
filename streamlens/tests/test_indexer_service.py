import asyncio
import os
import tempfile
import unittest
from unittest import mock
from unittest.mock import MagicMock

import requests

from streamlens.core.config import IndexerConfig
from streamlens.core.event_bus import IndexerEventType
from streamlens.core.indexer_service import IndexerService
from streamlens.core.json_state_store import JSONStateStore
from streamlens.core.types import WebhookSubscription
from streamlens.core.webhook_dispatcher import WebhookDispatcher
from streamlens.main import main, parse_args, run_indexer
from streamlens.tests.utils import (
    FakeLedgerClient,
    FakeRegistryClient,
    int_to_hash,
    make_log,
    no_sleep,
)


class TestIndexerService(unittest.TestCase):
    """Test the startup sequence and lifecycle of the indexer service."""

    def setUp(self):
        self.tmp_dir = tempfile.TemporaryDirectory()
        self.config = IndexerConfig(
            start_height=100,
            batch_size=500,
            catchup_interval=0,
            realtime_enabled=False,
            window_pause=0,
            min_request_spacing=0,
            poll_interval=3600,
            data_dir=os.path.join(self.tmp_dir.name, "data"),
        )
        self.store = JSONStateStore(self.config.data_dir)
        self.ledger = FakeLedgerClient(
            height=1200, logs=[make_log(1, 150), make_log(2, 900)]
        )
        self.registry = FakeRegistryClient(
            names={int_to_hash(1): "Trades"},
            bases={int_to_hash(1): "uint256 price", int_to_hash(2): "string note"},
            public_definitions=["string note"],
        )
        self.session = MagicMock(spec=requests.Session)
        self.session.headers = {}
        self.session.post.return_value = MagicMock(status_code=200)
        self.webhooks = WebhookDispatcher(
            "mainnet",
            subscriptions=[
                WebhookSubscription(
                    id="default",
                    url="https://hooks.example.com",
                    events=frozenset({"schema.enriched"}),
                )
            ],
            session=self.session,
            sleep=no_sleep,
        )

    def tearDown(self):
        self.tmp_dir.cleanup()

    def make_service(self, config=None) -> IndexerService:
        return IndexerService(
            config or self.config,
            self.store,
            self.ledger,
            self.registry,
            webhooks=self.webhooks,
            sleep=no_sleep,
        )

    def test_resume_height(self):
        service = self.make_service()
        assert service.resume_height() == 100
        self.store.update_progress(last_scanned_height=700)
        assert service.resume_height() == 701
        self.store.update_progress(last_scanned_height=50)
        assert service.resume_height() == 701

    def test_start_runs_startup_sequence(self):
        service = self.make_service()

        async def run():
            await service.start()
            await service.bus.drain()
            status = service.status()
            await service.shutdown()
            return status

        status = asyncio.run(run())

        assert self.ledger.get_logs_calls[0] == (100, 599)
        assert self.store.get_progress().last_scanned_height == 1200
        first = self.store.get_schema(int_to_hash(1))
        assert first.name == "Trades"
        assert first.definition == "uint256 price"
        # Unnamed schemas fall back to their id.
        assert self.store.get_schema(int_to_hash(2)).name == int_to_hash(2)
        # Each schema is enriched once and each enrichment is delivered.
        assert self.session.post.call_count == 2
        assert status["storage"] == "JSON Files"
        assert not status["scanning"]
        assert status["webhooks"]["active"]
        self.session.close.assert_called_once()

    def test_verify_failure_is_not_fatal(self):
        self.registry.failing = {"all_schemas"}
        service = self.make_service()
        errors = []
        service.bus.subscribe(IndexerEventType.ERROR, errors.append)

        async def run():
            await service.start()
            await service.shutdown()

        asyncio.run(run())
        assert len(errors) == 1
        assert errors[0]["context"] == "IndexerService.verify"

    def test_scan_failure_propagates(self):
        self.ledger.log_errors = [ConnectionError("connection refused")] * 5
        service = self.make_service()

        async def run():
            try:
                await service.start()
            finally:
                await service.shutdown()

        with self.assertRaises(ConnectionError):
            asyncio.run(run())

    def test_realtime_and_shutdown(self):
        config = IndexerConfig(
            start_height=100,
            batch_size=500,
            catchup_interval=0,
            realtime_enabled=True,
            poll_interval=3600,
            min_request_spacing=0,
            data_dir=self.config.data_dir,
        )
        service = self.make_service(config)

        async def run():
            await service.start()
            running = service.monitor.running
            await service.shutdown()
            await service.shutdown()
            return running

        assert asyncio.run(run())
        assert not service.monitor.running
        assert not service.webhooks.active
        self.session.close.assert_called_once()
        assert service.bus.listener_stats()["schema.indexed"] == 0

    def test_catchup_scans_new_blocks(self):
        service = self.make_service()

        async def run():
            await service.start()
            self.ledger.logs.append(make_log(3, 1300))
            self.ledger.height = 1400
            scanned = await service._run_scan(skip_if_running=True)
            await service.enricher.enrich_all()
            await service.shutdown()
            return scanned

        assert asyncio.run(run())
        assert self.store.get_progress().last_scanned_height == 1400
        assert self.store.get_schema(int_to_hash(3)) is not None


class TestMain(unittest.TestCase):
    """Test the command line entry point."""

    def test_parse_args(self):
        args = parse_args(["--once", "--env-file", "prod.env"])
        assert args.once
        assert args.env_file == "prod.env"
        assert not args.no_realtime
        assert args.log_level is None

    @mock.patch.dict(os.environ, {"NETWORK": "devnet"}, clear=True)
    def test_invalid_config_exits_with_error(self):
        assert main([]) == 1

    def test_invalid_log_level(self):
        assert main(["--log-level", "chatty"]) == 1

    @mock.patch.object(
        IndexerService,
        "create_instance_from_config",
        side_effect=ConnectionError("node unreachable"),
    )
    def test_initialization_failure(self, _create):
        assert asyncio.run(run_indexer(IndexerConfig(), once=True)) == 1

    def test_run_once(self):
        service = MagicMock()
        service.start = mock.AsyncMock()
        service.shutdown = mock.AsyncMock()
        service.log_sample_schemas = mock.AsyncMock()
        with mock.patch.object(
            IndexerService, "create_instance_from_config", return_value=service
        ):
            assert asyncio.run(run_indexer(IndexerConfig(), once=True)) == 0
        service.start.assert_awaited_once()
        service.shutdown.assert_awaited_once()

    def test_start_failure_exits_with_error(self):
        service = MagicMock()
        service.start = mock.AsyncMock(side_effect=ConnectionError("refused"))
        service.shutdown = mock.AsyncMock()
        with mock.patch.object(
            IndexerService, "create_instance_from_config", return_value=service
        ):
            assert asyncio.run(run_indexer(IndexerConfig(), once=False)) == 1
        service.shutdown.assert_awaited_once()


if __name__ == "__main__":
    unittest.main()
