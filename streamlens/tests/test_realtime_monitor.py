import asyncio
import os
import tempfile
import unittest

from streamlens.core.event_bus import EventBus, IndexerEventType
from streamlens.core.historical_scanner import HistoricalScanner
from streamlens.core.json_state_store import JSONStateStore
from streamlens.core.ledger_client import LedgerReader
from streamlens.core.realtime_monitor import MonitorState, RealtimeMonitor
from streamlens.tests.utils import (
    REGISTRY_ADDRESS,
    FakeLedgerClient,
    int_to_hash,
    make_log,
    make_schema,
    no_sleep,
    wait_until,
)
from streamlens.utils.rate_limiter import RateLimiter
from streamlens.utils.retries import RetryPolicy


class TestRealtimeMonitor(unittest.TestCase):
    """Test the real-time monitor against an in-memory ledger."""

    def setUp(self):
        self.tmp_dir = tempfile.TemporaryDirectory()
        self.store = JSONStateStore(os.path.join(self.tmp_dir.name, "data"))
        self.ledger = FakeLedgerClient(height=5000)
        self.bus = EventBus()
        self.events = []
        for kind in IndexerEventType:
            self.bus.subscribe(kind, lambda data, k=kind: self.events.append((k, data)))
        self.monitor = self.make_monitor()

    def tearDown(self):
        self.tmp_dir.cleanup()

    def make_monitor(self, **kwargs) -> RealtimeMonitor:
        # Real sleeps with a long poll interval: one poll per start.
        settings = {
            "batch_size": 100,
            "poll_interval": 3600,
            "reconnect_delay": 0,
            "max_reconnect_attempts": 3,
            "request_policy": RetryPolicy(max_attempts=1),
        }
        settings.update(kwargs)
        return RealtimeMonitor(
            LedgerReader(self.ledger, RateLimiter(min_spacing=0), sleep=no_sleep),
            self.store,
            self.bus,
            REGISTRY_ADDRESS,
            **settings,
        )

    def kinds(self):
        return [k for k, _ in self.events]

    def events_of(self, kind):
        return [data for k, data in self.events if k == kind]

    def test_start_and_first_poll(self):
        self.store.update_progress(last_scanned_height=4950)
        self.ledger.logs = [make_log(1, 4990)]

        async def run():
            await self.monitor.start()
            state = self.monitor.state
            await wait_until(lambda: self.store.get_schema(int_to_hash(1)) is not None)
            await wait_until(lambda: self.monitor.cursor == 5001)
            await self.monitor.stop()
            return state

        state = asyncio.run(run())
        assert state == MonitorState.WATCHING
        # Polling starts after the checkpoint when it is within one batch of the head.
        assert self.ledger.get_logs_calls[0] == (4951, 5000)
        assert self.kinds()[:3] == [
            IndexerEventType.CONNECTION_ESTABLISHED,
            IndexerEventType.SCHEMA_DISCOVERED,
            IndexerEventType.SCHEMA_INDEXED,
        ]
        assert self.events_of(IndexerEventType.SCHEMA_INDEXED)[0]["isNew"]
        assert self.monitor.state == MonitorState.STOPPED
        assert not self.monitor.running

    def test_cursor_starts_one_batch_behind_head(self):
        async def run():
            await self.monitor.start()
            cursor = self.monitor.cursor
            await self.monitor.stop()
            return cursor

        assert asyncio.run(run()) == 4901

    def test_poll_does_not_advance_checkpoint(self):
        self.ledger.logs = [make_log(1, 10)]
        self.monitor.cursor = 0
        self.monitor.batch_size = 6000

        assert asyncio.run(self.monitor.poll_once()) == 1
        progress = self.store.get_progress()
        assert progress.last_scanned_height == 0
        assert progress.last_sync_time > 0
        assert progress.healthy
        assert self.monitor.cursor == 5001

    def test_poll_behind_cursor(self):
        self.monitor.cursor = 6000
        assert asyncio.run(self.monitor.poll_once()) == 0
        assert self.ledger.get_logs_calls == []

    def test_known_schemas(self):
        self.store.save_schema(make_schema(1, name="Done", definition="uint64 t"))
        self.store.save_schema(make_schema(2))
        self.ledger.logs = [make_log(1, 4990), make_log(2, 4991)]
        self.monitor.cursor = 4990

        asyncio.run(self.monitor.poll_once())

        # Complete records are skipped; incomplete ones are re-published.
        assert self.kinds() == [IndexerEventType.SCHEMA_INDEXED]
        indexed = self.events_of(IndexerEventType.SCHEMA_INDEXED)[0]
        assert indexed["schema"]["id"] == int_to_hash(2)
        assert not indexed["isNew"]

    def test_repeated_id_in_one_poll(self):
        self.ledger.logs = [make_log(1, 4990), make_log(1, 4995, log_index=1)]
        self.monitor.cursor = 4990

        assert asyncio.run(self.monitor.poll_once()) == 2

        assert self.store.get_progress().total_indexed == 1
        assert len(self.store.get_all_schemas()) == 1
        assert self.kinds() == [
            IndexerEventType.SCHEMA_DISCOVERED,
            IndexerEventType.SCHEMA_INDEXED,
            IndexerEventType.SCHEMA_INDEXED,
        ]
        indexed = self.events_of(IndexerEventType.SCHEMA_INDEXED)
        assert [e["isNew"] for e in indexed] == [True, False]

    def test_historical_scan_after_realtime_index(self):
        self.ledger.logs = [make_log(1, 4990)]
        self.monitor.cursor = 4990
        asyncio.run(self.monitor.poll_once())

        scanner = HistoricalScanner(
            LedgerReader(self.ledger, RateLimiter(min_spacing=0), sleep=no_sleep),
            self.store,
            self.bus,
            REGISTRY_ADDRESS,
            batch_size=1000,
            sleep=no_sleep,
        )
        asyncio.run(scanner.scan(4000, 5000))

        assert len(self.store.get_all_schemas()) == 1
        progress = self.store.get_progress()
        assert progress.total_indexed == 1
        assert progress.last_scanned_height == 5000
        indexed = self.events_of(IndexerEventType.SCHEMA_INDEXED)
        assert [e["isNew"] for e in indexed] == [True, False]

    def test_event_failure_is_isolated(self):
        self.ledger.logs = [make_log(1, 4990), make_log(2, 4991)]
        self.ledger.failing_blocks[4990] = RuntimeError("block not found")
        self.monitor.cursor = 4990

        assert asyncio.run(self.monitor.poll_once()) == 2
        assert self.store.get_schema(int_to_hash(1)) is None
        assert self.store.get_schema(int_to_hash(2)) is not None
        assert len(self.events_of(IndexerEventType.ERROR)) == 1
        assert self.monitor.cursor == 5001

    def test_poll_error_classification(self):
        async def run():
            await self.monitor.start()
            empty = await self.monitor._handle_poll_error(RuntimeError(""))
            other = await self.monitor._handle_poll_error(ValueError("bad filter"))
            reconnect = await self.monitor._handle_poll_error(
                ConnectionError("connection refused")
            )
            state = self.monitor.state
            await self.monitor.stop()
            return empty, other, reconnect, state

        empty, other, reconnect, state = asyncio.run(run())
        assert not empty
        assert not other
        assert reconnect
        assert state == MonitorState.RECONNECTING
        assert len(self.events_of(IndexerEventType.ERROR)) == 1
        assert len(self.events_of(IndexerEventType.CONNECTION_LOST)) == 1

    def test_reconnect_after_failures(self):
        async def run():
            await self.monitor.start()
            await wait_until(lambda: self.monitor.cursor == 5001)
            self.ledger.height_errors = [ConnectionError("network down")]
            await self.monitor._handle_poll_error(ConnectionError("network down"))
            await wait_until(
                lambda: self.monitor.state == MonitorState.WATCHING
                and self.monitor.reconnect_attempts == 0
            )
            await self.monitor.stop()

        asyncio.run(run())
        # One failed reconnect, then success.
        assert len(self.events_of(IndexerEventType.CONNECTION_LOST)) == 2
        assert len(self.events_of(IndexerEventType.CONNECTION_ESTABLISHED)) == 2
        assert self.events_of(IndexerEventType.ERROR) == []

    def test_gives_up_after_max_attempts(self):
        monitor = self.make_monitor(max_reconnect_attempts=2)

        async def run():
            await monitor.start()
            await wait_until(lambda: monitor.cursor == 5001)
            self.ledger.height_errors = [ConnectionError("network down")] * 10
            await monitor._handle_poll_error(ConnectionError("network down"))
            await wait_until(lambda: not self.store.get_progress().healthy)
            await monitor.stop()

        asyncio.run(run())
        assert monitor.state == MonitorState.STOPPED
        assert monitor.reconnect_attempts == 3
        progress = self.store.get_progress()
        assert not progress.healthy
        assert progress.last_error == "network down"

    def test_start_failure_propagates(self):
        self.ledger.height_errors = [ConnectionError("connection refused")]
        with self.assertRaises(ConnectionError):
            asyncio.run(self.monitor.start())
        assert not self.monitor.running
        assert self.monitor.state == MonitorState.STOPPED
        assert len(self.events_of(IndexerEventType.ERROR)) == 1

    def test_stop_is_idempotent(self):
        async def run():
            await self.monitor.stop()
            await self.monitor.start()
            await self.monitor.stop()
            await self.monitor.stop()

        asyncio.run(run())
        status = self.monitor.status()
        assert status["state"] == "stopped"
        assert not status["running"]
        assert status["reconnectAttempts"] == 0
        assert status["rpcUrl"] == "http://fake-node"
        assert status["cursor"] == 4901
        assert not self.monitor.is_healthy()


if __name__ == "__main__":
    unittest.main()
