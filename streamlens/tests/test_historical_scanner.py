import asyncio
import os
import tempfile
import unittest
from unittest.mock import create_autospec

from streamlens.core.event_bus import EventBus, IndexerEventType
from streamlens.core.historical_scanner import HistoricalScanner, iter_windows
from streamlens.core.json_state_store import JSONStateStore
from streamlens.core.ledger_client import LedgerReader
from streamlens.core.state_store import StateStore
from streamlens.tests.utils import (
    PUBLISHER,
    REGISTRY_ADDRESS,
    BASE_TIMESTAMP,
    FakeLedgerClient,
    int_to_hash,
    make_log,
    no_sleep,
)
from streamlens.utils.error_utils import StorageError
from streamlens.utils.rate_limiter import RateLimiter


class TestIterWindows(unittest.TestCase):
    """Test block range splitting."""

    def test_windows(self):
        assert list(iter_windows(0, 2500, 1000)) == [
            (0, 999),
            (1000, 1999),
            (2000, 2500),
        ]
        assert list(iter_windows(5, 5, 1000)) == [(5, 5)]
        assert list(iter_windows(6, 5, 1000)) == []

    def test_invalid_batch_size(self):
        with self.assertRaises(ValueError):
            list(iter_windows(0, 10, 0))


class TestHistoricalScanner(unittest.TestCase):
    """Test the historical scanner against an in-memory ledger."""

    def setUp(self):
        self.tmp_dir = tempfile.TemporaryDirectory()
        self.store = JSONStateStore(os.path.join(self.tmp_dir.name, "data"))
        self.ledger = FakeLedgerClient(height=2500)
        self.bus = EventBus()
        self.events = []
        for kind in IndexerEventType:
            self.bus.subscribe(kind, lambda data, k=kind: self.events.append((k, data)))
        self.scanner = HistoricalScanner(
            LedgerReader(self.ledger, RateLimiter(min_spacing=0), sleep=no_sleep),
            self.store,
            self.bus,
            REGISTRY_ADDRESS,
            batch_size=1000,
            sleep=no_sleep,
        )

    def tearDown(self):
        self.tmp_dir.cleanup()

    def events_of(self, kind):
        return [data for k, data in self.events if k == kind]

    def test_scan_records_schemas(self):
        self.ledger.logs = [make_log(1, 10), make_log(2, 1500)]

        count = asyncio.run(self.scanner.scan(0))

        assert count == 2
        assert self.ledger.get_logs_calls == [(0, 999), (1000, 1999), (2000, 2500)]
        schema = self.store.get_schema(int_to_hash(1))
        assert schema.publisher == PUBLISHER
        assert schema.block_number == 10
        assert schema.timestamp == BASE_TIMESTAMP + 10
        assert schema.origin_tx_hash == int_to_hash(10_001)
        assert schema.needs_enrichment

        progress = self.store.get_progress()
        assert progress.last_scanned_height == 2500
        assert progress.last_sync_time > 0
        assert progress.total_indexed == 2

        indexed = self.events_of(IndexerEventType.SCHEMA_INDEXED)
        assert [e["isNew"] for e in indexed] == [True, True]

    def test_rescan_is_idempotent(self):
        self.ledger.logs = [make_log(1, 10)]
        asyncio.run(self.scanner.scan(0, 999))
        asyncio.run(self.scanner.scan(0, 999))

        assert self.store.get_progress().total_indexed == 1
        indexed = self.events_of(IndexerEventType.SCHEMA_INDEXED)
        assert [e["isNew"] for e in indexed] == [True, False]

    def test_repeated_id_in_window(self):
        self.ledger.logs = [make_log(1, 10), make_log(1, 20, log_index=1)]
        asyncio.run(self.scanner.scan(0, 999))
        indexed = self.events_of(IndexerEventType.SCHEMA_INDEXED)
        assert [e["isNew"] for e in indexed] == [True, False]

    def test_log_fetch_failure_keeps_checkpoint(self):
        self.ledger.logs = [make_log(1, 10)]
        # The first window succeeds; the second fails all five attempts.
        failures = [ConnectionError("connection reset")] * 5

        async def run():
            await self.scanner.scan_window(0, 999)
            self.ledger.log_errors = list(failures)
            await self.scanner.scan(1000, 2500)

        with self.assertRaises(ConnectionError):
            asyncio.run(run())
        assert self.store.get_progress().last_scanned_height == 999
        assert len(self.ledger.get_logs_calls) == 6

    def test_transient_log_failure_is_retried(self):
        self.ledger.log_errors = [TimeoutError("timed out")]
        self.ledger.logs = [make_log(1, 10)]
        assert asyncio.run(self.scanner.scan(0, 999)) == 1
        assert self.store.get_progress().last_scanned_height == 999

    def test_event_failure_skips_event(self):
        self.ledger.logs = [make_log(1, 10), make_log(2, 20)]
        self.ledger.failing_blocks[10] = RuntimeError("block not found")

        count = asyncio.run(self.scanner.scan(0, 999))

        assert count == 1
        assert self.store.get_schema(int_to_hash(1)) is None
        assert self.store.get_schema(int_to_hash(2)) is not None
        assert self.store.get_progress().last_scanned_height == 999
        errors = self.events_of(IndexerEventType.ERROR)
        assert len(errors) == 1
        assert errors[0]["errorType"] == "RuntimeError"

    def test_empty_range(self):
        assert asyncio.run(self.scanner.scan(3000)) == 0
        assert self.ledger.get_logs_calls == []
        assert self.store.get_progress().last_scanned_height == 0

    def test_request_stop(self):
        self.scanner.request_stop()
        assert asyncio.run(self.scanner.scan(0)) == 0
        assert self.ledger.get_logs_calls == []
        # The request is consumed by the scan it stopped.
        asyncio.run(self.scanner.scan(0))
        assert self.store.get_progress().last_scanned_height == 2500

    def test_stop_after_current_window(self):
        async def run():
            self.ledger.log_gate = asyncio.Event()
            task = asyncio.create_task(self.scanner.scan(0))
            while not self.ledger.get_logs_calls:
                await asyncio.sleep(0.001)
            self.scanner.request_stop()
            self.ledger.log_gate.set()
            return await task

        asyncio.run(run())
        assert self.ledger.get_logs_calls == [(0, 999)]
        assert self.store.get_progress().last_scanned_height == 999

    def test_try_scan_skips_when_running(self):
        async def run():
            self.ledger.log_gate = asyncio.Event()
            task = asyncio.create_task(self.scanner.scan(0))
            while not self.ledger.get_logs_calls:
                await asyncio.sleep(0.001)
            skipped = not await self.scanner.try_scan(0)
            scanning = self.scanner.is_scanning
            self.ledger.log_gate.set()
            await task
            return skipped, scanning

        skipped, scanning = asyncio.run(run())
        assert skipped
        assert scanning
        assert not self.scanner.is_scanning

    def test_storage_failure_keeps_checkpoint(self):
        store = create_autospec(StateStore, instance=True)
        store.save_schemas.side_effect = StorageError("save_schemas", "disk full")
        self.scanner.store = store
        self.ledger.logs = [make_log(1, 10)]

        with self.assertRaises(StorageError):
            asyncio.run(self.scanner.scan(0, 999))
        store.update_progress.assert_not_called()
        assert self.events_of(IndexerEventType.SCHEMA_INDEXED) == []

    def test_scan_progress(self):
        self.store.update_progress(last_scanned_height=1250)
        progress = asyncio.run(self.scanner.scan_progress())
        assert progress == {
            "lastScannedHeight": 1250,
            "currentHeight": 2500,
            "progress": 50,
            "remaining": 1250,
        }


if __name__ == "__main__":
    unittest.main()
