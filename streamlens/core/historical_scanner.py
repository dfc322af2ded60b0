"""
Historical backfill of registry events.
Walks a block range in fixed-size windows and checkpoints progress
after every window so that an interrupted scan resumes where it stopped.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Iterator, List, Optional, Tuple

from streamlens.core.event_bus import (
    EventBus,
    IndexerEventType,
    error_event,
    schema_indexed_event,
)
from streamlens.core.ledger_client import SCHEMA_REGISTERED_EVENT, LedgerReader
from streamlens.core.state_store import StateStore
from streamlens.core.types import IndexedSchema, RegistryLog, now_ms
from streamlens.utils.async_utils import run_blocking
from streamlens.utils.log import get_default_logger
from streamlens.utils.retries import (
    EVENT_DETAIL_RETRY_POLICY,
    LOG_FETCH_RETRY_POLICY,
    RetryPolicy,
)

_LOG = get_default_logger(__name__)
_LOG.setLevel(logging.INFO)


def iter_windows(
    start_height: int, end_height: int, batch_size: int
) -> Iterator[Tuple[int, int]]:
    """
    Split an inclusive block range into contiguous windows.

    :param start_height: First block.
    :param end_height: Last block.
    :param batch_size: Maximum blocks per window.
    :return: Iterator of inclusive (from, to) pairs; the last may be shorter.
    """
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")
    from_height = start_height
    while from_height <= end_height:
        to_height = min(from_height + batch_size - 1, end_height)
        yield from_height, to_height
        from_height = to_height + 1


class HistoricalScanner:
    """
    Scans past blocks for schema registrations.
    At most one scan runs at a time.
    """

    # pylint: disable-msg=too-many-arguments
    def __init__(
        self,
        reader: LedgerReader,
        store: StateStore,
        bus: EventBus,
        registry_address: str,
        batch_size: int = 1000,
        window_pause: float = 0.5,
        log_fetch_policy: RetryPolicy = LOG_FETCH_RETRY_POLICY,
        event_detail_policy: RetryPolicy = EVENT_DETAIL_RETRY_POLICY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the scanner.

        :param reader: Rate-limited ledger access.
        :param store: The state store.
        :param bus: The event bus.
        :param registry_address: The registry contract address.
        :param batch_size: Blocks per window.
        :param window_pause: Pause between windows, in seconds.
        :param log_fetch_policy: Retry budget of log and height fetches.
        :param event_detail_policy: Retry budget of block and transaction fetches.
        :param sleep: Awaitable sleep used for the window pause.
        """
        self.reader = reader
        self.store = store
        self.bus = bus
        self.registry_address = registry_address
        self.batch_size = batch_size
        self.window_pause = window_pause
        self.log_fetch_policy = log_fetch_policy
        self.event_detail_policy = event_detail_policy
        self._sleep = sleep
        self._scan_lock = asyncio.Lock()
        self._stop_requested = False

    @property
    def is_scanning(self) -> bool:
        """True while a scan is running."""
        return self._scan_lock.locked()

    def request_stop(self):
        """
        Ask the running scan to return after its current window.
        A request made while idle applies to the next scan.
        """
        self._stop_requested = True

    async def scan(self, start_height: int, end_height: Optional[int] = None) -> int:
        """
        Scan an inclusive block range, waiting for any running scan first.

        :param start_height: First block to scan.
        :param end_height: Last block to scan.
            Resolved once to the current height if omitted.
        :return: The number of registrations saved.
        """
        async with self._scan_lock:
            try:
                return await self._scan_worker(start_height, end_height)
            finally:
                self._stop_requested = False

    async def try_scan(
        self, start_height: int, end_height: Optional[int] = None
    ) -> bool:
        """
        Scan unless a scan is already running.

        :param start_height: First block to scan.
        :param end_height: Last block to scan.
        :return: False if the scan was skipped.
        """
        if self.is_scanning:
            _LOG.info("Historical scan already running, skipping")
            return False
        await self.scan(start_height, end_height)
        return True

    async def _scan_worker(self, start_height: int, end_height: Optional[int]) -> int:
        if end_height is None:
            end_height = await self.reader.current_height(self.log_fetch_policy)
        if start_height > end_height:
            _LOG.info(
                "Nothing to scan: start block %s is past end block %s",
                start_height,
                end_height,
            )
            return 0

        _LOG.info(
            "Starting historical scan: blocks %s to %s (%s blocks)",
            start_height,
            end_height,
            end_height - start_height + 1,
        )
        total_events = 0
        first_window = True
        for from_height, to_height in iter_windows(
            start_height, end_height, self.batch_size
        ):
            if not first_window:
                await self._sleep(self.window_pause)
            first_window = False
            if self._stop_requested:
                _LOG.info("Historical scan stopped before block %s", from_height)
                return total_events
            total_events += await self.scan_window(from_height, to_height)

        _LOG.info(
            "Historical scan complete: %s events, final block %s",
            total_events,
            end_height,
        )
        return total_events

    async def scan_window(self, from_height: int, to_height: int) -> int:
        """
        Scan one window and checkpoint it.
        Log fetch failures propagate; per-event failures skip the event.

        :param from_height: First block of the window.
        :param to_height: Last block of the window.
        :return: The number of registrations saved.
        """
        _LOG.info("Scanning blocks %s to %s...", from_height, to_height)
        logs = await self.reader.get_logs(
            self.registry_address,
            from_height,
            to_height,
            event_signature=SCHEMA_REGISTERED_EVENT,
            policy=self.log_fetch_policy,
        )
        if logs:
            _LOG.info("Found %s schema registration events", len(logs))

        schemas: List[IndexedSchema] = []
        for registry_log in logs:
            schema = await self._fetch_schema(registry_log)
            if schema is not None:
                schemas.append(schema)

        if schemas:
            new_ids = set(await run_blocking(self.store.save_schemas, schemas))
            for schema in schemas:
                schema_id = schema.id.lower()
                is_new = schema_id in new_ids
                # A repeated id within the window is new only once.
                new_ids.discard(schema_id)
                self.bus.publish(
                    IndexerEventType.SCHEMA_INDEXED, schema_indexed_event(schema, is_new)
                )

        await run_blocking(
            self.store.update_progress,
            last_scanned_height=to_height,
            last_sync_time=now_ms(),
        )
        return len(schemas)

    async def _fetch_schema(self, registry_log: RegistryLog) -> Optional[IndexedSchema]:
        try:
            return await self.reader.fetch_minimal_schema(
                registry_log, self.event_detail_policy
            )
        except Exception as e:  # pylint: disable=broad-except
            _LOG.error(
                "Failed to fetch details of schema %s in tx %s: %s",
                registry_log.schema_id,
                registry_log.transaction_hash,
                e,
            )
            self.bus.publish(
                IndexerEventType.ERROR,
                error_event(e, f"historical scan of schema {registry_log.schema_id}"),
            )
            return None

    async def scan_progress(self) -> dict:
        """
        Report how far the scan has progressed toward the chain head.

        :return: The last scanned block, current block, percentage, and remaining blocks.
        """
        progress = await run_blocking(self.store.get_progress)
        current_height = await self.reader.current_height(self.log_fetch_policy)
        scanned = progress.last_scanned_height
        percent = (scanned * 100 // current_height) if current_height > 0 else 0
        return {
            "lastScannedHeight": scanned,
            "currentHeight": current_height,
            "progress": min(100, percent),
            "remaining": max(0, current_height - scanned),
        }
