"""
Real-time tail polling of registry events.
The monitor follows the chain head with a block cursor,
records registrations it has not seen, and reconnects with linear backoff
when the endpoint becomes unreachable.
"""

import asyncio
import contextlib
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional

from streamlens.core.event_bus import (
    EventBus,
    IndexerEventType,
    connection_event,
    error_event,
    schema_discovered_event,
    schema_indexed_event,
)
from streamlens.core.ledger_client import SCHEMA_REGISTERED_EVENT, LedgerReader
from streamlens.core.state_store import StateStore
from streamlens.core.types import RegistryLog, now_ms
from streamlens.utils.async_utils import run_blocking
from streamlens.utils.error_utils import is_connectivity_error, is_empty_error
from streamlens.utils.log import get_default_logger
from streamlens.utils.retries import EVENT_DETAIL_RETRY_POLICY, RetryPolicy

_LOG = get_default_logger(__name__)
_LOG.setLevel(logging.INFO)


class MonitorState(str, Enum):
    """
    Lifecycle states of the real-time monitor.
    """

    STOPPED = "stopped"
    CONNECTING = "connecting"
    WATCHING = "watching"
    RECONNECTING = "reconnecting"


class RealtimeMonitor:
    """
    Polls the chain head for new schema registrations.
    The monitor never advances last_scanned_height;
    the historical scanner owns the checkpoint.
    """

    # pylint: disable-msg=too-many-arguments,too-many-instance-attributes
    def __init__(
        self,
        reader: LedgerReader,
        store: StateStore,
        bus: EventBus,
        registry_address: str,
        batch_size: int = 1000,
        poll_interval: float = 2.0,
        reconnect_delay: float = 5.0,
        max_reconnect_attempts: int = 10,
        request_policy: RetryPolicy = EVENT_DETAIL_RETRY_POLICY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the monitor.

        :param reader: Rate-limited ledger access.
        :param store: The state store.
        :param bus: The event bus.
        :param registry_address: The registry contract address.
        :param batch_size: Maximum blocks covered by one poll.
        :param poll_interval: Seconds between polls.
        :param reconnect_delay: Base reconnect delay; attempt n waits n times this.
        :param max_reconnect_attempts: Consecutive reconnects before giving up.
        :param request_policy: Retry budget of each remote call made by a poll.
        :param sleep: Awaitable sleep used for poll and reconnect delays.
        """
        self.reader = reader
        self.store = store
        self.bus = bus
        self.registry_address = registry_address
        self.batch_size = batch_size
        self.poll_interval = poll_interval
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_attempts = max_reconnect_attempts
        self.request_policy = request_policy
        self._sleep = sleep

        self.state = MonitorState.STOPPED
        self.reconnect_attempts = 0
        # Next block to poll. Kept across reconnects.
        self.cursor: Optional[int] = None
        self._running = False
        self._poll_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        """True between start() and stop() or giving up."""
        return self._running

    async def start(self):
        """
        Connect and start polling.
        A connection failure on the first start propagates to the caller.
        """
        if self._running:
            _LOG.warning("Real-time monitor is already running")
            return
        _LOG.info(
            "Starting real-time monitor (HTTP polling) on %s for %s",
            self.reader.ledger.endpoint,
            self.registry_address,
        )
        self._running = True
        try:
            await self._connect()
        except Exception as e:
            _LOG.error("Failed to start real-time monitor: %s", e)
            self.bus.publish(
                IndexerEventType.ERROR, error_event(e, "RealtimeMonitor.start")
            )
            self._running = False
            self.state = MonitorState.STOPPED
            raise
        _LOG.info("Real-time monitor started")

    async def stop(self):
        """
        Cancel the poll and reconnect tasks. Safe to call more than once.
        """
        was_running = self._running
        self._running = False
        self.state = MonitorState.STOPPED
        current = asyncio.current_task()
        for task in (self._poll_task, self._reconnect_task):
            if task is None or task is current or task.done():
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._poll_task = None
        self._reconnect_task = None
        if was_running:
            _LOG.info("Real-time monitor stopped")

    async def _connect(self):
        self.state = MonitorState.CONNECTING
        head = await self.reader.current_height(self.request_policy)
        if not self._running:
            return
        if self.cursor is None:
            progress = await run_blocking(self.store.get_progress)
            self.cursor = max(
                progress.last_scanned_height + 1, head - self.batch_size + 1, 0
            )
        _LOG.info(
            "RPC connection established at block %s, polling from block %s",
            head,
            self.cursor,
        )
        self.bus.publish(
            IndexerEventType.CONNECTION_ESTABLISHED,
            connection_event(f"Connected to {self.reader.ledger.endpoint}"),
        )
        self.reconnect_attempts = 0
        self.state = MonitorState.WATCHING
        # At most one poll loop runs at a time.
        previous = self._poll_task
        if (
            previous is not None
            and not previous.done()
            and previous is not asyncio.current_task()
        ):
            previous.cancel()
        self._poll_task = asyncio.get_running_loop().create_task(self._poll_loop())

    async def _poll_loop(self):
        while self.state == MonitorState.WATCHING:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:  # pylint: disable=broad-except
                if await self._handle_poll_error(e):
                    return
            await self._sleep(self.poll_interval)

    async def poll_once(self) -> int:
        """
        Poll one batch of blocks from the cursor toward the head.

        :return: The number of logs seen.
        """
        head = await self.reader.current_height(self.request_policy)
        if self.cursor is None:
            self.cursor = max(head - self.batch_size + 1, 0)
        if head < self.cursor:
            return 0
        to_height = min(head, self.cursor + self.batch_size - 1)
        logs = await self.reader.get_logs(
            self.registry_address,
            self.cursor,
            to_height,
            event_signature=SCHEMA_REGISTERED_EVENT,
            policy=self.request_policy,
        )
        if logs:
            _LOG.info(
                "Received %s new schema registration event(s) in blocks %s-%s",
                len(logs),
                self.cursor,
                to_height,
            )
        for registry_log in logs:
            try:
                await self._process_log(registry_log)
            except asyncio.CancelledError:
                raise
            except Exception as e:  # pylint: disable=broad-except
                _LOG.error(
                    "Failed to process event for schema %s: %s",
                    registry_log.schema_id,
                    e,
                )
                self.bus.publish(
                    IndexerEventType.ERROR,
                    error_event(e, "RealtimeMonitor.process_log"),
                )
        self.cursor = to_height + 1
        await run_blocking(
            self.store.update_progress, last_sync_time=now_ms(), healthy=True
        )
        return len(logs)

    async def _process_log(self, registry_log: RegistryLog):
        existing = await run_blocking(self.store.get_schema, registry_log.schema_id)
        if existing is not None:
            if not existing.needs_enrichment:
                _LOG.debug("Schema %s already indexed, skipping", existing.id)
                return
            # Stored but incomplete: let the enricher try again.
            _LOG.info("Schema %s stored but not enriched, re-publishing", existing.id)
            self.bus.publish(
                IndexerEventType.SCHEMA_INDEXED, schema_indexed_event(existing, False)
            )
            return

        _LOG.info("Processing schema registration: %s", registry_log.schema_id)
        self.bus.publish(
            IndexerEventType.SCHEMA_DISCOVERED, schema_discovered_event(registry_log)
        )
        schema = await self.reader.fetch_minimal_schema(registry_log, self.request_policy)
        is_new = await run_blocking(self.store.save_schema, schema)
        _LOG.info("Schema %s indexed in real time", schema.id)
        self.bus.publish(
            IndexerEventType.SCHEMA_INDEXED, schema_indexed_event(schema, is_new)
        )

    async def _handle_poll_error(self, error: Exception) -> bool:
        """
        Classify a poll error.

        :param error: The error.
        :return: True if polling must stop because a reconnect was scheduled.
        """
        if is_empty_error(error):
            _LOG.warning(
                "Received empty %s from poll (may be normal for polling)",
                type(error).__name__,
            )
            return False
        if is_connectivity_error(error):
            _LOG.error("Connection error while polling: %s", error)
            await self._schedule_reconnect(error)
            return True
        _LOG.error("Event watcher error: %s", error)
        self.bus.publish(IndexerEventType.ERROR, error_event(error, "RealtimeMonitor.poll"))
        return False

    async def _schedule_reconnect(self, error: Exception):
        if not self._running:
            return
        self.state = MonitorState.RECONNECTING
        self.bus.publish(IndexerEventType.CONNECTION_LOST, connection_event(str(error)))
        self.reconnect_attempts += 1
        if self.reconnect_attempts > self.max_reconnect_attempts:
            _LOG.error(
                "Max reconnection attempts (%s) reached. Stopping monitor.",
                self.max_reconnect_attempts,
            )
            await self._give_up(error)
            return
        delay = self.reconnect_delay * self.reconnect_attempts
        _LOG.warning(
            "Attempting to reconnect in %.1fs (attempt %s/%s)",
            delay,
            self.reconnect_attempts,
            self.max_reconnect_attempts,
        )
        self._reconnect_task = asyncio.get_running_loop().create_task(
            self._reconnect(delay)
        )

    async def _reconnect(self, delay: float):
        await self._sleep(delay)
        if not self._running:
            return
        try:
            await self._connect()
        except asyncio.CancelledError:
            raise
        except Exception as e:  # pylint: disable=broad-except
            _LOG.error("Reconnection failed: %s", e)
            if not is_connectivity_error(e) and not is_empty_error(e):
                self.bus.publish(
                    IndexerEventType.ERROR, error_event(e, "RealtimeMonitor.reconnect")
                )
            # Without a connection there is no poll to continue; keep reconnecting.
            await self._schedule_reconnect(e)

    async def _give_up(self, error: Exception):
        self._running = False
        self.state = MonitorState.STOPPED
        try:
            await run_blocking(
                self.store.update_progress, healthy=False, last_error=str(error)
            )
        except Exception as e:  # pylint: disable=broad-except
            _LOG.error("Failed to record unhealthy state: %s", e)

    def status(self) -> dict:
        """
        Get the monitor status.

        :return: State, running flag, reconnect attempts, RPC URL, and cursor.
        """
        return {
            "state": self.state.value,
            "running": self._running,
            "reconnectAttempts": self.reconnect_attempts,
            "rpcUrl": self.reader.ledger.endpoint,
            "cursor": self.cursor,
        }

    def is_healthy(self) -> bool:
        """True while the monitor is watching the chain."""
        return self.state == MonitorState.WATCHING
