"""
The indexer service wires the pipeline together and runs it:
historical catch-up, enrichment, registry verification, real-time monitoring,
periodic catch-up, and graceful shutdown.
"""

import asyncio
import contextlib
import logging
from typing import Awaitable, Callable, Optional

from streamlens.core.config import IndexerConfig
from streamlens.core.event_bus import EventBus, IndexerEventType, error_event
from streamlens.core.historical_scanner import HistoricalScanner
from streamlens.core.ledger_client import (
    LedgerClient,
    LedgerReader,
    Web3HTTPLedgerClient,
    connect_web3,
)
from streamlens.core.realtime_monitor import RealtimeMonitor
from streamlens.core.registry_client import RegistryClient, Web3RegistryClient
from streamlens.core.schema_enricher import SchemaEnricher
from streamlens.core.state_store import StateStore, create_state_store
from streamlens.core.webhook_dispatcher import WebhookDispatcher
from streamlens.utils.async_utils import run_blocking
from streamlens.utils.log import get_default_logger
from streamlens.utils.rate_limiter import RateLimiter

_LOG = get_default_logger(__name__)
_LOG.setLevel(logging.INFO)


class IndexerService:
    """
    Owns every pipeline component and their lifecycle.
    """

    # pylint: disable-msg=too-many-arguments,too-many-instance-attributes
    def __init__(
        self,
        config: IndexerConfig,
        store: StateStore,
        ledger: LedgerClient,
        registry: RegistryClient,
        bus: Optional[EventBus] = None,
        webhooks: Optional[WebhookDispatcher] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Build the pipeline components.

        :param config: The indexer configuration.
        :param store: The state store.
        :param ledger: The ledger client.
        :param registry: The registry client.
        :param bus: The event bus; a new bus is created if omitted.
        :param webhooks: The webhook dispatcher;
            built from the configured subscriptions if omitted.
        :param sleep: Awaitable sleep shared by all components.
        """
        self.config = config
        self.store = store
        self.bus = bus if bus is not None else EventBus()
        self._sleep = sleep

        # All remote calls share one limiter.
        self.rate_limiter = RateLimiter(
            max_concurrent=config.max_concurrent_requests,
            min_spacing=config.min_request_spacing,
        )
        self.reader = LedgerReader(ledger, self.rate_limiter, sleep=sleep)
        self.scanner = HistoricalScanner(
            self.reader,
            store,
            self.bus,
            config.registry_address,
            batch_size=config.batch_size,
            window_pause=config.window_pause,
            sleep=sleep,
        )
        self.monitor = RealtimeMonitor(
            self.reader,
            store,
            self.bus,
            config.registry_address,
            batch_size=config.batch_size,
            poll_interval=config.poll_interval,
            reconnect_delay=config.reconnect_delay,
            max_reconnect_attempts=config.max_reconnect_attempts,
            sleep=sleep,
        )
        self.enricher = SchemaEnricher(
            registry, store, self.bus, rate_limiter=self.rate_limiter, sleep=sleep
        )
        self.webhooks = (
            webhooks
            if webhooks is not None
            else WebhookDispatcher(
                config.network,
                indexer_name=config.indexer_name,
                subscriptions=config.webhook_subscriptions(),
                sleep=sleep,
            )
        )

        self._unsubscribe_enricher: Optional[Callable[[], None]] = None
        self._catchup_task: Optional[asyncio.Task] = None
        self._scan_task: Optional[asyncio.Task] = None
        self._shut_down = False

    @staticmethod
    def create_instance_from_config(config: IndexerConfig) -> "IndexerService":
        """
        Connect to the configured node and build the service.
        Blocks while connecting.

        :param config: The indexer configuration.
        :return: The service.
        """
        store = create_state_store(config)
        w3 = connect_web3(
            config.rpc_url,
            inject_geth_poa_middleware=config.inject_geth_poa_middleware,
            request_timeout=config.request_timeout,
        )
        chain_id = w3.eth.chain_id
        if chain_id != config.chain_id:
            _LOG.warning(
                "Node at %s reports chain id %s, expected %s for %s",
                config.rpc_url,
                chain_id,
                config.chain_id,
                config.network,
            )
        return IndexerService(
            config,
            store,
            Web3HTTPLedgerClient(w3, config.rpc_url),
            Web3RegistryClient(w3, config.registry_address),
        )

    def resume_height(self) -> int:
        """
        Get the block the next historical scan starts from.

        :return: The block after the checkpoint, or the configured start block.
        """
        progress = self.store.get_progress()
        if progress.last_scanned_height > 0:
            start_height = progress.last_scanned_height + 1
        else:
            start_height = self.config.start_height
        return max(start_height, self.config.start_height)

    async def _run_scan(self, skip_if_running: bool = False) -> bool:
        if skip_if_running and self.scanner.is_scanning:
            _LOG.info("Historical scan already running, skipping catch-up")
            return False
        start_height = await run_blocking(self.resume_height)
        _LOG.info("Starting historical scan from block %s", start_height)
        self._scan_task = asyncio.get_running_loop().create_task(
            self.scanner.scan(start_height)
        )
        # Shield so cancelling a caller never interrupts a window;
        # shutdown stops the scan with request_stop() instead.
        await asyncio.shield(self._scan_task)
        return True

    async def start(self):
        """
        Run the startup sequence and leave the monitor
        and periodic catch-up running.
        Scan failures propagate.
        """
        _LOG.info("Starting StreamLens schema indexer...")
        _LOG.info("Network: %s", self.config.network.upper())
        _LOG.info("Storage: %s", self.store.storage_type)
        if self._unsubscribe_enricher is None:
            self._unsubscribe_enricher = self.enricher.attach(self.bus)
        self.webhooks.attach(self.bus)
        await self.log_stats()

        _LOG.info("Phase 1: historical scan")
        await self._run_scan()

        _LOG.info("Phase 2: schema enrichment")
        await self.enricher.enrich_all()

        _LOG.info("Phase 3: registry verification")
        try:
            await self.enricher.verify_with_registry()
        except Exception as e:  # pylint: disable=broad-except
            _LOG.error("Failed to verify schemas with registry: %s", e)
            self.bus.publish(
                IndexerEventType.ERROR, error_event(e, "IndexerService.verify")
            )

        if self.config.realtime_enabled:
            _LOG.info("Phase 4: real-time monitoring")
            await self.monitor.start()
        else:
            _LOG.info("Real-time monitoring disabled")

        if self.config.catchup_interval > 0:
            self._catchup_task = asyncio.get_running_loop().create_task(
                self._catchup_loop()
            )
            _LOG.info(
                "Periodic catch-up every %.0fs", self.config.catchup_interval
            )
        await self.log_stats()

    async def _catchup_loop(self):
        while True:
            await self._sleep(self.config.catchup_interval)
            try:
                if await self._run_scan(skip_if_running=True):
                    await self.enricher.enrich_all()
            except asyncio.CancelledError:
                raise
            except Exception as e:  # pylint: disable=broad-except
                # The next catch-up resumes from the last checkpoint.
                _LOG.error("Periodic catch-up failed: %s", e)
                self.bus.publish(
                    IndexerEventType.ERROR, error_event(e, "IndexerService.catchup")
                )

    async def shutdown(self):
        """
        Stop the pipeline in order: catch-up timer, monitor, scanner,
        pending event handlers, webhook session, and store.
        Safe to call more than once.
        """
        if self._shut_down:
            return
        self._shut_down = True
        _LOG.info("Shutting down gracefully...")

        if self._catchup_task is not None:
            self._catchup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._catchup_task

        await self.monitor.stop()

        self.scanner.request_stop()
        if self._scan_task is not None and not self._scan_task.done():
            try:
                await self._scan_task
            except Exception as e:  # pylint: disable=broad-except
                _LOG.error("Historical scan ended with error during shutdown: %s", e)

        await self.bus.drain()
        self.webhooks.close()
        if self._unsubscribe_enricher is not None:
            self._unsubscribe_enricher()
            self._unsubscribe_enricher = None
        self.store.close()
        _LOG.info("Shutdown complete")

    async def log_stats(self):
        """Log the store statistics."""
        stats = await run_blocking(self.store.get_stats)
        _LOG.info("Current statistics:")
        _LOG.info("  Total schemas: %s", stats["totalSchemas"])
        _LOG.info("  Unique publishers: %s", stats["uniquePublishers"])
        _LOG.info("  Public schemas: %s", stats["publicSchemas"])
        _LOG.info("  Last scanned block: %s", stats["lastScannedHeight"])
        _LOG.info("  Last sync: %s", stats["lastSync"])

    async def log_sample_schemas(self, count: int = 10):
        """
        Log the newest indexed schemas.

        :param count: Number of schemas to log.
        """
        schemas = (await run_blocking(self.store.get_all_schemas))[:count]
        if not schemas:
            _LOG.info("No schemas indexed yet")
            return
        _LOG.info("Sample schemas (showing %s):", len(schemas))
        for i, schema in enumerate(schemas, start=1):
            _LOG.info(
                "%s. %s | id=%s | publisher=%s | block=%s | definition=%s",
                i,
                schema.name or "Unnamed schema",
                schema.id,
                schema.publisher,
                schema.block_number,
                schema.definition or "N/A",
            )

    def status(self) -> dict:
        """
        Get the status of every component.

        :return: The status dictionary.
        """
        return {
            "network": self.config.network,
            "storage": self.store.storage_type,
            "scanning": self.scanner.is_scanning,
            "monitor": self.monitor.status(),
            "webhooks": self.webhooks.get_stats(),
            "listeners": self.bus.listener_stats(),
        }
