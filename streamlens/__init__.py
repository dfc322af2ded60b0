"""streamlens

Indexer for data-stream schemas registered on a streams registry contract
"""

from streamlens.core.config import IndexerConfig
from streamlens.core.event_bus import EventBus, IndexerEventType
from streamlens.core.historical_scanner import HistoricalScanner
from streamlens.core.indexer_service import IndexerService
from streamlens.core.json_state_store import JSONStateStore
from streamlens.core.ledger_client import (
    LedgerClient,
    LedgerReader,
    Web3HTTPLedgerClient,
)
from streamlens.core.mongo_state_store import MongoStateStore
from streamlens.core.realtime_monitor import MonitorState, RealtimeMonitor
from streamlens.core.registry_client import RegistryClient, Web3RegistryClient
from streamlens.core.schema_enricher import SchemaEnricher
from streamlens.core.sql_state_store import SQLStateStore
from streamlens.core.state_store import StateStore, create_state_store
from streamlens.core.types import (
    IndexedSchema,
    IndexerProgress,
    RegistryLog,
    WebhookSubscription,
)
from streamlens.core.webhook_dispatcher import WebhookDispatcher
from streamlens.utils.log import get_default_logger
from streamlens.utils.rate_limiter import RateLimiter
from streamlens.utils.retries import RetryPolicy, with_retries

__all__ = [
    "IndexerConfig",
    "IndexerService",
    # Pipeline
    "HistoricalScanner",
    "RealtimeMonitor",
    "MonitorState",
    "SchemaEnricher",
    "EventBus",
    "IndexerEventType",
    "WebhookDispatcher",
    # Chain access
    "LedgerClient",
    "LedgerReader",
    "Web3HTTPLedgerClient",
    "RegistryClient",
    "Web3RegistryClient",
    # Storage
    "StateStore",
    "JSONStateStore",
    "SQLStateStore",
    "MongoStateStore",
    "create_state_store",
    # Types
    "IndexedSchema",
    "IndexerProgress",
    "RegistryLog",
    "WebhookSubscription",
    "RateLimiter",
    "RetryPolicy",
    "with_retries",
    "get_default_logger",
]
