"""
Indexer configuration.
Settings are read from environment variables or a .env file
and merged with defaults at construction time.
"""

import logging
import os
import pprint
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional, Union

from dotenv import load_dotenv

from streamlens.core.types import WebhookSubscription
from streamlens.utils.error_utils import ConfigurationError, check_for_missing_env_vars
from streamlens.utils.log import get_default_logger

_LOG = get_default_logger(__name__)
_LOG.setLevel(logging.INFO)


@dataclass(frozen=True)
class NetworkInfo:
    """
    Static settings of a supported network.
    """

    name: str
    chain_id: int
    rpc_url: str
    registry_address: Optional[str]


NETWORKS: Dict[str, NetworkInfo] = {
    "mainnet": NetworkInfo(
        name="mainnet",
        chain_id=50312,
        rpc_url="https://dream-rpc.somnia.network",
        registry_address="0xC1d833a80469854a7450Dd187224b2ceE5ecE264",
    ),
    # The testnet registry is not deployed at a well-known address.
    "testnet": NetworkInfo(
        name="testnet",
        chain_id=5031,
        rpc_url="https://dream-rpc.somnia.network",
        registry_address=None,
    ),
}

STORAGE_BACKENDS = ("json", "sql", "mongo")

# Event kinds that webhooks may subscribe to.
# Mirrors IndexerEventType values in the event bus.
WEBHOOK_EVENT_KINDS = (
    "schema.discovered",
    "schema.indexed",
    "schema.enriched",
    "connection.established",
    "connection.lost",
    "error",
)


def _get_bool(value: Union[str, None], default: bool = False) -> bool:
    """
    Worker function to parse a bool environment value.

    :param value: The raw environment value.
    :param default: The default value to return if unset.
    :return: The parsed value.
    """
    if value is None or value == "":
        return default
    return value.lower() in ["true", "1", "t", "y", "yes"]


def _get_int(var_name: str, default: int) -> int:
    val = os.getenv(var_name)
    if val is None or val == "":
        return default
    try:
        return int(val)
    except ValueError as e:
        raise ConfigurationError(f"{var_name} must be an integer, got {val!r}") from e


def _ms(var_name: str, default_ms: int) -> float:
    return _get_int(var_name, default_ms) / 1000.0


# pylint: disable=too-many-instance-attributes
@dataclass(frozen=True)
class IndexerConfig:
    """
    Complete indexer configuration.
    Durations are in seconds.
    """

    network: str = "mainnet"
    rpc_url: Optional[str] = None
    registry_address: Optional[str] = None
    start_height: int = 0
    batch_size: int = 1000
    catchup_interval: float = 300.0
    realtime_enabled: bool = True
    poll_interval: float = 2.0
    reconnect_delay: float = 5.0
    max_reconnect_attempts: int = 10
    window_pause: float = 0.5
    max_concurrent_requests: int = 5
    min_request_spacing: float = 0.2
    request_timeout: float = 30.0
    webhook_url: Optional[str] = None
    webhook_events: List[str] = field(
        default_factory=lambda: ["schema.discovered", "schema.indexed"]
    )
    webhook_secret: Optional[str] = None
    webhook_timeout: float = 5.0
    webhook_max_attempts: int = 3
    storage_backend: str = "json"
    data_dir: str = "./data"
    database_url: Optional[str] = None
    mongodb_url: Optional[str] = None
    inject_geth_poa_middleware: bool = False
    indexer_name: str = "StreamLens"

    def __post_init__(self):
        if self.network not in NETWORKS:
            raise ConfigurationError(
                f"Unknown network {self.network!r}; expected one of {sorted(NETWORKS)}"
            )
        network_info = NETWORKS[self.network]
        # Fill per-network defaults on the frozen dataclass.
        if not self.rpc_url:
            object.__setattr__(self, "rpc_url", network_info.rpc_url)
        if not self.registry_address:
            object.__setattr__(self, "registry_address", network_info.registry_address)
        if self.batch_size < 1:
            raise ConfigurationError("batch_size must be at least 1")
        if self.start_height < 0:
            raise ConfigurationError("start_height must not be negative")
        if self.storage_backend not in STORAGE_BACKENDS:
            raise ConfigurationError(
                f"Unknown storage backend {self.storage_backend!r}; "
                f"expected one of {STORAGE_BACKENDS}"
            )
        unknown_events = [e for e in self.webhook_events if e not in WEBHOOK_EVENT_KINDS]
        if unknown_events:
            raise ConfigurationError(f"Unknown webhook events: {unknown_events}")
        check_for_missing_env_vars({"REGISTRY_ADDRESS": self.registry_address})

    @staticmethod
    def get_init_args_from_env(dotenv_path: Union[str, None] = None) -> dict:
        """
        Worker function to load the environment variables.

        :param dotenv_path: The .env file path, if any.
        :return: The dictionary of construction arguments.
        """
        # Load .env file if it exists.
        if dotenv_path:
            load_dotenv(dotenv_path, verbose=True, override=True)
        webhook_events = os.getenv(
            "WEBHOOK_EVENTS", "schema.discovered,schema.indexed"
        )
        init_args = {
            "network": os.getenv("NETWORK", "mainnet"),
            "rpc_url": os.getenv("RPC_URL"),
            "registry_address": os.getenv("REGISTRY_ADDRESS"),
            "start_height": _get_int("START_BLOCK", 0),
            "batch_size": _get_int("BATCH_SIZE", 1000),
            "catchup_interval": _ms("HISTORICAL_SCAN_INTERVAL_MS", 300000),
            "realtime_enabled": _get_bool(os.getenv("ENABLE_REALTIME"), default=True),
            "poll_interval": _ms("POLL_INTERVAL_MS", 2000),
            "reconnect_delay": _ms("RECONNECT_DELAY_MS", 5000),
            "max_reconnect_attempts": _get_int("MAX_RECONNECT_ATTEMPTS", 10),
            "window_pause": _ms("WINDOW_PAUSE_MS", 500),
            "max_concurrent_requests": _get_int("MAX_CONCURRENT_REQUESTS", 5),
            "min_request_spacing": _ms("MIN_REQUEST_SPACING_MS", 200),
            "request_timeout": _ms("REQUEST_TIMEOUT_MS", 30000),
            "webhook_url": os.getenv("WEBHOOK_URL") or None,
            "webhook_events": [e.strip() for e in webhook_events.split(",") if e.strip()],
            "webhook_secret": os.getenv("WEBHOOK_SECRET") or None,
            "webhook_timeout": _ms("WEBHOOK_TIMEOUT_MS", 5000),
            "webhook_max_attempts": _get_int("WEBHOOK_MAX_ATTEMPTS", 3),
            "storage_backend": os.getenv("STORAGE_BACKEND", "json").lower(),
            "data_dir": os.getenv("DATA_DIR", "./data"),
            "database_url": os.getenv("DATABASE_URL") or None,
            "mongodb_url": os.getenv("MONGODB_URL") or None,
            "inject_geth_poa_middleware": _get_bool(
                os.getenv("INJECT_GETH_POA_MIDDLEWARE"), default=False
            ),
            "indexer_name": os.getenv("INDEXER_NAME", "StreamLens"),
        }
        return init_args

    @staticmethod
    def create_instance_from_env(
        dotenv_path: Union[str, None] = None
    ) -> "IndexerConfig":
        """
        Creates a configuration initialized from environment variables.

        :param dotenv_path: Path to the .env file.
            If path is not specified, does not load the .env file.
        :return: The configuration.
        """
        config = IndexerConfig(**IndexerConfig.get_init_args_from_env(dotenv_path))
        _LOG.info(
            "IndexerConfig.create_instance_from_env(): config =\n%s",
            pprint.pformat(config.redacted()),
        )
        return config

    @property
    def chain_id(self) -> int:
        """Chain id of the configured network."""
        return NETWORKS[self.network].chain_id

    def redacted(self) -> dict:
        """
        Dictionary form safe for logging.

        :return: The settings with secrets and credentials masked.
        """
        settings = asdict(self)
        for key in ("webhook_secret", "database_url", "mongodb_url"):
            if settings[key]:
                settings[key] = "***"
        return settings

    def webhook_subscriptions(self) -> List[WebhookSubscription]:
        """
        Build the webhook subscriptions described by the configuration.

        :return: A single "default" subscription if a webhook URL is set.
        """
        if not self.webhook_url:
            return []
        return [
            WebhookSubscription(
                id="default",
                url=self.webhook_url,
                events=frozenset(self.webhook_events),
                auth_token=self.webhook_secret,
                max_attempts=self.webhook_max_attempts,
                timeout=self.webhook_timeout,
            )
        ]
