"""
The ledger client module provides read access to the chain:
current height, registry event logs, blocks, and transactions.
This implementation uses Web3.HTTPProvider.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, List, Optional, TypeVar

from beeprint import pp
from web3 import Web3
from web3.middleware import ExtraDataToPOAMiddleware

from streamlens.core.types import IndexedSchema, RegistryLog
from streamlens.utils.async_utils import run_blocking
from streamlens.utils.crypto_utils import (
    bytes_to_hex_str_auto,
    event_signature_topic,
    normalize_address,
    to_checksum_address,
)
from streamlens.utils.log import get_default_logger
from streamlens.utils.rate_limiter import RateLimiter
from streamlens.utils.retries import (
    EVENT_DETAIL_RETRY_POLICY,
    LOG_FETCH_RETRY_POLICY,
    RetryPolicy,
)

_LOG = get_default_logger(__name__)
_LOG.setLevel(logging.INFO)

T = TypeVar("T")

# Event emitted by the registry for every new schema.
SCHEMA_REGISTERED_EVENT = "DataSchemaRegistered(bytes32)"

# Settings for the connection retry for Web3.HTTPProvider.
# Maximum number of retries.
_W3_CONNECTION_MAX_RETRIES = 5
# Linear backoff in seconds.
_W3_CONNECTION_BACKOFF = 1


class LedgerClient(ABC):
    """
    Interface for the read-only chain operations the indexer needs.
    """

    @abstractmethod
    async def current_height(self) -> int:
        """
        Get the current chain height.

        :return: The latest block number.
        """

    @abstractmethod
    async def get_logs(
        self,
        address: str,
        event_signature: str,
        from_height: int,
        to_height: int,
    ) -> List[RegistryLog]:
        """
        Get registry logs emitted by a contract in an inclusive block range.

        :param address: The emitting contract address.
        :param event_signature: Canonical event signature to filter on.
        :param from_height: First block of the range.
        :param to_height: Last block of the range.
        :return: The logs in chain order.
        """

    @abstractmethod
    async def get_block(self, height: int) -> dict:
        """
        Get a block header.

        :param height: The block number.
        :return: A dictionary with at least the "timestamp" key, in seconds.
        """

    @abstractmethod
    async def get_transaction(self, tx_hash: str) -> dict:
        """
        Get a transaction.

        :param tx_hash: The transaction hash.
        :return: A dictionary with at least the "from" key.
        """

    @property
    def endpoint(self) -> str:
        """Description of the remote endpoint for status reports."""
        return ""


def connect_web3(
    node_rpc_url: str,
    inject_geth_poa_middleware: bool = False,
    request_timeout: float = 30.0,
) -> Web3:
    """
    Connect to a node with retries and linear backoff.

    :param node_rpc_url: Node RPC URL.
    :param inject_geth_poa_middleware: True if the PoA extraData middleware
        is required to decode blocks on the network.
    :param request_timeout: HTTP request timeout in seconds.
    :return: The connected Web3 object.
    """
    w3 = None
    retry_count = 0
    backoff = 0
    while retry_count < _W3_CONNECTION_MAX_RETRIES:
        try:
            w3 = Web3(
                Web3.HTTPProvider(
                    node_rpc_url, request_kwargs={"timeout": request_timeout}
                )
            )
            if w3.is_connected():
                break
            raise ConnectionError(f"is_connected() returned False for {node_rpc_url}")
        except ConnectionError as e:
            if retry_count >= _W3_CONNECTION_MAX_RETRIES - 1:
                _LOG.error(
                    "connect_web3(): Exception connecting to %s: %s",
                    node_rpc_url,
                    e,
                )
            retry_count += 1
            backoff += _W3_CONNECTION_BACKOFF
            time.sleep(backoff)

    if w3 is None or not w3.is_connected():
        raise ConnectionError(
            f"Failed to connect to {node_rpc_url} after {retry_count} retries"
        )

    if inject_geth_poa_middleware:
        w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)

    _LOG.info("Connected to %s (chain id %s)", node_rpc_url, w3.eth.chain_id)
    return w3


class Web3HTTPLedgerClient(LedgerClient):
    """
    Ledger client accessible using Web3.HTTPProvider.
    Web3 calls are blocking and run in the default executor.
    """

    def __init__(self, w3: Web3, node_rpc_url: Optional[str] = None):
        """
        Initialize the client object.

        :param w3: A connected Web3 object.
        :param node_rpc_url: Node RPC URL used in status reports.
        """
        self.w3 = w3
        self.node_rpc_url = node_rpc_url or ""

    @staticmethod
    def create_instance(
        node_rpc_url: str,
        inject_geth_poa_middleware: bool = False,
        request_timeout: float = 30.0,
    ) -> "Web3HTTPLedgerClient":
        """
        Connect to a node and create a client for it.

        :param node_rpc_url: Node RPC URL.
        :param inject_geth_poa_middleware: True if the PoA middleware is required.
        :param request_timeout: HTTP request timeout in seconds.
        :return: The client.
        """
        w3 = connect_web3(node_rpc_url, inject_geth_poa_middleware, request_timeout)
        return Web3HTTPLedgerClient(w3, node_rpc_url)

    @property
    def endpoint(self) -> str:
        return self.node_rpc_url

    async def current_height(self) -> int:
        return int(await run_blocking(lambda: self.w3.eth.block_number))

    def _get_logs_worker(
        self, address: str, event_signature: str, from_height: int, to_height: int
    ) -> List[RegistryLog]:
        raw_logs = self.w3.eth.get_logs(
            {
                "address": to_checksum_address(address),
                "fromBlock": from_height,
                "toBlock": to_height,
                "topics": [event_signature_topic(event_signature)],
            }
        )
        if _LOG.isEnabledFor(logging.DEBUG):
            _LOG.debug("Raw logs for blocks %s-%s:", from_height, to_height)
            _LOG.debug(pp([dict(log) for log in raw_logs], output=False))

        logs = []
        for log in raw_logs:
            topics = log["topics"]
            if len(topics) < 2:
                # The schema id is the indexed argument.
                _LOG.warning(
                    "Skipping log without schema id topic in tx %s",
                    bytes_to_hex_str_auto(log["transactionHash"]),
                )
                continue
            logs.append(
                RegistryLog(
                    schema_id=bytes_to_hex_str_auto(topics[1]),
                    block_number=int(log["blockNumber"]),
                    transaction_hash=bytes_to_hex_str_auto(log["transactionHash"]),
                    log_index=int(log["logIndex"]),
                )
            )
        return logs

    async def get_logs(
        self,
        address: str,
        event_signature: str,
        from_height: int,
        to_height: int,
    ) -> List[RegistryLog]:
        return await run_blocking(
            self._get_logs_worker, address, event_signature, from_height, to_height
        )

    async def get_block(self, height: int) -> dict:
        block = await run_blocking(self.w3.eth.get_block, height)
        return {"number": int(block["number"]), "timestamp": int(block["timestamp"])}

    async def get_transaction(self, tx_hash: str) -> dict:
        tx = await run_blocking(self.w3.eth.get_transaction, tx_hash)
        return {"hash": bytes_to_hex_str_auto(tx["hash"]), "from": tx["from"]}


class LedgerReader:
    """
    Rate-limited and retried access to a ledger client.
    The scanner and the monitor share one reader so that all remote calls
    go through the same limiter.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        rate_limiter: Optional[RateLimiter] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the reader.

        :param ledger: The ledger client.
        :param rate_limiter: The shared limiter. A default limiter is created if omitted.
        :param sleep: Awaitable sleep used for retry backoff.
        """
        self.ledger = ledger
        self.rate_limiter = rate_limiter if rate_limiter is not None else RateLimiter()
        self._sleep = sleep

    async def call(
        self,
        operation: Callable[[], Awaitable[T]],
        policy: RetryPolicy,
        context: str,
    ) -> T:
        """
        Run a ledger operation under the limiter with retries.
        Every attempt is admitted by the limiter separately.

        :param operation: Zero-argument callable returning an awaitable.
        :param policy: The retry policy.
        :param context: Description used in log messages.
        :return: The operation result.
        """
        return await policy.run(
            lambda: self.rate_limiter.run(operation),
            _LOG,
            context=context,
            sleep=self._sleep,
        )

    async def current_height(self, policy: RetryPolicy = LOG_FETCH_RETRY_POLICY) -> int:
        return await self.call(
            self.ledger.current_height, policy, "Fetching current block number"
        )

    async def get_logs(
        self,
        address: str,
        from_height: int,
        to_height: int,
        event_signature: str = SCHEMA_REGISTERED_EVENT,
        policy: RetryPolicy = LOG_FETCH_RETRY_POLICY,
    ) -> List[RegistryLog]:
        return await self.call(
            lambda: self.ledger.get_logs(
                address, event_signature, from_height, to_height
            ),
            policy,
            f"Fetching logs for blocks {from_height}-{to_height}",
        )

    async def fetch_minimal_schema(
        self,
        registry_log: RegistryLog,
        policy: RetryPolicy = EVENT_DETAIL_RETRY_POLICY,
    ) -> IndexedSchema:
        """
        Build the unenriched record for a registry log.
        Fetches the block for the timestamp and the transaction for the publisher.

        :param registry_log: The log.
        :param policy: The retry policy of each fetch.
        :return: The record with empty name and definition.
        """
        block = await self.call(
            lambda: self.ledger.get_block(registry_log.block_number),
            policy,
            f"Fetching block {registry_log.block_number}",
        )
        tx = await self.call(
            lambda: self.ledger.get_transaction(registry_log.transaction_hash),
            policy,
            f"Fetching transaction {registry_log.transaction_hash}",
        )
        return IndexedSchema(
            id=registry_log.schema_id,
            publisher=normalize_address(tx["from"]),
            block_number=registry_log.block_number,
            timestamp=int(block["timestamp"]),
            origin_tx_hash=registry_log.transaction_hash,
        )
