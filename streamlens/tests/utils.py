"""
StreamLens test utils
"""

import asyncio
import logging
from typing import Dict, List, Optional

from web3 import Web3

from streamlens.core.ledger_client import LedgerClient
from streamlens.core.registry_client import RegistryClient
from streamlens.core.types import IndexedSchema, RegistryLog
from streamlens.utils.log import get_default_logger

_LOG = get_default_logger(__name__)
_LOG.setLevel(logging.INFO)

REGISTRY_ADDRESS = "0xC1d833a80469854a7450Dd187224b2ceE5ecE264"
PUBLISHER = "0x00000000000000000000000000000000000000aa"
BASE_TIMESTAMP = 1_700_000_000


def int_to_hash(n: int) -> str:
    """Build a bytes32 hex string from an integer."""
    return "0x" + f"{n:064x}"


def make_log(n: int, block_number: int, log_index: int = 0) -> RegistryLog:
    """Build a registry log for schema n."""
    return RegistryLog(
        schema_id=int_to_hash(n),
        block_number=block_number,
        transaction_hash=int_to_hash(10_000 + n),
        log_index=log_index,
    )


def make_schema(
    n: int,
    block_number: int = 100,
    publisher: str = PUBLISHER,
    name: str = "",
    definition: str = "",
) -> IndexedSchema:
    """Build a schema record for schema n."""
    return IndexedSchema(
        id=int_to_hash(n),
        publisher=publisher,
        block_number=block_number,
        timestamp=BASE_TIMESTAMP + block_number,
        origin_tx_hash=int_to_hash(10_000 + n),
        name=name,
        definition=definition,
    )


async def no_sleep(_delay: float):
    """Sleep replacement that returns immediately."""


class RecordingSleep:
    """Sleep replacement that records the requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)
        await asyncio.sleep(0)


async def wait_until(predicate, timeout: float = 2.0):
    """Yield to the loop until the predicate holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not reached before timeout")
        await asyncio.sleep(0.01)


class FakeLedgerClient(LedgerClient):
    """
    In-memory ledger.
    Errors queued in height_errors, log_errors, and block_errors are raised
    by the next calls, one per call.
    """

    def __init__(
        self,
        height: int = 0,
        logs: Optional[List[RegistryLog]] = None,
        senders: Optional[Dict[str, str]] = None,
    ):
        self.height = height
        self.logs: List[RegistryLog] = list(logs or [])
        self.senders: Dict[str, str] = dict(senders or {})
        self.height_errors: List[Exception] = []
        self.log_errors: List[Exception] = []
        self.block_errors: List[Exception] = []
        self.failing_blocks: Dict[int, Exception] = {}
        self.get_logs_calls: List[tuple] = []
        self.log_gate: Optional[asyncio.Event] = None

    @property
    def endpoint(self) -> str:
        return "http://fake-node"

    async def current_height(self) -> int:
        if self.height_errors:
            raise self.height_errors.pop(0)
        return self.height

    async def get_logs(
        self,
        address: str,
        event_signature: str,
        from_height: int,
        to_height: int,
    ) -> List[RegistryLog]:
        self.get_logs_calls.append((from_height, to_height))
        if self.log_gate is not None:
            await self.log_gate.wait()
        if self.log_errors:
            raise self.log_errors.pop(0)
        return [
            log for log in self.logs if from_height <= log.block_number <= to_height
        ]

    async def get_block(self, height: int) -> dict:
        if self.block_errors:
            raise self.block_errors.pop(0)
        if height in self.failing_blocks:
            raise self.failing_blocks[height]
        return {"number": height, "timestamp": BASE_TIMESTAMP + height}

    async def get_transaction(self, tx_hash: str) -> dict:
        return {"hash": tx_hash, "from": self.senders.get(tx_hash, PUBLISHER.upper())}


class FakeRegistryClient(RegistryClient):
    """
    In-memory registry keyed by schema id.
    Method names listed in failing raise RuntimeError.
    """

    def __init__(
        self,
        names: Optional[Dict[str, str]] = None,
        bases: Optional[Dict[str, str]] = None,
        parents: Optional[Dict[str, str]] = None,
        usage: Optional[Dict[str, int]] = None,
        public_definitions: Optional[List[str]] = None,
    ):
        self.names = dict(names or {})
        self.bases = dict(bases or {})
        self.parents = dict(parents or {})
        self.usage = dict(usage or {})
        self.public_definitions = list(public_definitions or [])
        self.failing: set = set()

    def _check(self, method: str):
        if method in self.failing:
            raise RuntimeError(f"{method} reverted")

    async def schema_name(self, schema_id: str) -> str:
        self._check("schema_name")
        return self.names.get(schema_id, "")

    async def base_schema(self, schema_id: str) -> str:
        self._check("base_schema")
        return self.bases.get(schema_id, "")

    async def parent_schema_id(self, schema_id: str) -> Optional[str]:
        self._check("parent_schema_id")
        return self.parents.get(schema_id)

    async def publisher_data_count(self, schema_id: str, publisher: str) -> int:
        self._check("publisher_data_count")
        return self.usage.get(schema_id, 0)

    async def all_schemas(self) -> List[str]:
        self._check("all_schemas")
        return list(self.public_definitions)

    async def compute_schema_id(self, definition: str) -> str:
        self._check("compute_schema_id")
        return self.schema_id_for(definition)

    @staticmethod
    def schema_id_for(definition: str) -> str:
        """Id the fake registry assigns to a definition."""
        return "0x" + Web3.keccak(text=definition).hex().removeprefix("0x")
