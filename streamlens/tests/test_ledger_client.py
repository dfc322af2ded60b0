import asyncio
import unittest
from unittest.mock import MagicMock

from hexbytes import HexBytes

from streamlens.core.ledger_client import (
    SCHEMA_REGISTERED_EVENT,
    LedgerReader,
    Web3HTTPLedgerClient,
)
from streamlens.core.registry_client import Web3RegistryClient
from streamlens.tests.utils import (
    PUBLISHER,
    REGISTRY_ADDRESS,
    FakeLedgerClient,
    int_to_hash,
    make_log,
    no_sleep,
)
from streamlens.utils.crypto_utils import event_signature_topic, hex_str_to_bytes
from streamlens.utils.rate_limiter import RateLimiter


def make_raw_log(schema_n: int, block_number: int, with_schema_topic: bool = True):
    topics = [HexBytes(event_signature_topic(SCHEMA_REGISTERED_EVENT))]
    if with_schema_topic:
        topics.append(HexBytes(int_to_hash(schema_n)))
    return {
        "topics": topics,
        "blockNumber": block_number,
        "transactionHash": HexBytes(int_to_hash(10_000 + schema_n)),
        "logIndex": 0,
    }


class TestWeb3HTTPLedgerClient(unittest.TestCase):
    """Test log decoding with a mocked Web3 object."""

    def setUp(self):
        self.w3 = MagicMock()
        self.client = Web3HTTPLedgerClient(self.w3, "http://node")

    def test_get_logs(self):
        self.w3.eth.get_logs.return_value = [
            make_raw_log(1, 10),
            make_raw_log(2, 11, with_schema_topic=False),
        ]

        logs = asyncio.run(
            self.client.get_logs(REGISTRY_ADDRESS, SCHEMA_REGISTERED_EVENT, 0, 99)
        )

        assert logs == [make_log(1, 10)]
        log_filter = self.w3.eth.get_logs.call_args[0][0]
        assert log_filter["fromBlock"] == 0
        assert log_filter["toBlock"] == 99
        assert log_filter["address"].lower() == REGISTRY_ADDRESS.lower()
        assert log_filter["topics"] == [event_signature_topic(SCHEMA_REGISTERED_EVENT)]

    def test_block_and_transaction(self):
        self.w3.eth.block_number = 1234
        self.w3.eth.get_block.return_value = {"number": 10, "timestamp": 1700000010}
        self.w3.eth.get_transaction.return_value = {
            "hash": HexBytes(int_to_hash(5)),
            "from": "0xAbC",
        }

        assert asyncio.run(self.client.current_height()) == 1234
        assert asyncio.run(self.client.get_block(10))["timestamp"] == 1700000010
        tx = asyncio.run(self.client.get_transaction(int_to_hash(5)))
        assert tx == {"hash": int_to_hash(5), "from": "0xAbC"}
        assert self.client.endpoint == "http://node"


class TestLedgerReader(unittest.TestCase):
    """Test retried ledger access."""

    def test_fetch_minimal_schema_retries(self):
        ledger = FakeLedgerClient(height=100)
        ledger.block_errors = [TimeoutError("timed out")]
        reader = LedgerReader(ledger, RateLimiter(min_spacing=0), sleep=no_sleep)

        schema = asyncio.run(reader.fetch_minimal_schema(make_log(1, 10)))
        assert schema.id == int_to_hash(1)
        assert schema.publisher == PUBLISHER
        assert schema.block_number == 10
        assert schema.name == ""

    def test_current_height(self):
        ledger = FakeLedgerClient(height=100)
        ledger.height_errors = [ConnectionError("connection reset")]
        reader = LedgerReader(ledger, RateLimiter(min_spacing=0), sleep=no_sleep)
        assert asyncio.run(reader.current_height()) == 100


class TestWeb3RegistryClient(unittest.TestCase):
    """Test registry calls with a mocked contract."""

    def setUp(self):
        self.w3 = MagicMock()
        self.contract = self.w3.eth.contract.return_value
        self.client = Web3RegistryClient(self.w3, REGISTRY_ADDRESS.lower())

    def test_contract_setup(self):
        kwargs = self.w3.eth.contract.call_args[1]
        assert kwargs["address"].lower() == REGISTRY_ADDRESS.lower()
        names = {item.get("name") for item in kwargs["abi"]}
        assert "DataSchemaRegistered" in names
        assert "getAllSchemas" in names

    def test_parent_schema_id(self):
        functions = self.contract.functions
        functions.parentSchemaId.return_value.call.return_value = b"\x00" * 32
        assert asyncio.run(self.client.parent_schema_id(int_to_hash(1))) is None
        functions.parentSchemaId.assert_called_with(hex_str_to_bytes(int_to_hash(1)))

        functions.parentSchemaId.return_value.call.return_value = hex_str_to_bytes(
            int_to_hash(2)
        )
        assert asyncio.run(self.client.parent_schema_id(int_to_hash(1))) == int_to_hash(2)

    def test_lookups(self):
        functions = self.contract.functions
        functions.schemaIdToSchemaName.return_value.call.return_value = "Trades"
        functions.totalPublisherDataForSchema.return_value.call.return_value = 4
        functions.getAllSchemas.return_value.call.return_value = ("uint64 t",)
        functions.computeSchemaId.return_value.call.return_value = hex_str_to_bytes(
            int_to_hash(3)
        )

        assert asyncio.run(self.client.schema_name(int_to_hash(1))) == "Trades"
        assert asyncio.run(self.client.publisher_data_count(int_to_hash(1), PUBLISHER)) == 4
        assert asyncio.run(self.client.all_schemas()) == ["uint64 t"]
        assert asyncio.run(self.client.compute_schema_id("uint64 t")) == int_to_hash(3)


if __name__ == "__main__":
    unittest.main()
