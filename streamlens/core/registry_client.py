"""
The registry client module provides read-only access
to the streams schema registry contract.
"""

import json
import logging
import os
from abc import ABC, abstractmethod
from typing import List, Optional

from web3 import Web3

from streamlens.utils.async_utils import run_blocking
from streamlens.utils.crypto_utils import (
    bytes_to_hex_str_auto,
    hex_str_to_bytes,
    is_zero_hash,
    to_checksum_address,
)
from streamlens.utils.log import get_default_logger

_LOG = get_default_logger(__name__)
_LOG.setLevel(logging.INFO)

# Limit on parent chains followed when resolving a definition.
MAX_PARENT_DEPTH = 8


class RegistryClient(ABC):
    """
    Interface for the registry lookups used by enrichment.
    """

    @abstractmethod
    async def schema_name(self, schema_id: str) -> str:
        """
        Get the registered name of a schema.

        :param schema_id: The schema id.
        :return: The name, or "" if none is registered.
        """

    @abstractmethod
    async def base_schema(self, schema_id: str) -> str:
        """
        Get the definition registered for the schema itself,
        without fields inherited from a parent.

        :param schema_id: The schema id.
        :return: The CSV definition, or "".
        """

    @abstractmethod
    async def parent_schema_id(self, schema_id: str) -> Optional[str]:
        """
        Get the parent of a schema.

        :param schema_id: The schema id.
        :return: The parent id, or None if the schema has no parent.
        """

    @abstractmethod
    async def publisher_data_count(self, schema_id: str, publisher: str) -> int:
        """
        Get the number of data items a publisher wrote under a schema.

        :param schema_id: The schema id.
        :param publisher: The publisher address.
        :return: The count.
        """

    @abstractmethod
    async def all_schemas(self) -> List[str]:
        """
        Get the definitions of all public schemas.

        :return: The list of definitions.
        """

    @abstractmethod
    async def compute_schema_id(self, definition: str) -> str:
        """
        Compute the id the registry assigns to a definition.

        :param definition: The CSV definition.
        :return: The schema id.
        """

    async def final_schema(self, schema_id: str) -> str:
        """
        Resolve the full definition of a schema,
        prefixing the definitions of its parents.

        :param schema_id: The schema id.
        :return: The CSV definition, or "" if nothing is registered.
        """
        parts = []
        seen = set()
        current: Optional[str] = schema_id
        while current is not None and current not in seen:
            if len(seen) >= MAX_PARENT_DEPTH:
                _LOG.warning(
                    "Parent chain of schema %s exceeds %s levels; truncating",
                    schema_id,
                    MAX_PARENT_DEPTH,
                )
                break
            seen.add(current)
            base = await self.base_schema(current)
            if base:
                parts.append(base)
            current = await self.parent_schema_id(current)
        return ", ".join(reversed(parts))


class Web3RegistryClient(RegistryClient):
    """
    Registry client based on a Web3 contract object.
    """

    def __init__(
        self,
        w3: Web3,
        registry_address: str,
        registry_json_file_name: str = "StreamsRegistry.json",
    ):
        """
        Initialize the client object.

        :param w3: A connected Web3 object.
        :param registry_address: The registry contract address.
        :param registry_json_file_name: File name for the JSON file
            containing the registry contract's ABI.
        """
        self.w3 = w3
        self.registry_address = registry_address
        # Web3 library is fussy about the address parameter type.
        with self.get_registry_json_file(registry_json_file_name) as f:
            self.contract = w3.eth.contract(
                address=to_checksum_address(registry_address),
                abi=json.load(f)["abi"],
            )

    @staticmethod
    def get_registry_json_file(file_name: str):
        """
        Open a packaged ABI file.

        :param file_name: The file name under streamlens/abi.
        :return: The open file object.
        """
        abi_dir = os.path.join(os.path.dirname(os.path.dirname(__file__)), "abi")
        return open(os.path.join(abi_dir, file_name), "r", encoding="utf-8")

    async def schema_name(self, schema_id: str) -> str:
        return await run_blocking(
            self.contract.functions.schemaIdToSchemaName(
                hex_str_to_bytes(schema_id)
            ).call
        )

    async def base_schema(self, schema_id: str) -> str:
        return await run_blocking(
            self.contract.functions.schemaRegistry(hex_str_to_bytes(schema_id)).call
        )

    async def parent_schema_id(self, schema_id: str) -> Optional[str]:
        parent = await run_blocking(
            self.contract.functions.parentSchemaId(hex_str_to_bytes(schema_id)).call
        )
        if is_zero_hash(parent):
            return None
        return bytes_to_hex_str_auto(parent)

    async def publisher_data_count(self, schema_id: str, publisher: str) -> int:
        count = await run_blocking(
            self.contract.functions.totalPublisherDataForSchema(
                hex_str_to_bytes(schema_id), to_checksum_address(publisher)
            ).call
        )
        return int(count)

    async def all_schemas(self) -> List[str]:
        return list(await run_blocking(self.contract.functions.getAllSchemas().call))

    async def compute_schema_id(self, definition: str) -> str:
        schema_id = await run_blocking(
            self.contract.functions.computeSchemaId(definition).call
        )
        return bytes_to_hex_str_auto(schema_id)
