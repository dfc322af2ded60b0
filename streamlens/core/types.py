"""
Core types for the schema indexing pipeline.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional

import pandas as pd


def now_ms() -> int:
    """
    Current UTC time as epoch milliseconds.
    """
    return int(pd.Timestamp.now(tz="UTC").timestamp() * 1000)


def format_timestamp_ms(timestamp: int) -> str:
    """
    Format epoch milliseconds as an ISO UTC string.
    """
    return pd.Timestamp(int(timestamp), unit="ms", tz="UTC").isoformat()


def parse_schema_fields(definition: str) -> List[Dict[str, str]]:
    """
    Structurally parse a CSV schema definition.
    Only splits the definition into typed fields;
    type names are not validated.

    Example: "uint64 timestamp, string message" ->
        [{"type": "uint64", "name": "timestamp"}, {"type": "string", "name": "message"}]

    :param definition: The schema definition.
    :return: The list of fields. Unnamed fields get an empty name.
    """
    fields = []
    if not definition:
        return fields
    for part in definition.split(","):
        tokens = part.split()
        if not tokens:
            continue
        fields.append(
            {"type": tokens[0], "name": " ".join(tokens[1:]) if len(tokens) > 1 else ""}
        )
    return fields


@dataclass(frozen=True)
class RegistryLog:
    """
    A DataSchemaRegistered log as returned by the ledger.
    """

    schema_id: str
    block_number: int
    transaction_hash: str
    log_index: int


@dataclass
class IndexedSchema:
    """
    Projection of one on-chain schema registration plus enriched metadata.

    Attributes:
        id: bytes32 schema id as lowercase hex.
        name: Human-readable name, empty until enriched.
        definition: CSV field definition, empty until enriched.
        publisher: Address that registered the schema.
        block_number: Block of the registration.
        timestamp: Block timestamp in seconds.
        origin_tx_hash: Registration transaction hash.
        parent_id: Parent schema id, if the schema extends another.
        is_public: Whether the schema is publicly registered.
        metadata: Open map (usageCount, tags, description, versions, fields).
    """

    id: str
    publisher: str
    block_number: int
    timestamp: int
    origin_tx_hash: str
    name: str = ""
    definition: str = ""
    parent_id: Optional[str] = None
    is_public: bool = True
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def needs_enrichment(self) -> bool:
        """True if name or definition has not been filled yet."""
        return not self.name or not self.definition

    def copy(self) -> "IndexedSchema":
        """Deep copy of the record."""
        return copy.deepcopy(self)

    def to_dict(self) -> dict:
        """Convert to the camelCase dictionary used on disk and on the wire."""
        return {
            "id": self.id,
            "name": self.name,
            "definition": self.definition,
            "publisher": self.publisher,
            "blockNumber": self.block_number,
            "timestamp": self.timestamp,
            "originTxHash": self.origin_tx_hash,
            "parentId": self.parent_id,
            "isPublic": self.is_public,
            "metadata": copy.deepcopy(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "IndexedSchema":
        """Create an IndexedSchema from a camelCase dictionary."""
        return cls(
            id=data["id"],
            name=data.get("name") or "",
            definition=data.get("definition") or "",
            publisher=data["publisher"],
            block_number=int(data["blockNumber"]),
            timestamp=int(data["timestamp"]),
            origin_tx_hash=data["originTxHash"],
            parent_id=data.get("parentId"),
            is_public=bool(data.get("isPublic", True)),
            metadata=copy.deepcopy(data.get("metadata") or {}),
        )


@dataclass
class IndexerProgress:
    """
    Resumable indexer state, one per network.

    Attributes:
        network: Network name.
        last_scanned_height: Last fully scanned block; never decreases.
        last_sync_time: Epoch ms of the last successful window or poll batch.
        total_indexed: Count of distinct schema ids ever inserted.
        healthy: False after the real-time monitor gives up reconnecting.
        last_error: Message of the error that made the indexer unhealthy.
    """

    network: str = "mainnet"
    last_scanned_height: int = 0
    last_sync_time: int = 0
    total_indexed: int = 0
    healthy: bool = True
    last_error: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to a camelCase dictionary."""
        return {
            "network": self.network,
            "lastScannedHeight": self.last_scanned_height,
            "lastSyncTime": self.last_sync_time,
            "totalIndexed": self.total_indexed,
            "healthy": self.healthy,
            "lastError": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "IndexerProgress":
        """Create an IndexerProgress from a camelCase dictionary."""
        return cls(
            network=data.get("network", "mainnet"),
            last_scanned_height=int(data.get("lastScannedHeight", 0)),
            last_sync_time=int(data.get("lastSyncTime", 0)),
            total_indexed=int(data.get("totalIndexed", 0)),
            healthy=bool(data.get("healthy", True)),
            last_error=data.get("lastError"),
        )


@dataclass(frozen=True)
class WebhookSubscription:
    """
    A registered webhook endpoint.

    Attributes:
        id: Subscription id.
        url: Target URL receiving POST requests.
        events: Event kinds delivered to this endpoint.
        auth_token: Optional bearer token for the Authorization header.
        max_attempts: Delivery attempts per event.
        timeout: Request timeout in seconds.
    """

    id: str
    url: str
    events: FrozenSet[str]
    auth_token: Optional[str] = None
    max_attempts: int = 3
    timeout: float = 5.0
