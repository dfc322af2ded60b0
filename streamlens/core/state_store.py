"""
The state store module persists indexer progress and indexed schemas.
Backends (JSON files, SQL, MongoDB) implement one contract so that
the scanner, monitor, and enricher see exactly one store.
"""

from abc import ABC, abstractmethod
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from streamlens.core.types import (
    IndexedSchema,
    IndexerProgress,
    format_timestamp_ms,
)
from streamlens.utils.log import get_default_logger

_LOG = get_default_logger(__name__)
_LOG.setLevel(logging.INFO)

# Progress fields that update_progress() accepts.
# The network identifies the progress record and cannot be updated.
PROGRESS_FIELDS = (
    "last_scanned_height",
    "last_sync_time",
    "healthy",
    "last_error",
)


@dataclass
class PublisherStats:
    """
    Aggregated statistics for one publisher.

    Attributes:
        publisher: Publisher address.
        count: Number of schemas registered.
        first_seen: Earliest schema block timestamp, in seconds.
        last_seen: Latest schema block timestamp, in seconds.
    """

    publisher: str
    count: int
    first_seen: int
    last_seen: int

    def to_dict(self) -> dict:
        """Convert to a camelCase dictionary."""
        return {
            "publisher": self.publisher,
            "count": self.count,
            "firstSeen": self.first_seen,
            "lastSeen": self.last_seen,
        }


def _first_set(existing, incoming):
    return existing if existing not in (None, "", 0) else incoming


def check_parent_reference(schema: IndexedSchema) -> IndexedSchema:
    """
    Drop a parent reference that points at the schema itself.
    A self-referencing parent is a data anomaly; it is reported, not raised.

    :param schema: The schema to check. Modified in place.
    :return: The same schema.
    """
    if schema.parent_id is not None and schema.parent_id == schema.id:
        _LOG.warning(
            "Data anomaly: schema %s lists itself as parent; dropping parent_id",
            schema.id,
        )
        schema.parent_id = None
    return schema


def merge_schemas(existing: IndexedSchema, incoming: IndexedSchema) -> IndexedSchema:
    """
    Merge an incoming write over a stored schema.
    Immutable chain fields keep their stored values,
    non-empty incoming enrichment fields win,
    parent_id is set once, is_public changes only with an enriched write,
    and metadata is merged key-wise.

    :param existing: The stored schema.
    :param incoming: The schema being written.
    :return: A new merged schema.
    """
    if existing.id != incoming.id:
        raise ValueError(f"Cannot merge schema {incoming.id} into {existing.id}")
    metadata = dict(existing.metadata)
    metadata.update(incoming.metadata or {})
    merged = IndexedSchema(
        id=existing.id,
        publisher=_first_set(existing.publisher, incoming.publisher),
        block_number=_first_set(existing.block_number, incoming.block_number),
        timestamp=_first_set(existing.timestamp, incoming.timestamp),
        origin_tx_hash=_first_set(existing.origin_tx_hash, incoming.origin_tx_hash),
        name=incoming.name or existing.name,
        definition=incoming.definition or existing.definition,
        parent_id=existing.parent_id or incoming.parent_id,
        # Minimal records default to public; only an enriched write may change it.
        is_public=(
            incoming.is_public
            if incoming.name or incoming.definition
            else existing.is_public
        ),
        metadata=metadata,
    )
    return check_parent_reference(merged)


def build_stats(schemas: Iterable[IndexedSchema], progress: IndexerProgress) -> dict:
    """
    Compute summary statistics over a schema collection.

    :param schemas: All stored schemas.
    :param progress: Current indexer progress.
    :return: The statistics dictionary.
    """
    schemas = list(schemas)
    public_count = sum(1 for s in schemas if s.is_public)
    return {
        "totalSchemas": len(schemas),
        "uniquePublishers": len({s.publisher for s in schemas}),
        "publicSchemas": public_count,
        "privateSchemas": len(schemas) - public_count,
        "latestBlock": max((s.block_number for s in schemas), default=0),
        "lastScannedHeight": progress.last_scanned_height,
        "totalIndexed": progress.total_indexed,
        "lastSync": format_timestamp_ms(progress.last_sync_time),
        "healthy": progress.healthy,
    }


class StateStore(ABC):
    """
    Persistence contract for indexer progress and indexed schemas.
    Every write is applied atomically with respect to other writes on the store.
    Storage errors propagate to the caller.
    """

    storage_type = "abstract"

    @abstractmethod
    def save_schema(self, schema: IndexedSchema) -> bool:
        """
        Insert or merge a single schema.

        :param schema: The schema to save.
        :return: True if the schema id was not stored before.
        """

    @abstractmethod
    def save_schemas(self, schemas: List[IndexedSchema]) -> List[str]:
        """
        Insert or merge a batch of schemas in one write.

        :param schemas: The schemas to save.
        :return: The ids that were not stored before, in input order.
        """

    @abstractmethod
    def get_schema(self, schema_id: str) -> Optional[IndexedSchema]:
        """
        Get a schema by id.

        :param schema_id: The schema id.
        :return: The schema, or None if it is not stored.
        """

    @abstractmethod
    def get_all_schemas(self) -> List[IndexedSchema]:
        """
        Get all schemas, newest block first.

        :return: The list of schemas.
        """

    @abstractmethod
    def get_schemas_by_publisher(self, publisher: str) -> List[IndexedSchema]:
        """
        Get schemas registered by a publisher.
        Address comparison is case-insensitive.

        :param publisher: The publisher address.
        :return: The list of schemas.
        """

    @abstractmethod
    def search_by_name(self, query: str) -> List[IndexedSchema]:
        """
        Find schemas whose name contains the query, case-insensitively.

        :param query: The substring to search for.
        :return: The list of schemas.
        """

    @abstractmethod
    def get_progress(self) -> IndexerProgress:
        """
        Get a copy of the current indexer progress.

        :return: The indexer progress.
        """

    @abstractmethod
    def update_progress(self, **updates) -> IndexerProgress:
        """
        Apply a partial progress update.
        last_scanned_height only moves forward;
        total_indexed is maintained by the schema writes and cannot be set.

        :param updates: Fields from PROGRESS_FIELDS.
        :return: The updated progress.
        """

    @abstractmethod
    def get_publisher_stats(self) -> List[PublisherStats]:
        """
        Get per-publisher statistics, most schemas first.

        :return: The list of publisher statistics.
        """

    def get_stats(self) -> dict:
        """
        Get summary statistics of the store.

        :return: The statistics dictionary.
        """
        return build_stats(self.get_all_schemas(), self.get_progress())

    def close(self):
        """
        Release backend resources.
        """

    @staticmethod
    def _validate_progress_updates(updates: dict):
        unknown = [k for k in updates if k not in PROGRESS_FIELDS]
        if unknown:
            raise ValueError(f"Unknown progress fields: {unknown}")


def create_state_store(config) -> StateStore:
    """
    Create the state store selected by the configuration.
    Falls back to JSON files when the selected backend has no URL.

    :param config: The IndexerConfig.
    :return: The state store.
    """
    # pylint: disable=import-outside-toplevel
    backend = config.storage_backend
    if backend == "sql":
        if config.database_url:
            from streamlens.core.sql_state_store import SQLStateStore

            engine_kwargs = {}
            if config.database_url.startswith("sqlite"):
                engine_kwargs["connect_args"] = {"check_same_thread": False}
            store = SQLStateStore(
                config.database_url,
                network=config.network,
                engine_kwargs=engine_kwargs,
            )
            _LOG.info("Using %s state store", store.storage_type)
            return store
        _LOG.warning("STORAGE_BACKEND=sql but DATABASE_URL is not set, using JSON files")
    elif backend == "mongo":
        if config.mongodb_url:
            from streamlens.core.mongo_state_store import MongoStateStore

            store = MongoStateStore(config.mongodb_url, network=config.network)
            _LOG.info("Using %s state store", store.storage_type)
            return store
        _LOG.warning("STORAGE_BACKEND=mongo but MONGODB_URL is not set, using JSON files")

    from streamlens.core.json_state_store import JSONStateStore

    store = JSONStateStore(config.data_dir, network=config.network)
    _LOG.info("Using %s state store in %s", store.storage_type, config.data_dir)
    return store
