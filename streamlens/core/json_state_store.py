"""
File-based state store.
Keeps schemas in memory and writes them to JSON files after every change.
"""

import json
import logging
import os
import threading
from typing import Dict, List, Optional

from streamlens.core.state_store import (
    PublisherStats,
    StateStore,
    check_parent_reference,
    merge_schemas,
)
from streamlens.core.types import IndexedSchema, IndexerProgress
from streamlens.utils.crypto_utils import normalize_address
from streamlens.utils.error_utils import StorageError
from streamlens.utils.log import get_default_logger

_LOG = get_default_logger(__name__)
_LOG.setLevel(logging.INFO)


class JSONStateStore(StateStore):
    """
    State store backed by JSON files in a data directory:
    schemas.json, state.json, and publishers.json.
    """

    storage_type = "JSON Files"

    def __init__(self, data_dir: str = "./data", network: str = "mainnet"):
        """
        Initialize the store and load any existing files.

        :param data_dir: Directory holding the JSON files.
        :param network: Network of the progress record created on first run.
        """
        self.data_dir = data_dir
        self.schemas_path = os.path.join(data_dir, "schemas.json")
        self.state_path = os.path.join(data_dir, "state.json")
        self.publishers_path = os.path.join(data_dir, "publishers.json")
        self._lock = threading.RLock()

        os.makedirs(data_dir, exist_ok=True)

        self._schemas: Dict[str, IndexedSchema] = {}
        self._publishers: Dict[str, PublisherStats] = {}
        self._progress = self._load_progress(network)
        self._load_schemas()
        self._load_publishers()
        self._reconcile()

    def _read_json(self, path: str):
        if not os.path.exists(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            # Refuse to start over a corrupt file rather than overwrite it.
            raise StorageError("load", str(e), target=path) from e

    def _write_json(self, path: str, data):
        # Write to a temporary file and rename
        # so a crash never leaves a truncated file behind.
        tmp_path = path + ".tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, path)
        except OSError as e:
            raise StorageError("write", str(e), target=path) from e

    def _load_progress(self, network: str) -> IndexerProgress:
        data = self._read_json(self.state_path)
        if data is None:
            _LOG.info("No existing indexer state found, starting fresh")
            return IndexerProgress(network=network)
        progress = IndexerProgress.from_dict(data)
        _LOG.info("Loaded indexer state: %s", progress.to_dict())
        return progress

    def _load_schemas(self):
        data = self._read_json(self.schemas_path)
        if data is None:
            _LOG.info("No existing schemas found, starting fresh")
            return
        for item in data:
            schema = IndexedSchema.from_dict(item)
            self._schemas[schema.id] = schema
        _LOG.info("Loaded %s schemas from disk", len(self._schemas))

    def _load_publishers(self):
        data = self._read_json(self.publishers_path)
        if data is None:
            return
        for item in data:
            stats = PublisherStats(
                publisher=item["publisher"],
                count=int(item["count"]),
                first_seen=int(item["firstSeen"]),
                last_seen=int(item["lastSeen"]),
            )
            self._publishers[stats.publisher] = stats

    def _reconcile(self):
        """
        Bring the derived counters in line with schemas.json.
        Files are replaced one at a time, so an interrupted flush can leave
        state.json or publishers.json behind the schema file.
        """
        if self._progress.total_indexed < len(self._schemas):
            _LOG.warning(
                "Indexed count %s is behind %s stored schemas, correcting",
                self._progress.total_indexed,
                len(self._schemas),
            )
            self._progress.total_indexed = len(self._schemas)
        if sum(p.count for p in self._publishers.values()) != len(self._schemas):
            self._publishers = {}
            for schema in sorted(self._schemas.values(), key=lambda s: s.block_number):
                self._record_publisher(schema)

    def _flush(self):
        # schemas.json goes first; the counters are rebuilt from it on load.
        self._write_json(
            self.schemas_path, [s.to_dict() for s in self._schemas.values()]
        )
        self._write_json(
            self.publishers_path, [p.to_dict() for p in self._publishers.values()]
        )
        self._write_json(self.state_path, self._progress.to_dict())

    def _record_publisher(self, schema: IndexedSchema):
        publisher = normalize_address(schema.publisher)
        stats = self._publishers.get(publisher)
        if stats is None:
            self._publishers[publisher] = PublisherStats(
                publisher=publisher,
                count=1,
                first_seen=schema.timestamp,
                last_seen=schema.timestamp,
            )
        else:
            stats.count += 1
            stats.first_seen = min(stats.first_seen, schema.timestamp)
            stats.last_seen = max(stats.last_seen, schema.timestamp)

    def _upsert(self, schema: IndexedSchema) -> bool:
        """Apply one upsert in memory. Caller holds the lock."""
        schema = schema.copy()
        schema.id = schema.id.lower()
        schema.publisher = normalize_address(schema.publisher)
        check_parent_reference(schema)
        existing = self._schemas.get(schema.id)
        if existing is not None:
            self._schemas[schema.id] = merge_schemas(existing, schema)
            _LOG.debug("Updated schema %s", schema.id)
            return False
        self._schemas[schema.id] = schema
        self._progress.total_indexed += 1
        self._record_publisher(schema)
        _LOG.info(
            "Added new schema: %s (publisher=%s, block=%s)",
            schema.name or schema.id,
            schema.publisher,
            schema.block_number,
        )
        return True

    def save_schema(self, schema: IndexedSchema) -> bool:
        with self._lock:
            snapshot = self._snapshot()
            try:
                is_new = self._upsert(schema)
                self._flush()
            except Exception:
                self._restore(snapshot)
                raise
            return is_new

    def save_schemas(self, schemas: List[IndexedSchema]) -> List[str]:
        if not schemas:
            return []
        with self._lock:
            snapshot = self._snapshot()
            try:
                new_ids = [s.id.lower() for s in schemas if self._upsert(s)]
                self._flush()
            except Exception:
                self._restore(snapshot)
                raise
        _LOG.info(
            "Batch saved schemas: %s new, %s updated",
            len(new_ids),
            len(schemas) - len(new_ids),
        )
        return new_ids

    def _snapshot(self):
        return (
            dict(self._schemas),
            {k: PublisherStats(**vars(v)) for k, v in self._publishers.items()},
            IndexerProgress(**vars(self._progress)),
        )

    def _restore(self, snapshot):
        self._schemas, self._publishers, self._progress = snapshot

    def get_schema(self, schema_id: str) -> Optional[IndexedSchema]:
        with self._lock:
            schema = self._schemas.get(schema_id.lower())
            return schema.copy() if schema is not None else None

    def get_all_schemas(self) -> List[IndexedSchema]:
        with self._lock:
            schemas = [s.copy() for s in self._schemas.values()]
        return sorted(schemas, key=lambda s: s.block_number, reverse=True)

    def get_schemas_by_publisher(self, publisher: str) -> List[IndexedSchema]:
        publisher = normalize_address(publisher)
        return [s for s in self.get_all_schemas() if s.publisher == publisher]

    def search_by_name(self, query: str) -> List[IndexedSchema]:
        lower_query = query.lower()
        return [s for s in self.get_all_schemas() if lower_query in s.name.lower()]

    def get_progress(self) -> IndexerProgress:
        with self._lock:
            return IndexerProgress(**vars(self._progress))

    def update_progress(self, **updates) -> IndexerProgress:
        self._validate_progress_updates(updates)
        with self._lock:
            previous = IndexerProgress(**vars(self._progress))
            height = updates.pop("last_scanned_height", None)
            if height is not None:
                self._progress.last_scanned_height = max(
                    self._progress.last_scanned_height, int(height)
                )
            for key, value in updates.items():
                setattr(self._progress, key, value)
            try:
                self._write_json(self.state_path, self._progress.to_dict())
            except StorageError:
                self._progress = previous
                raise
            return IndexerProgress(**vars(self._progress))

    def get_publisher_stats(self) -> List[PublisherStats]:
        with self._lock:
            stats = [PublisherStats(**vars(p)) for p in self._publishers.values()]
        return sorted(stats, key=lambda p: p.count, reverse=True)
