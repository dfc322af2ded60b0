"""
MongoDB state store.
"""

import logging
import re
import threading
from copy import deepcopy
from typing import List, Optional

from pymongo import DESCENDING, MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

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

# Document keys of the progress fields.
_PROGRESS_KEYS = {
    "last_scanned_height": "lastScannedHeight",
    "last_sync_time": "lastSyncTime",
    "healthy": "healthy",
    "last_error": "lastError",
}


def _strip_id(doc: dict) -> dict:
    doc = dict(doc)
    doc.pop("_id", None)
    return doc


class MongoStateStore(StateStore):
    """
    State store backed by the streamlens MongoDB database.
    Documents use the same camelCase layout as the JSON files.
    """

    storage_type = "MongoDB"

    def __init__(
        self,
        mongodb_url: Optional[str] = None,
        network: str = "mainnet",
        db_name: str = "streamlens",
        mongo_client: Optional[MongoClient] = None,
    ):
        """
        Initialize a store object.

        :param mongodb_url: The MongoDB connection URL.
        :param network: Network of the progress document.
        :param db_name: The database name.
        :param mongo_client: An existing client to use instead of connecting.
        """
        if mongo_client is None:
            assert mongodb_url is not None
            self.mongo_client = MongoClient(mongodb_url)
        else:
            self.mongo_client = mongo_client
        self.network = network
        self._lock = threading.RLock()

        db = self.mongo_client.get_database(db_name)
        self.col_schemas = db.get_collection("schemas")
        self.col_state = db.get_collection("indexer_state")
        self.col_publishers = db.get_collection("publishers")

        try:
            self.col_schemas.create_index("id", unique=True)
            self.col_schemas.create_index("publisher")
            self.col_schemas.create_index([("blockNumber", DESCENDING)])
            self.col_publishers.create_index("publisher", unique=True)
            self.col_state.update_one(
                {"network": network},
                {
                    "$setOnInsert": {
                        "lastScannedHeight": 0,
                        "lastSyncTime": 0,
                        "totalIndexed": 0,
                        "healthy": True,
                        "lastError": None,
                    }
                },
                upsert=True,
            )
        except PyMongoError as e:
            raise StorageError("init", str(e), target=db_name) from e
        _LOG.info("Using MongoDB database %s for network %s", db_name, network)

    def _record_publisher(self, schema: IndexedSchema):
        self.col_publishers.update_one(
            {"publisher": schema.publisher},
            {
                "$inc": {"count": 1},
                "$min": {"firstSeen": schema.timestamp},
                "$max": {"lastSeen": schema.timestamp},
            },
            upsert=True,
        )

    def _merge_into(self, existing_doc: dict, schema: IndexedSchema):
        existing = IndexedSchema.from_dict(_strip_id(existing_doc))
        merged = merge_schemas(existing, schema)
        # PyMongo can modify the dict on write to add _id.
        # Use deepcopy().
        self.col_schemas.replace_one({"id": schema.id}, deepcopy(merged.to_dict()))

    def _upsert(self, schema: IndexedSchema) -> bool:
        schema = schema.copy()
        schema.id = schema.id.lower()
        schema.publisher = normalize_address(schema.publisher)
        check_parent_reference(schema)

        existing_doc = self.col_schemas.find_one({"id": schema.id})
        if existing_doc is not None:
            self._merge_into(existing_doc, schema)
            return False
        try:
            self.col_schemas.insert_one(deepcopy(schema.to_dict()))
        except DuplicateKeyError:
            # Another writer inserted the id first.
            self._merge_into(self.col_schemas.find_one({"id": schema.id}), schema)
            return False
        self.col_state.update_one(
            {"network": self.network}, {"$inc": {"totalIndexed": 1}}, upsert=True
        )
        self._record_publisher(schema)
        return True

    def save_schema(self, schema: IndexedSchema) -> bool:
        with self._lock:
            try:
                return self._upsert(schema)
            except PyMongoError as e:
                raise StorageError("save_schema", str(e), target=schema.id) from e

    def save_schemas(self, schemas: List[IndexedSchema]) -> List[str]:
        new_ids = []
        with self._lock:
            for schema in schemas:
                try:
                    if self._upsert(schema):
                        new_ids.append(schema.id.lower())
                except PyMongoError as e:
                    raise StorageError("save_schemas", str(e), target=schema.id) from e
        if schemas:
            _LOG.info(
                "Batch saved schemas: %s new, %s updated",
                len(new_ids),
                len(schemas) - len(new_ids),
            )
        return new_ids

    def _find_schemas(self, query: dict) -> List[IndexedSchema]:
        cursor = self.col_schemas.find(query).sort("blockNumber", DESCENDING)
        return [IndexedSchema.from_dict(_strip_id(doc)) for doc in cursor]

    def get_schema(self, schema_id: str) -> Optional[IndexedSchema]:
        doc = self.col_schemas.find_one({"id": schema_id.lower()})
        return IndexedSchema.from_dict(_strip_id(doc)) if doc is not None else None

    def get_all_schemas(self) -> List[IndexedSchema]:
        return self._find_schemas({})

    def get_schemas_by_publisher(self, publisher: str) -> List[IndexedSchema]:
        return self._find_schemas({"publisher": normalize_address(publisher)})

    def search_by_name(self, query: str) -> List[IndexedSchema]:
        return self._find_schemas(
            {"name": {"$regex": re.escape(query), "$options": "i"}}
        )

    def get_progress(self) -> IndexerProgress:
        doc = self.col_state.find_one({"network": self.network})
        if doc is None:
            return IndexerProgress(network=self.network)
        return IndexerProgress.from_dict(_strip_id(doc))

    def update_progress(self, **updates) -> IndexerProgress:
        self._validate_progress_updates(updates)
        update: dict = {}
        height = updates.pop("last_scanned_height", None)
        if height is not None:
            update["$max"] = {"lastScannedHeight": int(height)}
        if updates:
            update["$set"] = {_PROGRESS_KEYS[k]: v for k, v in updates.items()}
        if not update:
            return self.get_progress()
        with self._lock:
            try:
                doc = self.col_state.find_one_and_update(
                    {"network": self.network},
                    update,
                    upsert=True,
                    return_document=ReturnDocument.AFTER,
                )
            except PyMongoError as e:
                raise StorageError("update_progress", str(e), target=self.network) from e
        return IndexerProgress.from_dict(_strip_id(doc))

    def get_publisher_stats(self) -> List[PublisherStats]:
        cursor = self.col_publishers.find({}).sort("count", DESCENDING)
        return [
            PublisherStats(
                publisher=doc["publisher"],
                count=int(doc["count"]),
                first_seen=int(doc["firstSeen"]),
                last_seen=int(doc["lastSeen"]),
            )
            for doc in cursor
        ]

    def close(self):
        self.mongo_client.close()
