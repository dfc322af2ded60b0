# flake8: noqa

import logging
import threading
from typing import List, Optional

from sqlalchemy import JSON, BigInteger, Column, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool
from sqlmodel import Field, Session, SQLModel, create_engine, select

from streamlens.core.state_store import (
    PublisherStats,
    StateStore,
    check_parent_reference,
    merge_schemas,
)
from streamlens.core.types import IndexedSchema, IndexerProgress, format_timestamp_ms, now_ms
from streamlens.utils.crypto_utils import normalize_address
from streamlens.utils.error_utils import StorageError
from streamlens.utils.log import get_default_logger

_LOG = get_default_logger(__name__)
_LOG.setLevel(logging.INFO)


class indexed_schemas(SQLModel, table=True):
    __tablename__ = "indexed_schemas"
    id: str = Field(primary_key=True, index=True)
    name: str = Field(default="", index=True)
    definition: str = Field(default="")
    publisher: str = Field(index=True)
    block_number: int = Field(sa_type=BigInteger, index=True)
    timestamp: int = Field(sa_type=BigInteger)
    origin_tx_hash: str = Field(index=True)
    parent_id: Optional[str] = Field(default=None)
    is_public: bool = Field(default=True)
    # "metadata" is reserved on SQLModel classes; map the column explicitly.
    schema_metadata: dict = Field(default_factory=dict, sa_column=Column("metadata", JSON))
    indexed_at: int = Field(sa_type=BigInteger)
    updated_at: int = Field(sa_type=BigInteger)


class indexer_state(SQLModel, table=True):
    __tablename__ = "indexer_state"
    network: str = Field(primary_key=True)
    last_scanned_height: int = Field(default=0, sa_type=BigInteger)
    last_sync_time: int = Field(default=0, sa_type=BigInteger)
    total_indexed: int = Field(default=0)
    healthy: bool = Field(default=True)
    last_error: Optional[str] = Field(default=None)
    updated_at: int = Field(default=0, sa_type=BigInteger)


class schema_publishers(SQLModel, table=True):
    __tablename__ = "schema_publishers"
    publisher: str = Field(primary_key=True)
    total_schemas: int = Field(default=0, index=True)
    first_seen: int = Field(sa_type=BigInteger)
    last_seen: int = Field(sa_type=BigInteger)


class SQLStateStore(StateStore):
    """
    State store based on a relational database accessed through SQLModel.
    Each write runs in a single transaction.
    """

    storage_type = "SQL"

    def __init__(
        self,
        db_url: str,
        network: str = "mainnet",
        engine_kwargs: dict | None = None,
        create_tables: bool = True,
    ):
        engine_kwargs = dict(engine_kwargs or {})
        if db_url in ("sqlite://", "sqlite:///:memory:"):
            # Store calls run on executor threads and must share one in-memory database.
            engine_kwargs.setdefault("poolclass", StaticPool)
            engine_kwargs.setdefault("connect_args", {"check_same_thread": False})

        self.network = network
        self.db_engine = create_engine(db_url, **engine_kwargs)
        self._lock = threading.RLock()

        if create_tables:
            SQLModel.metadata.create_all(self.db_engine)
        with Session(self.db_engine) as session:
            self._get_or_create_state(session)
            session.commit()

    def _get_or_create_state(self, session: Session) -> indexer_state:
        state = session.get(indexer_state, self.network)
        if state is None:
            state = indexer_state(network=self.network, updated_at=now_ms())
            session.add(state)
            session.flush()
        return state

    @staticmethod
    def _row_to_schema(row: indexed_schemas) -> IndexedSchema:
        return IndexedSchema(
            id=row.id,
            name=row.name or "",
            definition=row.definition or "",
            publisher=row.publisher,
            block_number=int(row.block_number),
            timestamp=int(row.timestamp),
            origin_tx_hash=row.origin_tx_hash,
            parent_id=row.parent_id,
            is_public=bool(row.is_public),
            metadata=dict(row.schema_metadata or {}),
        )

    @staticmethod
    def _state_to_progress(state: indexer_state) -> IndexerProgress:
        return IndexerProgress(
            network=state.network,
            last_scanned_height=int(state.last_scanned_height),
            last_sync_time=int(state.last_sync_time),
            total_indexed=int(state.total_indexed),
            healthy=bool(state.healthy),
            last_error=state.last_error,
        )

    def _record_publisher(self, session: Session, schema: IndexedSchema):
        stats = session.get(schema_publishers, schema.publisher)
        if stats is None:
            session.add(
                schema_publishers(
                    publisher=schema.publisher,
                    total_schemas=1,
                    first_seen=schema.timestamp,
                    last_seen=schema.timestamp,
                )
            )
        else:
            stats.total_schemas += 1
            stats.first_seen = min(stats.first_seen, schema.timestamp)
            stats.last_seen = max(stats.last_seen, schema.timestamp)
            session.add(stats)

    def _upsert(self, session: Session, state: indexer_state, schema: IndexedSchema) -> bool:
        schema = schema.copy()
        schema.id = schema.id.lower()
        schema.publisher = normalize_address(schema.publisher)
        check_parent_reference(schema)
        now = now_ms()

        row = session.get(indexed_schemas, schema.id)
        if row is not None:
            merged = merge_schemas(self._row_to_schema(row), schema)
            row.name = merged.name
            row.definition = merged.definition
            row.parent_id = merged.parent_id
            row.is_public = merged.is_public
            row.schema_metadata = merged.metadata
            row.updated_at = now
            session.add(row)
            session.flush()
            return False

        session.add(
            indexed_schemas(
                id=schema.id,
                name=schema.name,
                definition=schema.definition,
                publisher=schema.publisher,
                block_number=schema.block_number,
                timestamp=schema.timestamp,
                origin_tx_hash=schema.origin_tx_hash,
                parent_id=schema.parent_id,
                is_public=schema.is_public,
                schema_metadata=dict(schema.metadata),
                indexed_at=now,
                updated_at=now,
            )
        )
        state.total_indexed += 1
        state.updated_at = now
        self._record_publisher(session, schema)
        # Flush so repeated ids within one batch resolve to the pending row.
        session.flush()
        return True

    def save_schema(self, schema: IndexedSchema) -> bool:
        with self._lock:
            try:
                with Session(self.db_engine) as session:
                    state = self._get_or_create_state(session)
                    is_new = self._upsert(session, state, schema)
                    session.commit()
            except SQLAlchemyError as e:
                raise StorageError("save_schema", str(e), target=schema.id) from e
        if is_new:
            _LOG.info("Saved new schema: %s", schema.name or schema.id)
        return is_new

    def save_schemas(self, schemas: List[IndexedSchema]) -> List[str]:
        if not schemas:
            return []
        with self._lock:
            try:
                with Session(self.db_engine) as session:
                    state = self._get_or_create_state(session)
                    new_ids = [s.id.lower() for s in schemas if self._upsert(session, state, s)]
                    session.commit()
            except SQLAlchemyError as e:
                raise StorageError(
                    "save_schemas", str(e), target=f"{len(schemas)} schemas"
                ) from e
        _LOG.info(
            "Batch saved schemas: %s new, %s updated",
            len(new_ids),
            len(schemas) - len(new_ids),
        )
        return new_ids

    def get_schema(self, schema_id: str) -> Optional[IndexedSchema]:
        with Session(self.db_engine) as session:
            row = session.get(indexed_schemas, schema_id.lower())
            return self._row_to_schema(row) if row is not None else None

    def get_all_schemas(self) -> List[IndexedSchema]:
        with Session(self.db_engine) as session:
            statement = select(indexed_schemas).order_by(
                indexed_schemas.block_number.desc()
            )
            return [self._row_to_schema(row) for row in session.exec(statement).all()]

    def get_schemas_by_publisher(self, publisher: str) -> List[IndexedSchema]:
        # lowercase the publisher to match the db
        publisher = normalize_address(publisher)
        with Session(self.db_engine) as session:
            statement = (
                select(indexed_schemas)
                .where(indexed_schemas.publisher == publisher)
                .order_by(indexed_schemas.block_number.desc())
            )
            return [self._row_to_schema(row) for row in session.exec(statement).all()]

    def search_by_name(self, query: str) -> List[IndexedSchema]:
        with Session(self.db_engine) as session:
            statement = (
                select(indexed_schemas)
                .where(
                    func.lower(indexed_schemas.name).contains(
                        query.lower(), autoescape=True
                    )
                )
                .order_by(indexed_schemas.block_number.desc())
            )
            return [self._row_to_schema(row) for row in session.exec(statement).all()]

    def get_progress(self) -> IndexerProgress:
        with Session(self.db_engine) as session:
            state = session.get(indexer_state, self.network)
            if state is None:
                return IndexerProgress(network=self.network)
            return self._state_to_progress(state)

    def update_progress(self, **updates) -> IndexerProgress:
        self._validate_progress_updates(updates)
        with self._lock:
            try:
                with Session(self.db_engine) as session:
                    state = self._get_or_create_state(session)
                    height = updates.pop("last_scanned_height", None)
                    if height is not None:
                        state.last_scanned_height = max(
                            int(state.last_scanned_height), int(height)
                        )
                    for key, value in updates.items():
                        setattr(state, key, value)
                    state.updated_at = now_ms()
                    session.add(state)
                    session.commit()
                    session.refresh(state)
                    return self._state_to_progress(state)
            except SQLAlchemyError as e:
                raise StorageError("update_progress", str(e), target=self.network) from e

    def get_publisher_stats(self) -> List[PublisherStats]:
        with Session(self.db_engine) as session:
            statement = select(schema_publishers).order_by(
                schema_publishers.total_schemas.desc()
            )
            return [
                PublisherStats(
                    publisher=row.publisher,
                    count=int(row.total_schemas),
                    first_seen=int(row.first_seen),
                    last_seen=int(row.last_seen),
                )
                for row in session.exec(statement).all()
            ]

    def get_stats(self) -> dict:
        progress = self.get_progress()
        with Session(self.db_engine) as session:
            total = session.exec(
                select(func.count()).select_from(indexed_schemas)
            ).one()
            public = session.exec(
                select(func.count())
                .select_from(indexed_schemas)
                .where(indexed_schemas.is_public == True)  # noqa: E712
            ).one()
            publishers = session.exec(
                select(func.count(func.distinct(indexed_schemas.publisher)))
            ).one()
            latest_block = session.exec(
                select(func.max(indexed_schemas.block_number))
            ).one()
        return {
            "totalSchemas": int(total),
            "uniquePublishers": int(publishers),
            "publicSchemas": int(public),
            "privateSchemas": int(total) - int(public),
            "latestBlock": int(latest_block or 0),
            "lastScannedHeight": progress.last_scanned_height,
            "totalIndexed": progress.total_indexed,
            "lastSync": format_timestamp_ms(progress.last_sync_time),
            "healthy": progress.healthy,
        }

    def close(self):
        self.db_engine.dispose()
