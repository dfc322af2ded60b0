"""
Enrichment of indexed schemas with registry metadata.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional, Set

from streamlens.core.event_bus import (
    EventBus,
    IndexerEventType,
    schema_enriched_event,
)
from streamlens.core.registry_client import RegistryClient
from streamlens.core.state_store import StateStore
from streamlens.core.types import IndexedSchema, parse_schema_fields
from streamlens.utils.async_utils import run_blocking
from streamlens.utils.crypto_utils import is_zero_hash
from streamlens.utils.log import get_default_logger
from streamlens.utils.rate_limiter import RateLimiter
from streamlens.utils.retries import (
    EVENT_DETAIL_RETRY_POLICY,
    LOG_FETCH_RETRY_POLICY,
    RetryPolicy,
)

_LOG = get_default_logger(__name__)
_LOG.setLevel(logging.INFO)


class SchemaEnricher:
    """
    Fills name, definition, parent, and usage metadata of indexed schemas
    from the registry contract.
    A failed lookup falls back to a default value instead of failing the record;
    records left without a definition are retried on the next pass.
    """

    # pylint: disable-msg=too-many-arguments
    def __init__(
        self,
        registry: RegistryClient,
        store: StateStore,
        bus: EventBus,
        rate_limiter: Optional[RateLimiter] = None,
        lookup_policy: RetryPolicy = EVENT_DETAIL_RETRY_POLICY,
        verify_policy: RetryPolicy = LOG_FETCH_RETRY_POLICY,
        enrich_pause: float = 0.1,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.registry = registry
        self.store = store
        self.bus = bus
        self.rate_limiter = (
            rate_limiter
            if rate_limiter is not None
            else RateLimiter(max_concurrent=3, min_spacing=0.3)
        )
        self.lookup_policy = lookup_policy
        self.verify_policy = verify_policy
        self.enrich_pause = enrich_pause
        self._sleep = sleep
        # Schema ids currently being enriched.
        self._in_flight: Set[str] = set()

    def attach(self, bus: Optional[EventBus] = None) -> Callable[[], None]:
        """
        Subscribe to schema.indexed events.

        :param bus: The bus; defaults to the enricher's bus.
        :return: The unsubscribe callable.
        """
        bus = bus if bus is not None else self.bus
        return bus.subscribe(IndexerEventType.SCHEMA_INDEXED, self.handle_indexed)

    def handle_indexed(self, data: dict):
        """
        Event handler for schema.indexed.
        Returns a coroutine for records that still need enrichment.
        """
        schema = IndexedSchema.from_dict(data["schema"])
        if not schema.needs_enrichment:
            return None
        return self.enrich_and_save(schema)

    async def _call(self, operation: Callable[[], Awaitable[Any]], context: str):
        return await self.lookup_policy.run(
            lambda: self.rate_limiter.run(operation),
            _LOG,
            context=context,
            sleep=self._sleep,
        )

    async def _lookup(
        self, operation: Callable[[], Awaitable[Any]], context: str, fallback: Any
    ) -> Any:
        try:
            return await self._call(operation, context)
        except Exception as e:  # pylint: disable=broad-except
            _LOG.debug("%s failed, using fallback %r: %s", context, fallback, e)
            return fallback

    async def enrich_record(self, schema: IndexedSchema) -> IndexedSchema:
        """
        Build the enriched version of a record. Does not save it.

        :param schema: The record to enrich.
        :return: A new record with registry metadata filled in.
        """
        schema_id = schema.id
        name = await self._lookup(
            lambda: self.registry.schema_name(schema_id),
            f"Fetching schema name for {schema_id}",
            "",
        )
        definition = await self._lookup(
            lambda: self.registry.final_schema(schema_id),
            f"Fetching schema definition for {schema_id}",
            "",
        )
        parent_id = await self._lookup(
            lambda: self.registry.parent_schema_id(schema_id),
            f"Fetching parent schema for {schema_id}",
            None,
        )
        usage_count = await self._lookup(
            lambda: self.registry.publisher_data_count(schema_id, schema.publisher),
            f"Fetching usage count for {schema_id}",
            0,
        )

        if parent_id is not None and is_zero_hash(parent_id):
            parent_id = None

        enriched = schema.copy()
        enriched.name = name or schema.name or schema_id
        enriched.definition = definition or schema.definition
        enriched.parent_id = schema.parent_id or parent_id
        enriched.metadata["usageCount"] = int(usage_count)
        if enriched.definition:
            enriched.metadata["fields"] = parse_schema_fields(enriched.definition)
        return enriched

    async def enrich_and_save(self, schema: IndexedSchema) -> Optional[IndexedSchema]:
        """
        Enrich a record, save it, and publish schema.enriched.

        :param schema: The record to enrich.
        :return: The enriched record,
            or None if it is being enriched or already complete in the store.
        """
        schema_id = schema.id.lower()
        if schema_id in self._in_flight:
            _LOG.debug("Schema %s is already being enriched", schema_id)
            return None
        self._in_flight.add(schema_id)
        try:
            stored = await run_blocking(self.store.get_schema, schema_id)
            if stored is not None and not stored.needs_enrichment:
                _LOG.debug("Schema %s is already enriched", schema_id)
                return None
            enriched = await self.enrich_record(stored or schema)
            await run_blocking(self.store.save_schema, enriched)
        finally:
            self._in_flight.discard(schema_id)
        _LOG.info("Enriched schema %s as %s", schema_id, enriched.name)
        self.bus.publish(IndexerEventType.SCHEMA_ENRICHED, schema_enriched_event(enriched))
        return enriched

    async def enrich_all(self) -> dict:
        """
        Enrich every stored record that is missing a name or definition.

        :return: Counts of enriched and failed records.
        """
        schemas = await run_blocking(self.store.get_all_schemas)
        to_enrich = [s for s in schemas if s.needs_enrichment]
        if not to_enrich:
            _LOG.info("All schemas are already enriched")
            return {"enriched": 0, "failed": 0}

        _LOG.info("Enriching %s schemas...", len(to_enrich))
        enriched = 0
        failed = 0
        for schema in to_enrich:
            try:
                if await self.enrich_and_save(schema) is not None:
                    enriched += 1
                    if enriched % 10 == 0:
                        _LOG.info(
                            "Progress: %s/%s schemas enriched", enriched, len(to_enrich)
                        )
            except Exception as e:  # pylint: disable=broad-except
                failed += 1
                _LOG.warning("Failed to enrich schema %s: %s", schema.id, e)
            await self._sleep(self.enrich_pause)

        _LOG.info("Enrichment complete: %s enriched, %s failed", enriched, failed)
        return {"enriched": enriched, "failed": failed}

    async def verify_with_registry(self) -> List[str]:
        """
        Compare the registry's public schemas with the index.
        Failure to list the registry schemas propagates.

        :return: Ids of registry schemas that are missing from the index.
        """
        _LOG.info("Verifying schemas with registry getAllSchemas...")
        definitions = await self.verify_policy.run(
            lambda: self.rate_limiter.run(self.registry.all_schemas),
            _LOG,
            context="Fetching all schemas from registry",
            sleep=self._sleep,
        )
        _LOG.info("Registry reports %s public schemas", len(definitions))

        missing = []
        for definition in definitions:
            schema_id = await self._lookup(
                lambda d=definition: self.registry.compute_schema_id(d),
                "Computing schema id",
                None,
            )
            if schema_id is None:
                continue
            if await run_blocking(self.store.get_schema, schema_id) is None:
                _LOG.warning("Schema %s exists in registry but not in index", schema_id)
                missing.append(schema_id)

        if missing:
            _LOG.warning(
                "Found %s registry schemas that are missing from the index", len(missing)
            )
        else:
            _LOG.info("All registry schemas are indexed")
        return missing
