"""
In-process publish/subscribe bus for indexer events
"""

import asyncio
import logging
from collections import defaultdict
from enum import Enum
from typing import Any, Callable, Dict, List, Set, Union

from streamlens.core.types import IndexedSchema, RegistryLog
from streamlens.utils.log import get_default_logger

_LOG = get_default_logger(__name__)
_LOG.setLevel(logging.INFO)


class IndexerEventType(str, Enum):
    """
    Kinds of events published by the pipeline.
    """

    SCHEMA_DISCOVERED = "schema.discovered"
    SCHEMA_INDEXED = "schema.indexed"
    SCHEMA_ENRICHED = "schema.enriched"
    CONNECTION_ESTABLISHED = "connection.established"
    CONNECTION_LOST = "connection.lost"
    ERROR = "error"


EventHandler = Callable[[Any], Any]


class EventBus:
    """
    Delivers published events to subscribers in subscription order.
    A failing handler is logged and does not affect other handlers
    or the publisher.
    Handlers returning a coroutine run as background tasks;
    drain() waits for them.
    """

    def __init__(self):
        self._handlers: Dict[IndexerEventType, List[EventHandler]] = defaultdict(list)
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(
        self, kind: Union[IndexerEventType, str], handler: EventHandler
    ) -> Callable[[], None]:
        """
        Register a handler for an event kind.

        :param kind: The event kind.
        :param handler: Callable receiving the event payload.
            It may be a coroutine function.
        :return: A callable that removes the subscription.
        """
        kind = IndexerEventType(kind)
        self._handlers[kind].append(handler)

        def unsubscribe():
            if handler in self._handlers[kind]:
                self._handlers[kind].remove(handler)

        return unsubscribe

    def publish(self, kind: Union[IndexerEventType, str], data: Any = None) -> int:
        """
        Publish an event to the current subscribers of its kind.

        :param kind: The event kind.
        :param data: The event payload.
        :return: The number of handlers invoked.
        """
        kind = IndexerEventType(kind)
        handlers = list(self._handlers.get(kind, []))
        _LOG.debug("Event %s -> %s handler(s)", kind.value, len(handlers))
        for handler in handlers:
            try:
                result = handler(data)
            except Exception as e:  # pylint: disable=broad-except
                _LOG.error("Handler for %s raised: %s", kind.value, e, exc_info=True)
                continue
            if asyncio.iscoroutine(result):
                self._schedule(kind, result)
        return len(handlers)

    def _schedule(self, kind: IndexerEventType, coro):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            _LOG.warning(
                "Dropping async handler for %s: no running event loop", kind.value
            )
            return
        task = loop.create_task(self._run_handler(kind, coro))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @staticmethod
    async def _run_handler(kind: IndexerEventType, coro):
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:  # pylint: disable=broad-except
            _LOG.error(
                "Async handler for %s raised: %s", kind.value, e, exc_info=True
            )

    @property
    def pending_tasks(self) -> int:
        """Number of handler tasks still running."""
        return len(self._tasks)

    async def drain(self):
        """
        Wait until all handler tasks have finished,
        including tasks scheduled while draining.
        """
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def listener_stats(self) -> Dict[str, int]:
        """
        Get the subscriber count per event kind.

        :return: Map of event kind to number of handlers.
        """
        return {kind.value: len(self._handlers.get(kind, [])) for kind in IndexerEventType}


def schema_discovered_event(registry_log: RegistryLog) -> dict:
    """Payload of a schema.discovered event."""
    return {
        "schemaId": registry_log.schema_id,
        "blockNumber": registry_log.block_number,
        "transactionHash": registry_log.transaction_hash,
        "logIndex": registry_log.log_index,
    }


def schema_indexed_event(schema: IndexedSchema, is_new: bool) -> dict:
    """Payload of a schema.indexed event."""
    return {"schema": schema.to_dict(), "isNew": is_new}


def schema_enriched_event(schema: IndexedSchema) -> dict:
    """Payload of a schema.enriched event."""
    return {"schema": schema.to_dict()}


def connection_event(message: str, transport: str = "http") -> dict:
    """Payload of the connection.established and connection.lost events."""
    return {"type": transport, "message": message}


def error_event(error: BaseException, context: str) -> dict:
    """Payload of an error event."""
    return {"error": str(error), "errorType": type(error).__name__, "context": context}
