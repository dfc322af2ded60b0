"""
Webhook fan-out of indexer events.
Each event is POSTed to every subscription registered for its kind,
with per-endpoint retries and exponential backoff.
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

import requests

from streamlens.core.event_bus import EventBus, IndexerEventType
from streamlens.core.types import WebhookSubscription, now_ms
from streamlens.utils.async_utils import run_blocking
from streamlens.utils.error_utils import StreamLensError
from streamlens.utils.log import get_default_logger
from streamlens.utils.retries import WEBHOOK_RETRY_POLICY, RetryPolicy

_LOG = get_default_logger(__name__)
_LOG.setLevel(logging.INFO)

USER_AGENT = "StreamLens-Indexer/1.0"

_EVENT_VALUES = frozenset(kind.value for kind in IndexerEventType)


class WebhookDeliveryError(StreamLensError):
    """Raised when an endpoint rejects or does not answer a delivery."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)

    def __str__(self):
        error_msg = f"{self.message}"
        if self.status_code:
            error_msg = f"[{self.status_code}] {error_msg}"
        return error_msg


class WebhookDispatcher:
    """
    Delivers indexer events to registered webhook endpoints.
    Delivery is at-least-once within each endpoint's retry budget;
    an event that exhausts the budget is logged and dropped.
    """

    def __init__(
        self,
        network: str,
        indexer_name: str = "StreamLens",
        subscriptions: Optional[List[WebhookSubscription]] = None,
        session: Optional[requests.Session] = None,
        retry_policy: RetryPolicy = WEBHOOK_RETRY_POLICY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the dispatcher.

        :param network: Network name sent in the payload metadata.
        :param indexer_name: Indexer name sent in the payload metadata.
        :param subscriptions: Initial webhook subscriptions.
        :param session: The HTTP session to use.
        :param retry_policy: Backoff schedule; attempts come from each subscription.
        :param sleep: Awaitable sleep used between attempts.
        """
        self.network = network
        self.indexer_name = indexer_name
        self.retry_policy = retry_policy
        self._sleep = sleep
        self._webhooks: Dict[str, WebhookSubscription] = {}
        self._unsubscribers: List[Callable[[], None]] = []
        self.session = session if session is not None else requests.Session()
        self.session.headers.update(
            {
                "Content-Type": "application/json",
                "User-Agent": USER_AGENT,
            }
        )
        for subscription in subscriptions or []:
            self.register(subscription)

    @property
    def active(self) -> bool:
        """True while attached to an event bus."""
        return bool(self._unsubscribers)

    def register(self, subscription: WebhookSubscription):
        """
        Register or replace a webhook subscription.

        :param subscription: The subscription.
        """
        unknown = [e for e in subscription.events if e not in _EVENT_VALUES]
        if unknown:
            raise ValueError(f"Unknown webhook events: {unknown}")
        self._webhooks[subscription.id] = subscription
        _LOG.info("Registered webhook: %s -> %s", subscription.id, subscription.url)

    def unregister(self, subscription_id: str) -> bool:
        """
        Remove a webhook subscription.

        :param subscription_id: The subscription id.
        :return: True if the subscription existed.
        """
        removed = self._webhooks.pop(subscription_id, None) is not None
        if removed:
            _LOG.info("Unregistered webhook: %s", subscription_id)
        return removed

    def get_webhooks(self) -> List[WebhookSubscription]:
        """Get all registered subscriptions."""
        return list(self._webhooks.values())

    def attach(self, bus: EventBus):
        """
        Subscribe the dispatcher to every event kind on the bus.

        :param bus: The event bus.
        """
        if self.active:
            _LOG.warning("Webhook dispatcher is already attached")
            return
        for kind in IndexerEventType:
            self._unsubscribers.append(
                bus.subscribe(kind, lambda data, k=kind: self._on_event(k, data))
            )
        _LOG.info("Webhook dispatcher started with %s webhook(s)", len(self._webhooks))

    def detach(self):
        """
        Remove the dispatcher's bus subscriptions.
        """
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def _eligible(self, kind: IndexerEventType) -> List[WebhookSubscription]:
        return [s for s in self._webhooks.values() if kind.value in s.events]

    def _on_event(self, kind: IndexerEventType, data: Any):
        # Only schedule a task when some endpoint wants the event.
        if not self._eligible(kind):
            return None
        return self.dispatch(kind, data)

    def build_payload(self, kind: IndexerEventType, data: Any) -> dict:
        """
        Build the webhook envelope for an event.

        :param kind: The event kind.
        :param data: The event payload.
        :return: The JSON-serializable envelope.
        """
        return {
            "event": IndexerEventType(kind).value,
            "timestamp": now_ms(),
            "data": data,
            "metadata": {
                "network": self.network,
                "indexer": self.indexer_name,
            },
        }

    async def dispatch(self, kind: IndexerEventType, data: Any) -> Dict[str, bool]:
        """
        Deliver an event to all subscriptions registered for its kind.

        :param kind: The event kind.
        :param data: The event payload.
        :return: Map of subscription id to delivery success.
        """
        kind = IndexerEventType(kind)
        eligible = self._eligible(kind)
        if not eligible:
            return {}
        _LOG.info("Triggering %s webhook(s) for %s", len(eligible), kind.value)
        payload = self.build_payload(kind, data)
        results = await asyncio.gather(
            *(self._deliver(subscription, payload) for subscription in eligible)
        )
        return {s.id: ok for s, ok in zip(eligible, results)}

    def _post(self, subscription: WebhookSubscription, body: str):
        headers = {}
        if subscription.auth_token:
            headers["Authorization"] = f"Bearer {subscription.auth_token}"
        response = self.session.post(
            subscription.url,
            data=body,
            headers=headers,
            timeout=subscription.timeout,
        )
        if not 200 <= response.status_code < 300:
            raise WebhookDeliveryError(
                f"Webhook returned {response.status_code}: {response.reason}",
                response.status_code,
            )
        return response.status_code

    async def _deliver(self, subscription: WebhookSubscription, payload: dict) -> bool:
        body = json.dumps(payload, default=str)
        policy = RetryPolicy(
            max_attempts=subscription.max_attempts,
            base_delay=self.retry_policy.base_delay,
            backoff_multiplier=self.retry_policy.backoff_multiplier,
            max_delay=self.retry_policy.max_delay,
        )
        try:
            await policy.run(
                lambda: run_blocking(self._post, subscription, body),
                _LOG,
                context=f"Webhook {subscription.id} ({payload['event']})",
                sleep=self._sleep,
            )
        except Exception as e:  # pylint: disable=broad-except
            _LOG.error(
                "Dropping %s event for webhook %s: %s",
                payload["event"],
                subscription.id,
                e,
            )
            return False
        _LOG.info("Webhook %s delivered %s", subscription.id, payload["event"])
        return True

    def get_stats(self) -> dict:
        """
        Get webhook statistics.

        :return: Activity flag, webhook count, and subscriptions per event kind.
        """
        event_types = {kind.value: 0 for kind in IndexerEventType}
        for subscription in self._webhooks.values():
            for kind in subscription.events:
                event_types[kind] += 1
        return {
            "active": self.active,
            "webhookCount": len(self._webhooks),
            "eventTypes": event_types,
        }

    def close(self):
        """Detach from the bus and close the HTTP session."""
        self.detach()
        self.session.close()

