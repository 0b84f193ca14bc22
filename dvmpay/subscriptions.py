"""
Subscriptions for a published job request.

Two filters per request, both keyed to the request id through its e-tag:
- results: kind = request kind + 1000
- feedback: kind 7000
When the provider is known, both are restricted to that author.

`since` is never later than the request's created_at.
"""

import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Sequence

from dvmpay.errors import SubscriptionError
from dvmpay.events import FEEDBACK_KIND
from dvmpay.schema import SignedJobRequest
from dvmpay.services import ServiceRegistry
from dvmpay.telemetry import record_safely
from dvmpay.transport import Filter, RelaySubscription, Transport

logger = logging.getLogger(__name__)

RESULT_LIMIT = 5
FEEDBACK_LIMIT = 10


def job_filters(
    request: SignedJobRequest,
    known_provider_pubkey: Optional[str] = None,
    since: Optional[int] = None,
) -> List[Filter]:
    """[result filter, feedback filter] for a request."""
    since = request.created_at if since is None else min(since, request.created_at)
    filters: List[Filter] = []
    for kind, limit in ((request.result_kind, RESULT_LIMIT), (FEEDBACK_KIND, FEEDBACK_LIMIT)):
        f: Filter = {"kinds": [kind], "#e": [request.id], "since": since, "limit": limit}
        if known_provider_pubkey:
            f["authors"] = [known_provider_pubkey]
        filters.append(f)
    return filters


class SubscriptionHandle:
    """
    Fan-in point for one job's relay subscriptions.

    Events that arrive before on_event() is registered are buffered and
    delivered on registration. close() is idempotent; nothing is delivered
    after it.
    """

    def __init__(self, job_id: str):
        self.job_id = job_id
        self._lock = threading.Lock()
        self._event_callbacks: List[Callable[[Any], None]] = []
        self._eose_callbacks: List[Callable[[str], None]] = []
        self._pending: List[Any] = []
        self._relay_subs: List[RelaySubscription] = []
        self._closed = False
        self.filters: List[Filter] = []

    @property
    def closed(self) -> bool:
        return self._closed

    def on_event(self, callback: Callable[[Any], None]) -> None:
        with self._lock:
            if self._closed:
                return
            self._event_callbacks.append(callback)
            pending, self._pending = self._pending, []
        for event in pending:
            callback(event)

    def on_end_of_stored_events(self, callback: Callable[[str], None]) -> None:
        with self._lock:
            if not self._closed:
                self._eose_callbacks.append(callback)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            subs, self._relay_subs = self._relay_subs, []
            self._event_callbacks.clear()
            self._eose_callbacks.clear()
            self._pending.clear()
        for sub in subs:
            try:
                sub.close()
            except Exception as e:
                logger.warning(f"Closing relay subscription for job {self.job_id[:8]} failed: {e}")
        logger.debug(f"Subscription for job {self.job_id[:8]} closed")

    def _attach(self, sub: RelaySubscription) -> None:
        with self._lock:
            if not self._closed:
                self._relay_subs.append(sub)
                return
        sub.close()

    def _dispatch_event(self, event: Any) -> None:
        with self._lock:
            if self._closed:
                return
            if not self._event_callbacks:
                self._pending.append(event)
                return
            callbacks = list(self._event_callbacks)
        for cb in callbacks:
            cb(event)

    def _dispatch_eose(self, label: str) -> None:
        with self._lock:
            if self._closed:
                return
            callbacks = list(self._eose_callbacks)
        for cb in callbacks:
            cb(label)


class SubscriptionManager:
    def __init__(
        self,
        transport: Transport,
        relays: Sequence[str],
        services: ServiceRegistry,
        since_buffer_seconds: int = 0,
    ):
        if since_buffer_seconds < 0:
            raise ValueError("since_buffer_seconds must not be negative")
        self._transport = transport
        self.relays = list(relays)
        self._services = services
        self.since_buffer_seconds = since_buffer_seconds

    def default_since(self, request: SignedJobRequest) -> int:
        return request.created_at - self.since_buffer_seconds

    def open_for(
        self,
        request: SignedJobRequest,
        known_provider_pubkey: Optional[str] = None,
        since: Optional[int] = None,
    ) -> SubscriptionHandle:
        """
        Open result + feedback subscriptions for a request.

        Raises:
            SubscriptionError: If the transport refuses a subscription (any
                already-opened part is closed first)
        """
        if since is None:
            since = self.default_since(request)
        elif since > request.created_at:
            logger.warning(
                f"since={since} is after request created_at={request.created_at}; "
                "clamping so early provider events are not dropped"
            )
            since = request.created_at

        handle = SubscriptionHandle(request.id)
        handle.filters = job_filters(request, known_provider_pubkey, since)
        for label, f in zip(("result", "feedback"), handle.filters):
            try:
                sub = self._transport.subscribe(
                    self.relays,
                    [f],
                    handle._dispatch_event,
                    _eose_forwarder(handle, label),
                )
            except Exception as e:
                handle.close()
                raise SubscriptionError(f"Could not open {label} subscription for {request.id[:8]}: {e}") from e
            handle._attach(sub)

        record_safely(
            self._services.telemetry(),
            "subscription_opened",
            request.id,
            f"authors={known_provider_pubkey or 'any'} since={since}",
        )
        return handle

    def fetch(
        self,
        filters: List[Filter],
        on_event: Callable[[Dict[str, Any]], None],
        on_eose: Callable[[], None],
    ) -> RelaySubscription:
        """Raw subscription for history queries; the caller closes it."""
        return self._transport.subscribe(self.relays, filters, on_event, on_eose)


def _eose_forwarder(handle: SubscriptionHandle, label: str) -> Callable[[], None]:
    def forward() -> None:
        handle._dispatch_eose(label)

    return forward
