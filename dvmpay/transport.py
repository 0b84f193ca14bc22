"""
Relay transport interface.

The transport (websocket pool, relay selection, reconnects) lives outside this
package. Anything with these two operations can be plugged into JobConsumer.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Protocol, Sequence

# Relay filter, e.g. {"kinds": [6050], "#e": [request_id], "since": 1700000000}
Filter = Dict[str, Any]


@dataclass
class PublishResult:
    """Per-relay outcome of a publish. Success if any relay accepted."""

    accepted: List[str] = field(default_factory=list)
    rejected: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return bool(self.accepted)


class RelaySubscription(Protocol):
    def close(self) -> None:
        ...


class Transport(Protocol):
    async def publish(self, relay_urls: Sequence[str], event: Dict[str, Any]) -> PublishResult:
        ...

    def subscribe(
        self,
        relay_urls: Sequence[str],
        filters: List[Filter],
        on_event: Callable[[Dict[str, Any]], None],
        on_end_of_stored_events: Callable[[], None],
    ) -> RelaySubscription:
        """Open a subscription. Callbacks may fire from any thread."""
        ...
