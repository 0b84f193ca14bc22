"""Shared fixtures: in-memory relay transport, recording telemetry, scripted wallet, identities."""

import asyncio
import time
from typing import Any, Dict, List, Optional

import pytest

from dvmpay.crypto import derive_shared_secret, encrypt
from dvmpay.events import FEEDBACK_KIND, EventTemplate, SchnorrSigner
from dvmpay.identity import Identity
from dvmpay.payments import PaymentReceipt
from dvmpay.services import ServiceRegistry
from dvmpay.telemetry import TelemetryRecord
from dvmpay.transport import PublishResult

RELAYS = ["wss://relay.one", "wss://relay.two"]


class FakeSubscription:
    def __init__(self, transport, filters, on_event, on_eose):
        self.transport = transport
        self.filters = filters
        self.on_event = on_event
        self.on_eose = on_eose
        self.closed = False
        self.close_calls = 0

    def close(self):
        self.close_calls += 1
        self.closed = True

    def matches(self, event: Dict[str, Any]) -> bool:
        for f in self.filters:
            if "kinds" in f and event["kind"] not in f["kinds"]:
                continue
            if "#e" in f:
                refs = [t[1] for t in event["tags"] if len(t) > 1 and t[0] == "e"]
                if not set(refs) & set(f["#e"]):
                    continue
            if "authors" in f and event["pubkey"] not in f["authors"]:
                continue
            return True
        return False


class FakeTransport:
    """Relays in memory. emit() pushes an event to every open matching subscription."""

    def __init__(self, accept: bool = True, fail_subscribe: bool = False):
        self.accept = accept
        self.fail_subscribe = fail_subscribe
        self.published: List[Dict[str, Any]] = []
        self.subscriptions: List[FakeSubscription] = []
        self.stored: List[Dict[str, Any]] = []
        # set to an asyncio.Event to hold publish() until it is set
        self.gate: Optional[asyncio.Event] = None

    async def publish(self, relay_urls, event):
        self.published.append(event)
        if self.gate is not None:
            await self.gate.wait()
        if not self.accept:
            return PublishResult(rejected={url: "blocked: spam" for url in relay_urls})
        return PublishResult(accepted=list(relay_urls))

    def subscribe(self, relay_urls, filters, on_event, on_end_of_stored_events):
        if self.fail_subscribe:
            raise ConnectionError("relay pool unavailable")
        sub = FakeSubscription(self, filters, on_event, on_end_of_stored_events)
        self.subscriptions.append(sub)
        for event in self.stored:
            if sub.matches(event):
                on_event(event)
        on_end_of_stored_events()
        return sub

    def emit(self, event: Dict[str, Any]) -> int:
        delivered = 0
        for sub in list(self.subscriptions):
            if not sub.closed and sub.matches(event):
                sub.on_event(event)
                delivered += 1
        return delivered

    def emit_everywhere(self, event: Dict[str, Any]) -> None:
        """Deliver regardless of filters (a misbehaving relay)."""
        for sub in list(self.subscriptions):
            if not sub.closed:
                sub.on_event(event)

    @property
    def open_subscriptions(self) -> List[FakeSubscription]:
        return [s for s in self.subscriptions if not s.closed]


class RecordingTelemetry:
    def __init__(self):
        self.records: List[TelemetryRecord] = []

    def record(self, category, action, label=None, value=None):
        self.records.append(TelemetryRecord(category, action, label, value))

    def actions(self) -> List[str]:
        return [r.action for r in self.records]


class FakeExecutor:
    """Scripted wallet. Set error to make pay() raise; delay to hold it open."""

    def __init__(self, error: Optional[Exception] = None, delay: float = 0.0):
        self.error = error
        self.delay = delay
        self.calls: List[tuple] = []

    async def pay(self, invoice, max_fee_sats, timeout_seconds):
        self.calls.append((invoice, max_fee_sats, timeout_seconds))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return PaymentReceipt(payment_hash="ab" * 32, fee_sats=1)


def provider_event(
    author: Identity,
    kind: int,
    request_id: str,
    tags: Optional[List[List[str]]] = None,
    content: str = "",
    created_at: Optional[int] = None,
) -> Dict[str, Any]:
    """Signed wire event from a provider, referencing request_id."""
    template = EventTemplate(
        kind=kind,
        created_at=created_at if created_at is not None else int(time.time()),
        tags=[["e", request_id]] + list(tags or []),
        content=content,
    )
    return SchnorrSigner().sign(template, author.private_key).to_wire()


def feedback_event(author: Identity, request_id: str, status: str, extra: str = "", tags=None, content: str = ""):
    status_tag = ["status", status] + ([extra] if extra else [])
    return provider_event(author, FEEDBACK_KIND, request_id, [status_tag] + list(tags or []), content)


def encrypted_for(sender: Identity, recipient_pubkey: str, text: str) -> str:
    return encrypt(text, derive_shared_secret(sender.private_key, recipient_pubkey))


@pytest.fixture
def consumer_identity():
    return Identity.generate()


@pytest.fixture
def provider_identity():
    return Identity.generate()


@pytest.fixture
def other_identity():
    return Identity.generate()


@pytest.fixture
def telemetry():
    return RecordingTelemetry()


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def services(telemetry, executor):
    return ServiceRegistry(payment_executor=executor, telemetry=telemetry)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def signer():
    return SchnorrSigner()
