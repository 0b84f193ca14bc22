"""
Job and payment schema for the NIP-90 flow.

Contract: consumer publishes JobRequest → provider answers with feedback
(status, possibly payment-required + invoice) → consumer pays → provider
publishes the result event.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from dvmpay.crypto import SharedSecret
from dvmpay.events import NostrEvent, result_kind_for


INPUT_TYPES = ("text", "url", "event", "job")


class JobInput(BaseModel):
    """One job input: (value, type, relay_hint?, marker?)."""

    model_config = ConfigDict(frozen=True)

    value: str
    input_type: str = Field("text", pattern="^(text|url|event|job)$")
    relay_hint: Optional[str] = None
    marker: Optional[str] = None

    def to_tag(self) -> List[str]:
        tag = ["i", self.value, self.input_type]
        if self.relay_hint is not None or self.marker is not None:
            tag.append(self.relay_hint or "")
        if self.marker is not None:
            tag.append(self.marker)
        return tag


class JobParam(BaseModel):
    """Named job parameter, e.g. ("model", "llama3")."""

    model_config = ConfigDict(frozen=True)

    key: str
    value: str

    def to_tag(self) -> List[str]:
        return ["param", self.key, self.value]


class FeedbackStatus(str, Enum):
    PAYMENT_REQUIRED = "payment-required"
    PROCESSING = "processing"
    ERROR = "error"
    SUCCESS = "success"
    PARTIAL = "partial"


class JobFeedback(BaseModel):
    """Parsed kind-7000 feedback event."""

    event_id: str
    author: str
    created_at: int
    status: Optional[str] = None
    status_extra: Optional[str] = None
    amount_msats: Optional[int] = None
    invoice: Optional[str] = None
    content: str = ""

    @classmethod
    def from_event(cls, event: NostrEvent, content: Optional[str] = None) -> "JobFeedback":
        status_tag = event.tag("status") or []
        amount_tag = event.tag("amount") or []
        amount = None
        if len(amount_tag) > 1 and amount_tag[1].isdigit():
            amount = int(amount_tag[1])
        return cls(
            event_id=event.id,
            author=event.pubkey,
            created_at=event.created_at,
            status=status_tag[1] if len(status_tag) > 1 else None,
            status_extra=status_tag[2] if len(status_tag) > 2 else None,
            amount_msats=amount,
            invoice=amount_tag[2] if len(amount_tag) > 2 and amount_tag[2] else None,
            content=event.content if content is None else content,
        )


@dataclass(frozen=True)
class SignedJobRequest:
    """
    A built and signed job request. Immutable; id is the event id.

    shared_secret is set only for encrypted requests and is used to decrypt
    the provider's answers. It is excluded from repr and comparisons.
    """

    event: NostrEvent
    inputs: Tuple[JobInput, ...]
    output_mime_type: str
    target_provider_pubkey: Optional[str] = None
    bid_msats: Optional[int] = None
    params: Tuple[JobParam, ...] = ()
    shared_secret: Optional[SharedSecret] = field(default=None, repr=False, compare=False)

    @property
    def id(self) -> str:
        return self.event.id

    @property
    def kind(self) -> int:
        return self.event.kind

    @property
    def author_pubkey(self) -> str:
        return self.event.pubkey

    @property
    def created_at(self) -> int:
        return self.event.created_at

    @property
    def encrypted(self) -> bool:
        return self.event.has_tag("encrypted")

    @property
    def result_kind(self) -> int:
        return result_kind_for(self.event.kind)


class JobState(str, Enum):
    """Lifecycle of one job session."""

    IDLE = "idle"
    SENT = "sent"
    LISTENING = "listening"
    PAYMENT_REQUIRED = "payment-required"
    PAYING = "paying"
    PAID = "paid"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED})

VALID_TRANSITIONS = {
    JobState.IDLE: {JobState.SENT, JobState.FAILED},
    JobState.SENT: {JobState.LISTENING, JobState.FAILED},
    JobState.LISTENING: {JobState.PAYMENT_REQUIRED, JobState.COMPLETED, JobState.FAILED},
    JobState.PAYMENT_REQUIRED: {JobState.PAYING, JobState.COMPLETED, JobState.FAILED},
    # back to PAYMENT_REQUIRED when the payment attempt fails (retryable)
    JobState.PAYING: {JobState.PAYMENT_REQUIRED, JobState.PAID, JobState.COMPLETED, JobState.FAILED},
    JobState.PAID: {JobState.PAYMENT_REQUIRED, JobState.COMPLETED, JobState.FAILED},
    JobState.COMPLETED: set(),
    JobState.FAILED: set(),
}


class PaymentStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    PAYING = "paying"
    PAID = "paid"
    FAILED = "failed"


@dataclass
class PaymentState:
    """Payment progress for one (job, invoice). Terminal once PAID or FAILED."""

    job_id: str
    invoice: Optional[str] = None
    amount_sats: Optional[int] = None
    status: PaymentStatus = PaymentStatus.NONE
    error: Optional[str] = None
    payment_hash: Optional[str] = None
    history: List[PaymentStatus] = field(default_factory=list)
    updated_at: float = field(default_factory=time.time)

    def set_status(self, status: PaymentStatus, error: Optional[str] = None) -> None:
        self.history.append(self.status)
        self.status = status
        self.error = error
        self.updated_at = time.time()

    @property
    def is_terminal(self) -> bool:
        return self.status in (PaymentStatus.PAID, PaymentStatus.FAILED)


class UpdateKind(str, Enum):
    STATUS = "status"
    PAYMENT = "payment"
    PARTIAL = "partial"
    OUTPUT = "output"
    ERROR = "error"


@dataclass(frozen=True)
class JobUpdate:
    """Something the caller should see: a status line, payment notice or output."""

    kind: UpdateKind
    message: str
    event_id: Optional[str] = None
    status: Optional[str] = None
    created_at: float = field(default_factory=time.time)
