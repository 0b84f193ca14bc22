"""
Wire-level event model and signing.

Events are the relay network's unit of exchange: a kind discriminator, string
tags (tag[0] is the tag name) and a content string. The id is the SHA-256 of
the canonical serialization; the signature is BIP-340 Schnorr over that id.

Kinds used by the job protocol:
- 5000-5999: job requests
- request kind + 1000: job results
- 7000: job feedback (status-only events)
"""

import hashlib
import json
import logging
from typing import Any, Dict, List, Optional, Protocol

from coincurve import PrivateKey, PublicKeyXOnly
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from dvmpay.errors import ProtocolViolation

logger = logging.getLogger(__name__)

FEEDBACK_KIND = 7000
RESULT_KIND_OFFSET = 1000
JOB_REQUEST_KIND_MIN = 5000
JOB_REQUEST_KIND_MAX = 5999
DEFAULT_JOB_KIND = 5050


class EventTemplate(BaseModel):
    """Unsigned event: everything the signer needs except the author key."""

    kind: int
    created_at: int
    tags: List[List[str]] = Field(default_factory=list)
    content: str = ""


class NostrEvent(BaseModel):
    """Signed event as received from (or sent to) a relay."""

    model_config = ConfigDict(frozen=True)

    id: str
    pubkey: str
    created_at: int
    kind: int
    tags: List[List[str]] = Field(default_factory=list)
    content: str = ""
    sig: str = ""

    @classmethod
    def from_wire(cls, data: Any) -> "NostrEvent":
        """Parse a relay payload. Raises ProtocolViolation on bad shape."""
        if isinstance(data, NostrEvent):
            return data
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ProtocolViolation(f"Malformed event: {e.error_count()} invalid field(s)") from e

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump()

    def tag(self, name: str) -> Optional[List[str]]:
        """First tag with this name, or None."""
        for t in self.tags:
            if t and t[0] == name:
                return t
        return None

    def tag_values(self, name: str) -> List[str]:
        """tag[1] of every tag with this name."""
        return [t[1] for t in self.tags if len(t) > 1 and t[0] == name]

    def has_tag(self, name: str) -> bool:
        return self.tag(name) is not None

    @property
    def author(self) -> str:
        return self.pubkey

    @property
    def is_feedback(self) -> bool:
        return self.kind == FEEDBACK_KIND


def result_kind_for(request_kind: int) -> int:
    return request_kind + RESULT_KIND_OFFSET


def is_job_request_kind(kind: int) -> bool:
    return JOB_REQUEST_KIND_MIN <= kind <= JOB_REQUEST_KIND_MAX


def serialize_for_id(pubkey: str, created_at: int, kind: int, tags: List[List[str]], content: str) -> str:
    """Canonical serialization the event id is computed over."""
    return json.dumps(
        [0, pubkey, created_at, kind, tags, content],
        separators=(",", ":"),
        ensure_ascii=False,
    )


def compute_event_id(pubkey: str, created_at: int, kind: int, tags: List[List[str]], content: str) -> str:
    serialized = serialize_for_id(pubkey, created_at, kind, tags, content)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


class Signer(Protocol):
    """Signing collaborator. Private keys are hex strings and stay with the caller."""

    def public_key(self, private_key: str) -> str:
        ...

    def sign(self, template: EventTemplate, private_key: str) -> NostrEvent:
        ...

    def verify(self, event: NostrEvent) -> bool:
        ...


class SchnorrSigner:
    """BIP-340 signer over secp256k1 (coincurve)."""

    def public_key(self, private_key: str) -> str:
        sk = PrivateKey(bytes.fromhex(private_key))
        # x-only key: drop the parity byte of the compressed point
        return sk.public_key.format(compressed=True)[1:].hex()

    def sign(self, template: EventTemplate, private_key: str) -> NostrEvent:
        sk = PrivateKey(bytes.fromhex(private_key))
        pubkey = sk.public_key.format(compressed=True)[1:].hex()
        event_id = compute_event_id(pubkey, template.created_at, template.kind, template.tags, template.content)
        sig = sk.sign_schnorr(bytes.fromhex(event_id))
        return NostrEvent(
            id=event_id,
            pubkey=pubkey,
            created_at=template.created_at,
            kind=template.kind,
            tags=[list(t) for t in template.tags],
            content=template.content,
            sig=sig.hex(),
        )

    def verify(self, event: NostrEvent) -> bool:
        """True if id matches the content and the signature is valid for the author."""
        expected = compute_event_id(event.pubkey, event.created_at, event.kind, event.tags, event.content)
        if expected != event.id:
            return False
        try:
            pub = PublicKeyXOnly(bytes.fromhex(event.pubkey))
            return bool(pub.verify(bytes.fromhex(event.sig), bytes.fromhex(event.id)))
        except (ValueError, TypeError) as e:
            logger.debug(f"Signature check failed for {event.id[:8]}: {e}")
            return False
