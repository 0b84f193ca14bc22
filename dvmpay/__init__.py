"""
dvmpay: client for the NIP-90 job marketplace.

Lets an agent:
- Send public or encrypted job requests to providers (npub / nprofile / hex)
- Follow each job through feedback, payment and result events
- Auto-pay small Lightning invoices (threshold configurable), approve larger ones

Relay transport is pluggable (see dvmpay.transport); keys come from
DVMPAY_PRIVATE_KEY or are generated with `dvmpay keygen`.
"""

__version__ = "0.1.0"

from dvmpay.builder import JobRequestBuilder
from dvmpay.config import ConsumerConfig
from dvmpay.crypto import SharedSecret, decrypt, derive_shared_secret, encrypt
from dvmpay.errors import (
    BuildError,
    DecryptError,
    DvmPayError,
    InvalidIdentifier,
    JobFailedError,
    PaymentError,
    PublishFailure,
)
from dvmpay.events import NostrEvent, SchnorrSigner
from dvmpay.flow import JobConsumer, request_job
from dvmpay.identity import Identity, IdentityResolver, load_identity, resolve_pubkey
from dvmpay.payments.coordinator import PaymentCoordinator
from dvmpay.provider import AgentLanguageModel, get_language_model
from dvmpay.schema import JobInput, JobParam, JobState, JobUpdate, PaymentState, PaymentStatus, SignedJobRequest
from dvmpay.services import ServiceRegistry
from dvmpay.session import JobSession
from dvmpay.subscriptions import SubscriptionManager

__all__ = [
    "__version__",
    "JobConsumer",
    "JobSession",
    "request_job",
    "JobRequestBuilder",
    "SubscriptionManager",
    "PaymentCoordinator",
    "ServiceRegistry",
    "ConsumerConfig",
    "Identity",
    "IdentityResolver",
    "load_identity",
    "resolve_pubkey",
    "SharedSecret",
    "derive_shared_secret",
    "encrypt",
    "decrypt",
    "NostrEvent",
    "SchnorrSigner",
    "JobInput",
    "JobParam",
    "JobState",
    "JobUpdate",
    "PaymentState",
    "PaymentStatus",
    "SignedJobRequest",
    "AgentLanguageModel",
    "get_language_model",
    "DvmPayError",
    "InvalidIdentifier",
    "BuildError",
    "PublishFailure",
    "DecryptError",
    "PaymentError",
    "JobFailedError",
]
