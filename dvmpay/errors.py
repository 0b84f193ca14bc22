"""
Error taxonomy for the NIP-90 consumer.

Build and publish errors are raised to the caller before anything is sent or
subscribed. Per-event errors (decrypt, authentication, malformed tags) are
raised inside the router and caught at its boundary; they never escape the
routing loop. Payment errors end up in PaymentState.error.
"""

from typing import Dict, Optional


class DvmPayError(Exception):
    """Base exception for dvmpay."""

    pass


class InvalidIdentifier(DvmPayError):
    """Provider identifier is neither 64-char hex nor a public-key alias."""

    pass


class CryptoError(DvmPayError):
    """Key agreement or encryption failed."""

    pass


class DecryptError(CryptoError):
    """Envelope could not be decrypted (wrong key or corrupted envelope)."""

    pass


class BuildError(DvmPayError):
    """Job request could not be built. Nothing is published."""

    pass


class InvalidTarget(BuildError):
    """Target provider identifier did not resolve to a public key."""

    pass


class EncryptionFailed(BuildError):
    """Job payload could not be encrypted for the target provider."""

    pass


class PublishFailure(DvmPayError):
    """No relay accepted the job request."""

    def __init__(self, message: str, rejected: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.rejected = dict(rejected or {})


class SubscriptionError(DvmPayError):
    """Transport refused to open a subscription."""

    pass


class UnauthenticatedEvent(DvmPayError):
    """Event author is not the provider the request was addressed to."""

    pass


class ProtocolViolation(DvmPayError):
    """Event is malformed (missing or unparseable tags, bad wire shape)."""

    pass


class PaymentError(DvmPayError):
    """Payment attempt failed. Non-fatal to the job."""

    pass


class InvoiceExpired(PaymentError):
    pass


class FeeExceeded(PaymentError):
    pass


class PaymentTimeout(PaymentError):
    pass


class NetworkFailure(PaymentError):
    pass


class JobNotFoundError(DvmPayError):
    """No live session for this job id."""

    pass


class InvalidTransitionError(DvmPayError):
    """Requested lifecycle transition is not allowed from the current state."""

    pass


class JobFailedError(DvmPayError):
    """Job ended in the Failed state."""

    pass
