"""
Job request construction.

build() either returns a signed request or raises BuildError; nothing is
published from here, so a failed build can never leave a partial request on
the network.

Targeted requests are encrypted for the provider: the input and param tags
travel only inside the envelope, and the event carries ["p", provider] and
["encrypted"]. Untargeted requests carry the same tags in the clear.
"""

import json
import logging
import time
from typing import Callable, List, Optional, Sequence

from dvmpay.crypto import SharedSecret, derive_shared_secret, encrypt
from dvmpay.errors import BuildError, CryptoError, EncryptionFailed, InvalidIdentifier, InvalidTarget
from dvmpay.events import (
    DEFAULT_JOB_KIND,
    JOB_REQUEST_KIND_MAX,
    JOB_REQUEST_KIND_MIN,
    EventTemplate,
    Signer,
    is_job_request_kind,
)
from dvmpay.identity import Identity, IdentityResolver
from dvmpay.schema import JobInput, JobParam, SignedJobRequest

logger = logging.getLogger(__name__)


class JobRequestBuilder:
    def __init__(
        self,
        signer: Signer,
        resolver: Optional[IdentityResolver] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._signer = signer
        self._resolver = resolver or IdentityResolver()
        self._clock = clock

    def build(
        self,
        identity: Identity,
        prompt: Optional[str] = None,
        target_provider: Optional[str] = None,
        job_kind: int = DEFAULT_JOB_KIND,
        inputs: Optional[Sequence[JobInput]] = None,
        output_mime_type: str = "text/plain",
        bid_msats: Optional[int] = None,
        params: Optional[Sequence[JobParam]] = None,
        relays: Optional[Sequence[str]] = None,
    ) -> SignedJobRequest:
        """
        Build and sign a job request.

        Args:
            identity: Consumer keypair (must hold the private key)
            prompt: Shorthand for a leading text input
            target_provider: Hex pubkey, npub or nprofile; makes the request encrypted
            job_kind: 5000-5999
            inputs: Further inputs after the prompt
            bid_msats: Maximum the consumer is willing to pay
            params: Named job parameters
            relays: Relays the provider should answer on

        Raises:
            InvalidTarget: target_provider does not resolve to a public key
            EncryptionFailed: Key agreement or encryption failed
            BuildError: Bad kind, no inputs, missing private key or signing failure
        """
        if not is_job_request_kind(job_kind):
            raise BuildError(f"Job kind {job_kind} outside {JOB_REQUEST_KIND_MIN}-{JOB_REQUEST_KIND_MAX}")
        if not identity.private_key:
            raise BuildError("Identity has no private key; cannot sign")
        if bid_msats is not None and bid_msats < 0:
            raise BuildError("bid_msats must not be negative")

        all_inputs: List[JobInput] = []
        if prompt:
            all_inputs.append(JobInput(value=prompt, input_type="text"))
        all_inputs.extend(inputs or ())
        if not all_inputs:
            raise BuildError("A job request needs at least one input")
        all_params = tuple(params or ())

        target_pubkey = None
        if target_provider:
            try:
                target_pubkey = self._resolver.resolve(target_provider)
            except InvalidIdentifier as e:
                raise InvalidTarget(f"Invalid target provider {target_provider!r}: {e}") from e

        payload_tags = [i.to_tag() for i in all_inputs] + [p.to_tag() for p in all_params]
        payload = json.dumps(payload_tags, ensure_ascii=False)

        tags: List[List[str]] = []
        secret: Optional[SharedSecret] = None
        if target_pubkey is not None:
            try:
                secret = derive_shared_secret(identity.private_key, target_pubkey)
                content = encrypt(payload, secret)
            except CryptoError as e:
                raise EncryptionFailed(f"Could not encrypt request for {target_pubkey[:8]}: {e}") from e
            tags.append(["p", target_pubkey])
            tags.append(["encrypted"])
        else:
            tags.extend(payload_tags)
            content = payload

        tags.append(["output", output_mime_type])
        if bid_msats:
            tags.append(["bid", str(bid_msats)])
        if relays:
            tags.append(["relays", *relays])

        template = EventTemplate(kind=job_kind, created_at=int(self._clock()), tags=tags, content=content)
        try:
            event = self._signer.sign(template, identity.private_key)
        except Exception as e:
            raise BuildError(f"Signing failed: {e}") from e

        logger.debug(
            f"Built job request {event.id[:8]} kind={job_kind} "
            f"{'encrypted for ' + target_pubkey[:8] if target_pubkey else 'public'}"
        )
        return SignedJobRequest(
            event=event,
            inputs=tuple(all_inputs),
            output_mime_type=output_mime_type,
            target_provider_pubkey=target_pubkey,
            bid_msats=bid_msats,
            params=all_params,
            shared_secret=secret,
        )
