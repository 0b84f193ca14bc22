"""
Job flow: build request → publish → listen → (pay) → result.

JobConsumer owns every live JobSession (keyed by request id), the payment
coordinator and the subscription manager. Build and publish problems are
raised to the caller before any subscription opens; everything after that is
reported through the session (state, updates, output, error).

The payment executor and telemetry sink are looked up in the ServiceRegistry
whenever they are needed, so a wallet bound after a job started is still the
one used to pay it.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

from dvmpay.builder import JobRequestBuilder
from dvmpay.config import ConsumerConfig
from dvmpay.crypto import decrypt, looks_like_envelope
from dvmpay.errors import (
    BuildError,
    DecryptError,
    JobFailedError,
    JobNotFoundError,
    ProtocolViolation,
    PublishFailure,
    SubscriptionError,
)
from dvmpay.events import FEEDBACK_KIND, NostrEvent, Signer, SchnorrSigner
from dvmpay.identity import Identity, IdentityResolver, load_identity
from dvmpay.payments import get_executor
from dvmpay.payments.coordinator import PaymentCoordinator
from dvmpay.schema import JobFeedback, JobInput, JobParam, PaymentState, SignedJobRequest
from dvmpay.services import ServiceRegistry
from dvmpay.session import DECRYPT_PLACEHOLDER, JobSession
from dvmpay.subscriptions import FEEDBACK_LIMIT, SubscriptionManager
from dvmpay.telemetry import LoggingTelemetry, record_safely
from dvmpay.transport import PublishResult, Transport

logger = logging.getLogger(__name__)


class JobConsumer:
    def __init__(
        self,
        identity: Identity,
        transport: Transport,
        signer: Optional[Signer] = None,
        services: Optional[ServiceRegistry] = None,
        config: Optional[ConsumerConfig] = None,
        resolver: Optional[IdentityResolver] = None,
        verify_signatures: bool = True,
    ):
        self.identity = identity
        self.config = config or ConsumerConfig()
        self.services = services or ServiceRegistry(
            telemetry=LoggingTelemetry(enabled=self.config.telemetry_enabled)
        )
        self._transport = transport
        self._signer = signer or SchnorrSigner()
        self._verify = self._signer.verify if verify_signatures else None
        self.builder = JobRequestBuilder(self._signer, resolver)
        self.subscriptions = SubscriptionManager(
            transport,
            self.config.relays,
            self.services,
            since_buffer_seconds=self.config.since_buffer_seconds,
        )
        self.payments = PaymentCoordinator(
            self.services,
            auto_pay_threshold_sats=self.config.auto_pay_threshold_sats,
            max_fee_sats=self.config.max_fee_sats,
            timeout_seconds=self.config.payment_timeout_seconds,
            on_update=self._on_payment_update,
        )
        self._sessions: Dict[str, JobSession] = {}

    @classmethod
    def from_env(cls, transport: Transport, **kwargs: Any) -> "JobConsumer":
        """Identity, config and wallet from DVMPAY_* env vars (.env supported)."""
        config = kwargs.pop("config", None) or ConsumerConfig.from_env()
        services = kwargs.pop("services", None) or ServiceRegistry(
            payment_executor=get_executor(config.payment_method),
            telemetry=LoggingTelemetry(enabled=config.telemetry_enabled),
        )
        identity = kwargs.pop("identity", None) or load_identity()
        return cls(identity, transport, config=config, services=services, **kwargs)

    async def submit(
        self,
        prompt: Optional[str] = None,
        target_provider: Optional[str] = None,
        job_kind: Optional[int] = None,
        inputs: Optional[Sequence[JobInput]] = None,
        output_mime_type: Optional[str] = None,
        bid_msats: Optional[int] = None,
        params: Optional[Sequence[JobParam]] = None,
        relays: Optional[Sequence[str]] = None,
        since: Optional[int] = None,
    ) -> JobSession:
        """
        Build, publish and subscribe. Returns the live session (state listening).

        Raises:
            BuildError: Request could not be built; nothing was published
            PublishFailure: No relay accepted the request; no subscription opened
            SubscriptionError: Published, but the transport refused to subscribe
            JobFailedError: Cancelled (or closed) while publishing; nothing left open
        """
        record_safely(self.services.telemetry(), "send_job_request_start", target_provider or "public", prompt)
        try:
            request = self.builder.build(
                self.identity,
                prompt=prompt,
                target_provider=target_provider,
                job_kind=job_kind or self.config.default_job_kind,
                inputs=inputs,
                output_mime_type=output_mime_type or self.config.output_mime_type,
                bid_msats=bid_msats,
                params=params,
                relays=relays,
            )
        except BuildError as e:
            record_safely(self.services.telemetry(), "send_job_error", type(e).__name__, str(e))
            raise

        session = JobSession(
            request,
            self.services,
            self.payments,
            verify=self._verify,
            on_terminal=self._forget,
        )
        self._sessions[request.id] = session
        session.mark_sent()

        try:
            result = await self._transport.publish(self.config.relays, request.event.to_wire())
        except Exception as e:
            logger.warning(f"Publish of {request.id[:8]} raised: {e}")
            result = PublishResult(rejected={relay: str(e) for relay in self.config.relays})
        if not result.ok:
            session.fail("Job request was rejected by every relay")
            record_safely(self.services.telemetry(), "job_request_failed", request.id, str(result.rejected))
            raise PublishFailure(f"No relay accepted job request {request.id[:8]}", result.rejected)
        record_safely(self.services.telemetry(), "job_request_published", request.id, ",".join(result.accepted))
        if session.is_terminal:
            raise JobFailedError(session.error or "Job cancelled before it was subscribed")

        try:
            handle = self.subscriptions.open_for(request, request.target_provider_pubkey, since)
        except SubscriptionError as e:
            session.fail(str(e))
            raise
        if session.is_terminal:
            handle.close()
            raise JobFailedError(session.error or "Job cancelled before it was subscribed")
        session.listen(handle)
        return session

    def get(self, job_id: str) -> JobSession:
        session = self._sessions.get(job_id)
        if session is None:
            raise JobNotFoundError(f"No live job {job_id}")
        return session

    def sessions(self) -> List[JobSession]:
        return list(self._sessions.values())

    def cancel(self, job_id: str, reason: str = "Cancelled by caller") -> None:
        self.get(job_id).cancel(reason)

    async def pay(self, job_id: str, invoice: Optional[str] = None) -> PaymentState:
        """Approve a deferred (or retry a failed) invoice for a live job."""
        self.get(job_id)
        return self.payments.pay(job_id, invoice)

    async def collect_feedback(
        self,
        request: SignedJobRequest,
        timeout: float = 10.0,
    ) -> List[JobFeedback]:
        """
        Stored feedback for a request, up to end-of-stored-events (or timeout).
        Feedback from anyone but the addressed provider is skipped.
        """
        loop = asyncio.get_running_loop()
        events: List[Dict[str, Any]] = []
        eose = asyncio.Event()

        def on_event(raw: Dict[str, Any]) -> None:
            loop.call_soon_threadsafe(events.append, raw)

        def on_eose() -> None:
            loop.call_soon_threadsafe(eose.set)

        since = self.subscriptions.default_since(request)
        filters = [{"kinds": [FEEDBACK_KIND], "#e": [request.id], "since": since, "limit": FEEDBACK_LIMIT}]
        if request.target_provider_pubkey:
            filters[0]["authors"] = [request.target_provider_pubkey]
        sub = self.subscriptions.fetch(filters, on_event, on_eose)
        try:
            await asyncio.wait_for(eose.wait(), timeout)
        except asyncio.TimeoutError:
            logger.info(f"No end-of-stored-events for {request.id[:8]} within {timeout}s")
        finally:
            sub.close()
        await asyncio.sleep(0)

        feedback: Dict[str, JobFeedback] = {}
        for raw in events:
            try:
                event = NostrEvent.from_wire(raw)
            except ProtocolViolation as e:
                logger.debug(f"Skipping malformed feedback: {e}")
                continue
            target = request.target_provider_pubkey
            if target and event.pubkey != target:
                record_safely(self.services.telemetry(), "untargeted_event_rejected", request.id, event.pubkey)
                continue
            if event.kind != FEEDBACK_KIND or request.id not in event.tag_values("e"):
                continue
            feedback[event.id] = JobFeedback.from_event(event, self._read_content(request, event))
        return sorted(feedback.values(), key=lambda f: f.created_at)

    async def close(self) -> None:
        """Cancel live sessions and wait for in-flight payments to report."""
        for session in list(self._sessions.values()):
            session.cancel("Consumer closed")
        await self.payments.wait_idle()

    def _read_content(self, request: SignedJobRequest, event: NostrEvent) -> str:
        if request.shared_secret is None or not looks_like_envelope(event.content):
            return event.content
        try:
            return decrypt(event.content, request.shared_secret)
        except DecryptError:
            record_safely(self.services.telemetry(), "nip04_decrypt_error", request.id, event.id)
            return DECRYPT_PLACEHOLDER

    def _forget(self, session: JobSession) -> None:
        self._sessions.pop(session.job_id, None)
        self.payments.forget(session.job_id)

    def _on_payment_update(self, payment: PaymentState) -> None:
        session = self._sessions.get(payment.job_id)
        if session is None:
            logger.info(f"Payment for finished job {payment.job_id[:8]} is now {payment.status.value}")
            return
        session.payment_updated(payment)


async def request_job(
    consumer: JobConsumer,
    prompt: str,
    target_provider: Optional[str] = None,
    timeout: Optional[float] = None,
    **kwargs: Any,
) -> Optional[str]:
    """
    Submit a job and wait for its output.

    Raises:
        JobFailedError: Provider error, cancellation or publish failure after submit
        asyncio.TimeoutError: No terminal state within timeout (the job is cancelled)
    """
    session = await consumer.submit(prompt=prompt, target_provider=target_provider, **kwargs)
    try:
        return await session.wait(timeout)
    except asyncio.TimeoutError:
        session.cancel(f"No result within {timeout}s")
        raise
