"""
JobSession: lifecycle of one published job request.

States:
  idle → sent → listening → [payment-required → paying → paid] → completed
  sent | listening | payment-required | paying | paid → failed

Events from the relays are pushed into a per-session queue and applied one at
a time by handle_event(), which is synchronous: a transition is never
interleaved with another delivery for the same job. Per-event problems
(malformed tags, wrong author, bad signature, undecryptable content) are
raised inside the router and caught at its boundary; they never end the job.

On entering completed or failed the session closes its subscription and
ignores anything delivered afterwards.
"""

import asyncio
import logging
from typing import AsyncIterator, Callable, List, Optional, Set, Tuple

from dvmpay.crypto import decrypt, looks_like_envelope
from dvmpay.errors import (
    DecryptError,
    DvmPayError,
    InvalidTransitionError,
    JobFailedError,
    ProtocolViolation,
    UnauthenticatedEvent,
)
from dvmpay.events import FEEDBACK_KIND, NostrEvent
from dvmpay.payments import msats_to_sats
from dvmpay.payments.coordinator import PaymentCoordinator
from dvmpay.schema import (
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    FeedbackStatus,
    JobFeedback,
    JobState,
    JobUpdate,
    PaymentState,
    PaymentStatus,
    SignedJobRequest,
    UpdateKind,
)
from dvmpay.services import ServiceRegistry
from dvmpay.subscriptions import SubscriptionHandle
from dvmpay.telemetry import record_safely

logger = logging.getLogger(__name__)

DECRYPT_PLACEHOLDER = "[Could not decrypt provider response]"

_STOP = object()


class JobSession:
    def __init__(
        self,
        request: SignedJobRequest,
        services: ServiceRegistry,
        payments: PaymentCoordinator,
        verify: Optional[Callable[[NostrEvent], bool]] = None,
        on_terminal: Optional[Callable[["JobSession"], None]] = None,
    ):
        self.request = request
        self.state = JobState.IDLE
        self.output: Optional[str] = None
        self.error: Optional[str] = None
        self.invoice: Optional[str] = None
        self.result_event: Optional[NostrEvent] = None
        self.result_amount_msats: Optional[int] = None
        self.result_invoice: Optional[str] = None
        self.cancelled = False
        self.updates: List[JobUpdate] = []
        self.history: List[JobState] = []
        self._services = services
        self._payments = payments
        self._verify = verify
        self._on_terminal = on_terminal
        self._handle: Optional[SubscriptionHandle] = None
        self._seen: Set[str] = set()
        self._rejected: Set[Tuple[str, str]] = set()
        self._listeners: List[asyncio.Queue] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._pump: Optional[asyncio.Task] = None
        self._done = asyncio.Event()

    @property
    def job_id(self) -> str:
        return self.request.id

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def payment(self) -> Optional[PaymentState]:
        return self._payments.state_for(self.job_id)

    # lifecycle

    def mark_sent(self) -> None:
        self._transition(JobState.SENT)

    def fail(self, reason: str) -> None:
        """Fail the job (publish failure, provider error). No-op once terminal."""
        if self.is_terminal:
            return
        self.error = reason
        self._emit(UpdateKind.ERROR, reason)
        self._transition(JobState.FAILED)

    def cancel(self, reason: str = "Cancelled by caller") -> None:
        """
        Close the subscription now and fail the job. An in-flight payment is
        not interrupted; its outcome is still recorded by the coordinator.
        """
        if self.is_terminal:
            return
        self.cancelled = True
        record_safely(self._services.telemetry(), "job_cancelled", self.job_id, reason)
        self.fail(reason)

    def listen(self, handle: SubscriptionHandle) -> None:
        """Attach the subscription and start applying its events. Needs a running loop."""
        if self.is_terminal:
            handle.close()
            return
        self._handle = handle
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._pump = asyncio.ensure_future(self._run_pump())
        self._transition(JobState.LISTENING)
        handle.on_event(self.deliver)
        handle.on_end_of_stored_events(self._on_eose)

    def deliver(self, raw) -> None:
        """Enqueue a relay event. Safe to call from any thread."""
        if self._queue is None or self._loop is None:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._queue.put_nowait(raw)
        else:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, raw)

    async def drain(self) -> None:
        """Wait until every event delivered so far has been applied."""
        if self._queue is not None and self._pump is not None and not self._pump.done():
            await self._queue.join()

    async def wait(self, timeout: Optional[float] = None) -> Optional[str]:
        """
        Wait for a terminal state. Returns the output.

        Raises:
            JobFailedError: The job failed or was cancelled
            asyncio.TimeoutError: Not terminal within timeout
        """
        await asyncio.wait_for(self._done.wait(), timeout)
        if self.state == JobState.FAILED:
            raise JobFailedError(self.error or "Job failed")
        return self.output

    async def stream(self) -> AsyncIterator[JobUpdate]:
        """Yield every update (past ones first) until the job is terminal."""
        queue: asyncio.Queue = asyncio.Queue()
        for update in self.updates:
            queue.put_nowait(update)
        if self.is_terminal:
            queue.put_nowait(_STOP)
        else:
            self._listeners.append(queue)
        try:
            while True:
                item = await queue.get()
                if item is _STOP:
                    return
                yield item
        finally:
            if queue in self._listeners:
                self._listeners.remove(queue)

    # routing

    def handle_event(self, raw) -> bool:
        """Apply one event. Returns True if it changed the session."""
        telemetry = self._services.telemetry()
        try:
            event = NostrEvent.from_wire(raw)
        except ProtocolViolation as e:
            logger.warning(f"Job {self.job_id[:8]}: dropped malformed event: {e}")
            record_safely(telemetry, "protocol_violation", self.job_id, str(e))
            return False

        if self.is_terminal:
            logger.debug(f"Job {self.job_id[:8]} is {self.state.value}; ignoring {event.id[:8]}")
            return False
        if self.job_id not in event.tag_values("e"):
            record_safely(telemetry, "event_not_for_job", self.job_id, event.id)
            return False

        if event.id in self._seen:
            return False

        try:
            self._authenticate(event)
        except UnauthenticatedEvent as e:
            # id is unverified here; dedupe on (id, author)
            if (event.id, event.pubkey) not in self._rejected:
                self._rejected.add((event.id, event.pubkey))
                logger.warning(f"Job {self.job_id[:8]}: {e}")
                record_safely(telemetry, "untargeted_event_rejected", self.job_id, event.pubkey)
            return False

        if self._verify is not None and not self._verify(event):
            logger.warning(f"Job {self.job_id[:8]}: bad signature on {event.id[:8]}")
            record_safely(telemetry, "invalid_signature", self.job_id, event.id)
            return False

        self._seen.add(event.id)

        record_safely(telemetry, "job_update_received", self.job_id, f"kind={event.kind}")
        try:
            return self._route(event)
        except ProtocolViolation as e:
            logger.warning(f"Job {self.job_id[:8]}: {e}")
            record_safely(telemetry, "protocol_violation", self.job_id, str(e))
        except DvmPayError as e:
            logger.warning(f"Job {self.job_id[:8]}: event {event.id[:8]} not applied: {e}")
        return False

    def payment_updated(self, payment: PaymentState) -> None:
        """Called by the coordinator on every PaymentState change for this job."""
        if self.is_terminal or payment.invoice != self.invoice:
            return
        if payment.status == PaymentStatus.PENDING:
            self._emit(UpdateKind.PAYMENT, f"Payment required: {payment.amount_sats} sats")
        elif payment.status == PaymentStatus.PAYING:
            self._emit(UpdateKind.PAYMENT, f"Paying {payment.amount_sats} sats")
            if self.state == JobState.PAYMENT_REQUIRED:
                self._transition(JobState.PAYING)
        elif payment.status == PaymentStatus.PAID:
            self._emit(UpdateKind.PAYMENT, "Payment sent; waiting for the provider")
        elif payment.status == PaymentStatus.FAILED:
            self._emit(UpdateKind.PAYMENT, f"Payment failed: {payment.error}")
            if self.state == JobState.PAYING:
                self._transition(JobState.PAYMENT_REQUIRED)

    def _authenticate(self, event: NostrEvent) -> None:
        target = self.request.target_provider_pubkey
        if target and event.pubkey != target:
            raise UnauthenticatedEvent(f"event {event.id[:8]} from {event.pubkey[:8]}, expected {target[:8]}")

    def _route(self, event: NostrEvent) -> bool:
        if event.kind == FEEDBACK_KIND:
            return self._on_feedback(event)
        if event.kind == self.request.result_kind:
            return self._on_result(event)
        logger.info(f"Job {self.job_id[:8]}: ignoring event of kind {event.kind}")
        return False

    def _on_feedback(self, event: NostrEvent) -> bool:
        feedback = JobFeedback.from_event(event, self._read_content(event))
        if not feedback.status:
            raise ProtocolViolation(f"feedback {event.id[:8]} has no status tag")

        if feedback.status == FeedbackStatus.PAYMENT_REQUIRED.value:
            if not feedback.invoice or feedback.amount_msats is None:
                raise ProtocolViolation(f"payment-required {event.id[:8]} has no amount/invoice")
            return self._on_payment_required(feedback)

        if feedback.status == FeedbackStatus.ERROR.value:
            self.fail(feedback.status_extra or feedback.content or "Provider reported an error")
            return True

        self._after_payment()
        if feedback.status == FeedbackStatus.PARTIAL.value:
            self._emit(UpdateKind.PARTIAL, feedback.content, event, feedback.status)
            return True

        message = feedback.status_extra or feedback.content or feedback.status
        self._emit(UpdateKind.STATUS, message, event, feedback.status)
        if feedback.status == FeedbackStatus.SUCCESS.value:
            self._transition(JobState.COMPLETED)
        return True

    def _on_payment_required(self, feedback: JobFeedback) -> bool:
        sats = msats_to_sats(feedback.amount_msats)
        known = self._payments.state_for(self.job_id, feedback.invoice)
        if known is None:
            self.invoice = feedback.invoice
            self._transition(JobState.PAYMENT_REQUIRED)
        # repeats go to the coordinator as well; it ignores them
        self._payments.on_payment_required(self.job_id, feedback.invoice, sats)
        return known is None

    def _on_result(self, event: NostrEvent) -> bool:
        amount = event.tag("amount")
        if amount and len(amount) > 1 and amount[1].isdigit():
            self.result_amount_msats = int(amount[1])
            self.result_invoice = amount[2] if len(amount) > 2 and amount[2] else None
        self.output = self._read_content(event)
        self.result_event = event
        self._emit(UpdateKind.OUTPUT, self.output, event)
        self._transition(JobState.COMPLETED)
        return True

    def _after_payment(self) -> None:
        # provider is talking again after our payment went through
        payment = self.payment
        if self.state == JobState.PAYING and payment is not None and payment.status == PaymentStatus.PAID:
            self._transition(JobState.PAID)

    def _read_content(self, event: NostrEvent) -> str:
        secret = self.request.shared_secret
        if secret is None or not event.content:
            return event.content
        if not event.has_tag("encrypted") and not looks_like_envelope(event.content):
            return event.content
        try:
            return decrypt(event.content, secret)
        except DecryptError as e:
            logger.warning(f"Job {self.job_id[:8]}: could not decrypt {event.id[:8]}: {e}")
            record_safely(self._services.telemetry(), "nip04_decrypt_error", self.job_id, event.id)
            return DECRYPT_PLACEHOLDER

    # state

    def _transition(self, new_state: JobState) -> None:
        if new_state == self.state:
            return
        if new_state not in VALID_TRANSITIONS[self.state]:
            raise InvalidTransitionError(f"Job {self.job_id[:8]}: {self.state.value} -> {new_state.value}")
        logger.info(f"Job {self.job_id[:8]}: {self.state.value} -> {new_state.value}")
        self.history.append(self.state)
        self.state = new_state
        if new_state in TERMINAL_STATES:
            self._enter_terminal()

    def _enter_terminal(self) -> None:
        if self._handle is not None:
            self._handle.close()
        if self._queue is not None and self._pump is not None and not self._pump.done():
            self._queue.put_nowait(_STOP)
        for queue in self._listeners:
            queue.put_nowait(_STOP)
        self._listeners.clear()
        self._done.set()
        if not self.cancelled:
            action = "job_completed" if self.state == JobState.COMPLETED else "job_failed"
            record_safely(self._services.telemetry(), action, self.job_id, self.error)
        if self._on_terminal is not None:
            try:
                self._on_terminal(self)
            except Exception:
                logger.exception(f"Terminal callback failed for job {self.job_id[:8]}")

    def _emit(
        self,
        kind: UpdateKind,
        message: str,
        event: Optional[NostrEvent] = None,
        status: Optional[str] = None,
    ) -> None:
        kwargs = {"created_at": event.created_at} if event is not None else {}
        update = JobUpdate(kind=kind, message=message, event_id=event.id if event else None, status=status, **kwargs)
        self.updates.append(update)
        for queue in self._listeners:
            queue.put_nowait(update)

    def _on_eose(self, label: str) -> None:
        record_safely(self._services.telemetry(), "subscription_eose", self.job_id, label)

    async def _run_pump(self) -> None:
        queue = self._queue
        while True:
            raw = await queue.get()
            try:
                if raw is _STOP:
                    break
                self.handle_event(raw)
            except Exception:
                logger.exception(f"Unhandled error routing event for job {self.job_id[:8]}")
            finally:
                queue.task_done()
        while not queue.empty():
            queue.get_nowait()
            queue.task_done()
