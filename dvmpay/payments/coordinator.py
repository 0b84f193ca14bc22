"""
Auto-pay coordinator: reacts to payment-required feedback.

Rules:
- One payment attempt per distinct (job, invoice) from the auto path, no
  matter how often the provider repeats the payment-required signal.
- Invoices up to auto_pay_threshold_sats are paid immediately; larger ones
  stay Pending until the caller calls pay().
- Success does not complete the job: the provider still has to deliver.
- Failure leaves the invoice retryable through pay().
- The executor and telemetry sink are looked up from the registry each time
  they are used. Completion is recorded even if the job was cancelled.
"""

import asyncio
import logging
from typing import Callable, Dict, List, Optional, Set, Tuple

from dvmpay.errors import JobNotFoundError, PaymentError, PaymentTimeout
from dvmpay.schema import PaymentState, PaymentStatus
from dvmpay.services import ServiceRegistry
from dvmpay.telemetry import record_safely

logger = logging.getLogger(__name__)

DEFAULT_AUTO_PAY_THRESHOLD_SATS = 10
DEFAULT_MAX_FEE_SATS = 10
DEFAULT_PAYMENT_TIMEOUT_SECONDS = 60


class PaymentCoordinator:
    def __init__(
        self,
        services: ServiceRegistry,
        auto_pay_threshold_sats: int = DEFAULT_AUTO_PAY_THRESHOLD_SATS,
        max_fee_sats: int = DEFAULT_MAX_FEE_SATS,
        timeout_seconds: int = DEFAULT_PAYMENT_TIMEOUT_SECONDS,
        on_update: Optional[Callable[[PaymentState], None]] = None,
    ):
        self._services = services
        self.auto_pay_threshold_sats = auto_pay_threshold_sats
        self.max_fee_sats = max_fee_sats
        self.timeout_seconds = timeout_seconds
        self._on_update = on_update
        self._states: Dict[Tuple[str, str], PaymentState] = {}
        self._latest: Dict[str, PaymentState] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._forgotten: Set[str] = set()

    def state_for(self, job_id: str, invoice: Optional[str] = None) -> Optional[PaymentState]:
        """State for (job, invoice); with no invoice, the job's most recent one."""
        if invoice is None:
            return self._latest.get(job_id)
        return self._states.get((job_id, invoice))

    def states(self, job_id: str) -> List[PaymentState]:
        return [s for (j, _), s in self._states.items() if j == job_id]

    def on_payment_required(self, job_id: str, invoice: str, amount_sats: int) -> PaymentState:
        """
        Handle a payment-required signal. Returns the PaymentState for this
        invoice; an existing one is returned untouched.

        Must be called from a running event loop when the amount is auto-payable.
        """
        telemetry = self._services.telemetry()
        existing = self._states.get((job_id, invoice))
        if existing is not None and existing.status != PaymentStatus.NONE:
            record_safely(telemetry, "payment_duplicate_ignored", job_id, existing.status.value)
            return existing

        state = existing or PaymentState(job_id=job_id, invoice=invoice, amount_sats=amount_sats)
        state.amount_sats = amount_sats
        self._states[(job_id, invoice)] = state
        self._latest[job_id] = state
        self._set(state, PaymentStatus.PENDING)
        record_safely(telemetry, "payment_required", job_id, str(amount_sats))

        if amount_sats > self.auto_pay_threshold_sats:
            logger.info(
                f"Job {job_id[:8]}: {amount_sats} sats exceeds auto-pay threshold "
                f"{self.auto_pay_threshold_sats}; waiting for explicit payment"
            )
            record_safely(telemetry, "auto_payment_deferred", job_id, f"{amount_sats} sats")
            return state

        record_safely(telemetry, "auto_payment_triggered", job_id, f"{amount_sats} sats")
        self._start(state)
        return state

    def pay(self, job_id: str, invoice: Optional[str] = None) -> PaymentState:
        """
        Caller-triggered payment for a deferred (Pending) or failed invoice.
        Paying / Paid invoices are returned unchanged.

        Raises:
            JobNotFoundError: No payment-required signal seen for this job/invoice
        """
        state = self.state_for(job_id, invoice)
        if state is None:
            raise JobNotFoundError(f"No payment request recorded for job {job_id}")
        if state.status in (PaymentStatus.PENDING, PaymentStatus.FAILED):
            self._start(state)
        else:
            record_safely(self._services.telemetry(), "payment_duplicate_ignored", job_id, state.status.value)
        return state

    def forget(self, job_id: str) -> None:
        """
        Drop all payment state for a finished job. If an attempt is still in
        flight, the state is dropped once its outcome has been recorded.
        """
        if any(s.status == PaymentStatus.PAYING for s in self.states(job_id)):
            self._forgotten.add(job_id)
            return
        self._drop(job_id)

    async def wait_idle(self) -> None:
        """Wait for all in-flight payment attempts to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _drop(self, job_id: str) -> None:
        self._forgotten.discard(job_id)
        self._latest.pop(job_id, None)
        for key in [k for k in self._states if k[0] == job_id]:
            del self._states[key]

    def _start(self, state: PaymentState) -> None:
        self._set(state, PaymentStatus.PAYING)
        task = asyncio.ensure_future(self._execute(state))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _execute(self, state: PaymentState) -> None:
        executor = self._services.payment_executor()
        record_safely(self._services.telemetry(), "payment_start", state.job_id, str(state.amount_sats))
        if executor is None:
            self._set(state, PaymentStatus.FAILED, "No payment executor bound (wallet not available)")
            record_safely(self._services.telemetry(), "payment_error", state.job_id, state.error)
            if state.job_id in self._forgotten:
                self.forget(state.job_id)
            return

        try:
            receipt = await asyncio.wait_for(
                executor.pay(state.invoice, self.max_fee_sats, self.timeout_seconds),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            error: Optional[PaymentError] = PaymentTimeout(f"Payment timed out after {self.timeout_seconds}s")
        except PaymentError as e:
            error = e
        except Exception as e:
            logger.exception(f"Payment executor raised for job {state.job_id[:8]}")
            error = PaymentError(f"Payment failed: {e}")
        else:
            error = None

        # re-resolve: the sink may have been swapped while the payment was in flight
        telemetry = self._services.telemetry()
        if error is None:
            state.payment_hash = receipt.payment_hash
            self._set(state, PaymentStatus.PAID)
            record_safely(telemetry, "payment_success", state.job_id, receipt.payment_hash)
        else:
            self._set(state, PaymentStatus.FAILED, str(error) or type(error).__name__)
            record_safely(telemetry, "payment_error", state.job_id, f"{type(error).__name__}: {error}")

        if state.job_id in self._forgotten:
            self.forget(state.job_id)

    def _set(self, state: PaymentState, status: PaymentStatus, error: Optional[str] = None) -> None:
        state.set_status(status, error)
        if self._on_update is not None:
            try:
                self._on_update(state)
            except Exception:
                logger.exception(f"Payment update listener failed for job {state.job_id[:8]}")
