"""Tests for the per-job state machine and event routing."""

import asyncio

import pytest

from conftest import encrypted_for, feedback_event, provider_event
from dvmpay.builder import JobRequestBuilder
from dvmpay.errors import JobFailedError
from dvmpay.events import SchnorrSigner
from dvmpay.payments.coordinator import PaymentCoordinator
from dvmpay.schema import JobState, PaymentStatus, UpdateKind
from dvmpay.session import DECRYPT_PLACEHOLDER, JobSession
from dvmpay.subscriptions import SubscriptionHandle


@pytest.fixture
def make_session(consumer_identity, services):
    """Session in the listening state, wired to a coordinator like JobConsumer does."""
    signer = SchnorrSigner()

    def make(target=None, threshold=10):
        request = JobRequestBuilder(signer).build(consumer_identity, prompt="hello", target_provider=target)
        sessions = {}
        coordinator = PaymentCoordinator(
            services,
            auto_pay_threshold_sats=threshold,
            on_update=lambda s: sessions[s.job_id].payment_updated(s),
        )
        session = JobSession(request, services, coordinator, verify=signer.verify)
        sessions[request.id] = session
        session.mark_sent()
        session.listen(SubscriptionHandle(request.id))
        return session, coordinator

    return make


def _snapshot(session):
    return (session.state, session.output, session.error, list(session.updates), set(session._seen))


class TestAuthorCheck:
    @pytest.mark.asyncio
    async def test_foreign_author_changes_nothing(self, make_session, provider_identity, other_identity, telemetry):
        """Event from B on a job targeted at A: state unchanged, one telemetry record."""
        session, _ = make_session(provider_identity.public_key)
        before = _snapshot(session)
        telemetry.records.clear()

        event = provider_event(other_identity, 6050, session.job_id, content="spoofed")
        assert session.handle_event(event) is False

        assert _snapshot(session) == before
        assert telemetry.actions() == ["untargeted_event_rejected"]

    @pytest.mark.asyncio
    async def test_any_author_on_public_job(self, make_session, other_identity):
        session, _ = make_session()
        assert session.handle_event(provider_event(other_identity, 6050, session.job_id, content="ok"))
        assert session.state == JobState.COMPLETED
        assert session.output == "ok"


class TestEventFiltering:
    @pytest.mark.asyncio
    async def test_other_job_reference(self, make_session, provider_identity, telemetry):
        session, _ = make_session()
        assert not session.handle_event(provider_event(provider_identity, 6050, "cc" * 32, content="x"))
        assert session.state == JobState.LISTENING
        assert "event_not_for_job" in telemetry.actions()

    @pytest.mark.asyncio
    async def test_malformed_event(self, make_session, telemetry):
        session, _ = make_session()
        assert not session.handle_event({"kind": "??"})
        assert "protocol_violation" in telemetry.actions()

    @pytest.mark.asyncio
    async def test_bad_signature(self, make_session, provider_identity, telemetry):
        session, _ = make_session()
        event = provider_event(provider_identity, 6050, session.job_id, content="x")
        event["sig"] = "00" * 64
        assert not session.handle_event(event)
        assert session.state == JobState.LISTENING
        assert "invalid_signature" in telemetry.actions()

    @pytest.mark.asyncio
    async def test_duplicate_delivery_applied_once(self, make_session, provider_identity):
        session, _ = make_session()
        event = feedback_event(provider_identity, session.job_id, "processing", "warming up")
        assert session.handle_event(event)
        assert not session.handle_event(event)
        assert len([u for u in session.updates if u.kind == UpdateKind.STATUS]) == 1

    @pytest.mark.asyncio
    async def test_unknown_kind_ignored(self, make_session, provider_identity):
        session, _ = make_session()
        assert not session.handle_event(provider_event(provider_identity, 1, session.job_id, content="note"))
        assert session.state == JobState.LISTENING

    @pytest.mark.asyncio
    async def test_feedback_without_status(self, make_session, provider_identity, telemetry):
        session, _ = make_session()
        assert not session.handle_event(provider_event(provider_identity, 7000, session.job_id))
        assert "protocol_violation" in telemetry.actions()

    @pytest.mark.asyncio
    async def test_payment_required_without_invoice(self, make_session, provider_identity, telemetry):
        session, _ = make_session()
        event = feedback_event(provider_identity, session.job_id, "payment-required", tags=[["amount", "1000"]])
        assert not session.handle_event(event)
        assert session.state == JobState.LISTENING
        assert "protocol_violation" in telemetry.actions()


class TestFeedback:
    @pytest.mark.asyncio
    async def test_error_fails_job(self, make_session, provider_identity):
        session, _ = make_session(provider_identity.public_key)
        session.handle_event(feedback_event(provider_identity, session.job_id, "error", "model overloaded"))
        assert session.state == JobState.FAILED
        assert session.error == "model overloaded"
        with pytest.raises(JobFailedError, match="overloaded"):
            await session.wait(timeout=1)

    @pytest.mark.asyncio
    async def test_success_completes(self, make_session, provider_identity):
        session, _ = make_session()
        session.handle_event(feedback_event(provider_identity, session.job_id, "success"))
        assert session.state == JobState.COMPLETED

    @pytest.mark.asyncio
    async def test_processing_is_informational(self, make_session, provider_identity):
        session, _ = make_session()
        session.handle_event(feedback_event(provider_identity, session.job_id, "processing", "queued"))
        assert session.state == JobState.LISTENING
        assert session.updates[-1].message == "queued"
        assert session.updates[-1].status == "processing"

    @pytest.mark.asyncio
    async def test_partial_output(self, make_session, provider_identity):
        session, _ = make_session()
        session.handle_event(feedback_event(provider_identity, session.job_id, "partial", content="first half"))
        assert session.updates[-1].kind == UpdateKind.PARTIAL
        assert session.updates[-1].message == "first half"
        assert session.state == JobState.LISTENING

    @pytest.mark.asyncio
    async def test_encrypted_feedback_content(self, make_session, provider_identity, consumer_identity):
        session, _ = make_session(provider_identity.public_key)
        content = encrypted_for(provider_identity, consumer_identity.public_key, "step 1 of 3")
        event = feedback_event(
            provider_identity, session.job_id, "partial", tags=[["encrypted"]], content=content
        )
        session.handle_event(event)
        assert session.updates[-1].message == "step 1 of 3"


class TestPaymentRequired:
    @pytest.mark.asyncio
    async def test_auto_pay_flow(self, make_session, provider_identity, executor):
        """payment-required → paying; later feedback after payment → paid."""
        session, coordinator = make_session(provider_identity.public_key)
        pr = feedback_event(
            provider_identity, session.job_id, "payment-required", tags=[["amount", "3000", "lnbc30n1x"]]
        )
        session.handle_event(pr)
        assert session.state == JobState.PAYING
        assert session.invoice == "lnbc30n1x"
        await coordinator.wait_idle()
        assert executor.calls[0][0] == "lnbc30n1x"
        assert session.payment.status == PaymentStatus.PAID
        assert session.state == JobState.PAYING

        session.handle_event(feedback_event(provider_identity, session.job_id, "processing"))
        assert session.state == JobState.PAID
        assert JobState.PAYMENT_REQUIRED in session.history

    @pytest.mark.asyncio
    async def test_msats_rounded_up(self, make_session, provider_identity):
        session, coordinator = make_session(threshold=1)
        pr = feedback_event(
            provider_identity, session.job_id, "payment-required", tags=[["amount", "1500", "lnbc15n1x"]]
        )
        session.handle_event(pr)
        assert coordinator.state_for(session.job_id).amount_sats == 2
        assert session.state == JobState.PAYMENT_REQUIRED

    @pytest.mark.asyncio
    async def test_repeated_signal_pays_once(self, make_session, provider_identity, executor):
        session, coordinator = make_session()
        tags = [["amount", "3000", "lnbc30n1x"]]
        first = feedback_event(provider_identity, session.job_id, "payment-required", tags=tags)
        second = feedback_event(provider_identity, session.job_id, "payment-required", "again", tags=tags)
        session.handle_event(first)
        session.handle_event(second)
        await coordinator.wait_idle()
        assert len(executor.calls) == 1
        assert session.state == JobState.PAYING

    @pytest.mark.asyncio
    async def test_payment_failure_leaves_job_retryable(self, make_session, provider_identity, services):
        from conftest import FakeExecutor
        from dvmpay.errors import NetworkFailure

        services.bind_payment_executor(FakeExecutor(error=NetworkFailure("no route")))
        session, coordinator = make_session()
        session.handle_event(
            feedback_event(provider_identity, session.job_id, "payment-required", tags=[["amount", "3000", "lnbc"]])
        )
        await coordinator.wait_idle()
        assert session.payment.status == PaymentStatus.FAILED
        assert session.state == JobState.PAYMENT_REQUIRED
        assert not session.is_terminal

    @pytest.mark.asyncio
    async def test_large_invoice_deferred(self, make_session, provider_identity, executor):
        session, coordinator = make_session()
        session.handle_event(
            feedback_event(provider_identity, session.job_id, "payment-required", tags=[["amount", "50000", "lnbc500n"]])
        )
        await coordinator.wait_idle()
        assert executor.calls == []
        assert session.state == JobState.PAYMENT_REQUIRED
        assert session.payment.status == PaymentStatus.PENDING


class TestResult:
    @pytest.mark.asyncio
    async def test_encrypted_result_decrypted(self, make_session, provider_identity, consumer_identity):
        session, _ = make_session(provider_identity.public_key)
        content = encrypted_for(provider_identity, consumer_identity.public_key, "the answer is 42")
        session.handle_event(provider_event(provider_identity, 6050, session.job_id, [["encrypted"]], content))
        assert session.state == JobState.COMPLETED
        assert session.output == "the answer is 42"
        assert await session.wait(timeout=1) == "the answer is 42"

    @pytest.mark.asyncio
    async def test_undecryptable_result_is_placeholder(self, make_session, provider_identity, other_identity, telemetry):
        """Decrypt failure shows a placeholder and still completes the job."""
        session, _ = make_session(provider_identity.public_key)
        wrong = encrypted_for(provider_identity, other_identity.public_key, "meant for someone else")
        session.handle_event(provider_event(provider_identity, 6050, session.job_id, [["encrypted"]], wrong))
        assert session.output == DECRYPT_PLACEHOLDER
        assert session.state == JobState.COMPLETED
        assert "nip04_decrypt_error" in telemetry.actions()

    @pytest.mark.asyncio
    async def test_result_amount_kept(self, make_session, provider_identity):
        session, _ = make_session()
        session.handle_event(
            provider_event(provider_identity, 6050, session.job_id, [["amount", "2000", "lnbc20n1r"]], "done")
        )
        assert session.result_amount_msats == 2000
        assert session.result_invoice == "lnbc20n1r"

    @pytest.mark.asyncio
    async def test_nothing_routed_after_terminal(self, make_session, provider_identity):
        session, _ = make_session()
        session.handle_event(provider_event(provider_identity, 6050, session.job_id, content="first"))
        assert not session.handle_event(provider_event(provider_identity, 6050, session.job_id, content="second"))
        assert session.output == "first"


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_fails_and_closes(self, make_session, telemetry):
        session, _ = make_session()
        handle = session._handle
        session.cancel("user closed the pane")
        assert session.state == JobState.FAILED
        assert session.cancelled
        assert session.error == "user closed the pane"
        assert handle.closed
        assert "job_cancelled" in telemetry.actions()

    @pytest.mark.asyncio
    async def test_cancel_does_not_stop_payment(self, make_session, provider_identity, services, telemetry):
        """In-flight payment still completes and is recorded."""
        from conftest import FakeExecutor

        slow = FakeExecutor(delay=0.01)
        services.bind_payment_executor(slow)
        session, coordinator = make_session()
        session.handle_event(
            feedback_event(provider_identity, session.job_id, "payment-required", tags=[["amount", "3000", "lnbc"]])
        )
        session.cancel()
        await coordinator.wait_idle()
        assert coordinator.state_for(session.job_id).status == PaymentStatus.PAID
        assert "payment_success" in telemetry.actions()
        assert session.state == JobState.FAILED

    @pytest.mark.asyncio
    async def test_listen_after_cancel(self, consumer_identity, services):
        """A session cancelled before it listens closes the handle and starts nothing."""
        request = JobRequestBuilder(SchnorrSigner()).build(consumer_identity, prompt="hello")
        session = JobSession(request, services, PaymentCoordinator(services))
        session.mark_sent()
        session.cancel("closed while publishing")

        handle = SubscriptionHandle(request.id)
        session.listen(handle)
        assert handle.closed
        assert session.state == JobState.FAILED
        assert session._pump is None


class TestDelivery:
    @pytest.mark.asyncio
    async def test_deliver_from_other_thread(self, make_session, provider_identity):
        """Events pushed from a transport thread are applied on the loop."""
        session, _ = make_session()
        event = provider_event(provider_identity, 6050, session.job_id, content="threaded")
        await asyncio.get_running_loop().run_in_executor(None, session.deliver, event)
        assert await session.wait(timeout=1) == "threaded"

    @pytest.mark.asyncio
    async def test_stream_yields_updates_until_terminal(self, make_session, provider_identity):
        session, _ = make_session()
        session.deliver(feedback_event(provider_identity, session.job_id, "processing", "working"))
        session.deliver(provider_event(provider_identity, 6050, session.job_id, content="done"))
        messages = [u.message async for u in session.stream()]
        assert messages == ["working", "done"]
