"""Integration tests for the payment engine facade."""

import asyncio

import pytest
from sqlalchemy import select, update

from payment_engine.engine.orchestrator import PaymentEngine
from payment_engine.errors import (
    Conflict,
    NotFound,
    ProviderRejected,
    ProviderTimeout,
    RetriesExhausted,
    UnsupportedMethod,
    ValidationError,
)
from payment_engine.models.enums import ConfirmationStatus, NotificationKind, PaymentStatus
from payment_engine.models.payment import AuditLog, Order, PaymentIntent
from payment_engine.providers import CardDetails, ConfirmationOutcome, PaymentContext
from payment_engine.providers.redirect_poll import payment_id_from_ref

SUCCEEDED = ConfirmationOutcome(status=ConfirmationStatus.SUCCEEDED)
DECLINED_CARD = CardDetails(number="4000000000000002", exp_month=12, exp_year=2030, cvc="123")
GOOD_CARD = CardDetails(number="4242424242424242", exp_month=12, exp_year=2030, cvc="123")


async def _order(db, order_id) -> Order:
    async with db() as session:
        return await session.get(Order, order_id)


async def _audit_actions(db, intent_id=None):
    async with db() as session:
        query = select(AuditLog).order_by(AuditLog.id)
        if intent_id:
            query = query.where(AuditLog.intent_id == intent_id)
        return [log.action for log in (await session.execute(query)).scalars().all()]


def _count_retrieves(monkeypatch, gateway, settle_on=None):
    """Wrap gateway.retrieve; optionally settle the checkout on the Nth call."""
    original = gateway.retrieve
    calls = []

    async def retrieve(payment_id):
        calls.append(payment_id)
        if settle_on is not None and len(calls) == settle_on:
            gateway.settle(payment_id, succeeded=True)
        return await original(payment_id)

    monkeypatch.setattr(gateway, "retrieve", retrieve)
    return calls


class TestCash:
    @pytest.mark.asyncio
    async def test_completes_synchronously(self, db, engine, notifier):
        result = await engine.request_payment("ORD-1001", "cash")

        assert result.ok
        intent = result.unwrap()
        assert intent.status == "completed"
        assert intent.attempts == 1
        assert intent.provider_ref.startswith("CASH-")
        assert engine.poller.active(intent.id) is None

        order = await _order(db, "ORD-1001")
        assert order.is_paid
        assert order.payment_id == intent.id
        assert len(notifier.of(NotificationKind.SUCCESS)) == 1

    @pytest.mark.asyncio
    async def test_second_request_after_completion_conflicts(self, engine):
        await engine.request_payment("ORD-1001", "cash")
        result = await engine.request_payment("ORD-1001", "cash")

        assert not result.ok
        assert isinstance(result.error, Conflict)
        assert result.intent is None
        with pytest.raises(Conflict):
            result.unwrap()

    @pytest.mark.asyncio
    async def test_trace(self, engine):
        intent = (await engine.request_payment("ORD-1001", "cash")).unwrap()
        trace = await engine.get_trace(intent.id)

        assert [(t.from_status, t.to_status) for t in trace.transitions] == [
            ("created", "processing"),
            ("processing", "completed"),
        ]
        actions = [a.action for a in trace.audit]
        assert actions[:2] == ["intent_created", "provider_selected"]
        assert "payment_completed" in actions


class TestIdempotence:
    @pytest.mark.asyncio
    async def test_repeat_request_returns_open_intent(self, engine, embedded_gateway):
        first = (await engine.request_payment("ORD-1001", "embedded_form_provider")).unwrap()
        second = (await engine.request_payment("ORD-1001", "embedded_form_provider")).unwrap()

        assert first.id == second.id
        assert second.status == "requires_action"
        assert second.attempts == 1
        assert embedded_gateway.calls == 1

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_intent(self, engine, embedded_gateway):
        results = await asyncio.gather(*(
            engine.request_payment("ORD-1001", "embedded_form_provider") for _ in range(5)
        ))

        assert all(r.ok for r in results)
        assert len({r.intent.id for r in results}) == 1
        assert embedded_gateway.calls == 1

    @pytest.mark.asyncio
    async def test_amount_fallback_frozen(self, db, engine):
        intent = (await engine.request_payment("ORD-1001", "embedded_form_provider")).unwrap()
        assert intent.amount == 100.50

        async with db() as session:
            await session.execute(update(Order).where(Order.id == "ORD-1001").values(total_amount=120.0))
            await session.commit()

        again = (await engine.request_payment("ORD-1001", "embedded_form_provider")).unwrap()
        assert again.id == intent.id
        assert again.amount == 100.50

    @pytest.mark.asyncio
    async def test_different_explicit_amount_conflicts(self, engine):
        await engine.request_payment("ORD-1001", "embedded_form_provider")
        result = await engine.request_payment(
            "ORD-1001", "embedded_form_provider", PaymentContext(amount=50.0)
        )
        assert isinstance(result.error, Conflict)


class TestValidation:
    @pytest.mark.asyncio
    async def test_unsupported_method(self, engine):
        result = await engine.request_payment("ORD-1001", "crypto")
        assert isinstance(result.error, UnsupportedMethod)
        assert not result.retryable

    @pytest.mark.asyncio
    async def test_zero_total(self, engine):
        result = await engine.request_payment("ORD-9001", "cash")
        assert isinstance(result.error, ValidationError)

    @pytest.mark.asyncio
    async def test_unknown_order(self, engine):
        result = await engine.request_payment("ORD-404", "cash")
        assert isinstance(result.error, NotFound)

    @pytest.mark.asyncio
    async def test_unknown_intent(self, engine):
        assert isinstance((await engine.process_payment("nope")).error, NotFound)
        assert isinstance((await engine.cancel_payment("nope")).error, NotFound)
        assert isinstance((await engine.get_payment("nope")).error, NotFound)

    @pytest.mark.asyncio
    async def test_missing_card_leaves_intent_untouched(self, engine, card_gateway):
        result = await engine.request_payment("ORD-1001", "direct_card")

        assert isinstance(result.error, ValidationError)
        assert result.intent.status == "created"
        assert result.intent.attempts == 0
        assert card_gateway.calls == 0

        retried = await engine.process_payment(result.intent.id, context=PaymentContext(card=GOOD_CARD))
        assert retried.unwrap().status == "completed"


class TestDirectCardRetries:
    @pytest.mark.asyncio
    async def test_retry_cap(self, engine, card_gateway, notifier):
        ctx = PaymentContext(card=DECLINED_CARD)
        result = await engine.request_payment("ORD-1001", "direct_card", ctx)

        assert isinstance(result.error, ProviderRejected)
        assert result.error.message == "Your card was declined."
        assert result.intent.status == "failed"
        assert result.intent.failure_reason == "provider_rejected"
        assert result.retryable

        intent_id = result.intent.id
        for attempt in (2, 3):
            result = await engine.process_payment(intent_id, context=ctx)
            assert result.intent.attempts == attempt
        assert not result.retryable

        exhausted = await engine.process_payment(intent_id, context=ctx)
        assert isinstance(exhausted.error, RetriesExhausted)
        assert "contact support" in exhausted.error.message
        assert exhausted.intent.attempts == 3
        assert card_gateway.calls == 3

        errors = notifier.of(NotificationKind.ERROR)
        assert len(errors) == 3
        assert errors[0].endswith("You can try again.")
        assert errors[-1].endswith("Please contact support.")

    @pytest.mark.asyncio
    async def test_retry_with_new_card_succeeds(self, db, engine):
        failed = await engine.request_payment("ORD-1001", "direct_card", PaymentContext(card=DECLINED_CARD))
        result = await engine.process_payment(failed.intent.id, context=PaymentContext(card=GOOD_CARD))

        intent = result.unwrap()
        assert intent.status == "completed"
        assert intent.attempts == 2
        assert intent.failure_reason is None
        assert (await _order(db, "ORD-1001")).is_paid

    @pytest.mark.asyncio
    async def test_process_completed_conflicts(self, engine):
        intent = (await engine.request_payment("ORD-1001", "cash")).unwrap()
        result = await engine.process_payment(intent.id)
        assert isinstance(result.error, Conflict)
        assert result.intent.status == "completed"

    @pytest.mark.asyncio
    async def test_interrupted_attempt_fails_retryably(self, db, engine):
        async with db() as session:
            session.add(PaymentIntent(
                id="pi_stuck_0000001",
                order_id="ORD-1002",
                method="direct_card",
                provider="mock_acquirer",
                amount=42.0,
                currency="USD",
                status="processing",
                attempts=1,
            ))
            await session.commit()

        result = await engine.process_payment("pi_stuck_0000001")
        assert isinstance(result.error, ProviderTimeout)
        assert result.intent.status == "failed"
        assert result.retryable


    @pytest.mark.asyncio
    async def test_acquirer_connection_reset_fails_attempt(self, engine, card_gateway, monkeypatch):
        capture = card_gateway.capture

        async def reset(**kwargs):
            raise ConnectionResetError("socket reset by acquirer")

        monkeypatch.setattr(card_gateway, "capture", reset)
        result = await engine.request_payment("ORD-1001", "direct_card", PaymentContext(card=GOOD_CARD))

        assert isinstance(result.error, ProviderTimeout)
        assert "socket reset by acquirer" in result.error.message
        assert result.intent.status == "failed"
        assert result.retryable

        monkeypatch.setattr(card_gateway, "capture", capture)
        retried = await engine.process_payment(result.intent.id, context=PaymentContext(card=GOOD_CARD))
        assert retried.unwrap().status == "completed"

    @pytest.mark.asyncio
    async def test_adapter_bug_does_not_leave_intent_processing(self, engine, monkeypatch):
        adapter = engine.router.adapter_for("direct_card")

        async def broken_initiate(intent, context):
            raise KeyError("charge_id")

        monkeypatch.setattr(adapter, "initiate", broken_initiate)
        result = await engine.request_payment("ORD-1001", "direct_card", PaymentContext(card=GOOD_CARD))

        assert isinstance(result.error, ProviderTimeout)
        assert result.intent.status == "failed"
        assert (await engine.get_payment(result.intent.id)).intent.status == "failed"


class TestEmbeddedForm:
    @pytest.mark.asyncio
    async def test_confirm_with_payment_method(self, db, engine):
        intent = (await engine.request_payment("ORD-1001", "embedded_form_provider")).unwrap()
        assert intent.provider_ref.startswith("cs_")

        result = await engine.process_payment(intent.id, {"payment_method_id": "pm_card_visa"})
        assert result.unwrap().status == "completed"
        assert (await _order(db, "ORD-1001")).is_paid

    @pytest.mark.asyncio
    async def test_missing_payment_method_keeps_waiting(self, engine):
        intent = (await engine.request_payment("ORD-1001", "embedded_form_provider")).unwrap()
        result = await engine.process_payment(intent.id, {})

        assert isinstance(result.error, ValidationError)
        assert result.intent.status == "requires_action"

    @pytest.mark.asyncio
    async def test_decline_then_new_attempt(self, engine):
        intent = (await engine.request_payment("ORD-1001", "embedded_form_provider")).unwrap()
        declined = await engine.process_payment(intent.id, {"payment_method_id": "pm_card_insufficient_funds"})

        assert declined.intent.status == "failed"
        assert declined.intent.failure_message == "Your card has insufficient funds."

        retry = (await engine.process_payment(intent.id)).unwrap()
        assert retry.status == "requires_action"
        assert retry.attempts == 2
        assert retry.provider_ref != intent.provider_ref

    @pytest.mark.asyncio
    async def test_webhook_confirms(self, engine):
        intent = (await engine.request_payment("ORD-1001", "embedded_form_provider")).unwrap()
        assert await engine.report_confirmation(intent.provider_ref, SUCCEEDED) is True
        assert (await engine.get_payment(intent.id)).intent.status == "completed"


class TestHostedPage:
    @pytest.mark.asyncio
    async def test_approval_then_capture(self, db, engine, hosted_gateway, notifier):
        result = await engine.request_payment(
            "ORD-1001",
            "hosted_page_provider",
            PaymentContext(return_url="https://shop.example/return"),
        )
        intent = result.unwrap()
        assert intent.status == "requires_action"
        assert intent.provider == "mock_paypal"
        assert intent.provider_ref.startswith("PAYPAL-")
        assert f"token={intent.provider_ref}" in intent.action_url
        assert engine.poller.active(intent.id) is None

        captured = await engine.process_payment(intent.id, {"token": intent.provider_ref, "PayerID": "PAYER123"})
        assert captured.unwrap().status == "completed"
        assert hosted_gateway.order(intent.provider_ref).status == "COMPLETED"
        assert (await _order(db, "ORD-1001")).is_paid
        assert len(notifier.of(NotificationKind.SUCCESS)) == 1

    @pytest.mark.asyncio
    async def test_capture_needs_payer(self, engine):
        intent = (await engine.request_payment("ORD-1001", "hosted_page_provider")).unwrap()
        result = await engine.process_payment(intent.id, {})

        assert isinstance(result.error, ValidationError)
        assert result.intent.status == "requires_action"

    @pytest.mark.asyncio
    async def test_declined_payer_fails_attempt(self, engine):
        intent = (await engine.request_payment("ORD-1001", "hosted_page_provider")).unwrap()
        result = await engine.process_payment(intent.id, {"payer_id": "PAYER_DECLINED"})

        assert isinstance(result.error, ProviderRejected)
        assert result.intent.status == "failed"

    @pytest.mark.asyncio
    async def test_webhook_confirms(self, engine):
        intent = (await engine.request_payment("ORD-1001", "hosted_page_provider")).unwrap()
        assert await engine.report_confirmation(intent.provider_ref, SUCCEEDED) is True
        assert (await engine.get_payment(intent.id)).intent.status == "completed"

    @pytest.mark.asyncio
    async def test_cancel_voids_order(self, engine, hosted_gateway):
        intent = (await engine.request_payment("ORD-1001", "hosted_page_provider")).unwrap()
        cancelled = (await engine.cancel_payment(intent.id)).unwrap()

        assert cancelled.status == "cancelled"
        assert hosted_gateway.order(intent.provider_ref).status == "VOIDED"


class TestRedirect:
    @pytest.mark.asyncio
    async def test_turkish_payer_completes_on_third_poll(self, db, engine, redirect_gateway, launcher, notifier, monkeypatch):
        polls = _count_retrieves(monkeypatch, redirect_gateway, settle_on=3)

        result = await engine.request_payment("ORD-2001", "embedded_form_provider", PaymentContext(country="Turkey"))
        intent = result.unwrap()
        assert intent.status == "requires_action"
        assert intent.method == "redirect_provider"
        assert intent.provider == "mock_iyzico"
        assert launcher.urls == [intent.provider_ref]

        handle = engine.poller.active(intent.id)
        assert handle is not None
        await asyncio.wait_for(handle.wait(), timeout=2.0)

        assert len(polls) == 3
        assert (await engine.get_payment(intent.id)).intent.status == "completed"
        order = await _order(db, "ORD-2001")
        assert order.is_paid
        assert order.payment_id == intent.id
        assert len(notifier.of(NotificationKind.SUCCESS)) == 1

    @pytest.mark.asyncio
    async def test_confirmation_timeout(self, db, orders, router, notifier, redirect_gateway, monkeypatch):
        engine = PaymentEngine(db, router, orders, notifier=notifier, poll_interval=0.02, poll_timeout=0.2)
        polls = _count_retrieves(monkeypatch, redirect_gateway)

        intent = (await engine.request_payment("ORD-1001", "redirect_provider")).unwrap()
        await asyncio.wait_for(engine.poller.active(intent.id).wait(), timeout=2.0)

        failed = (await engine.get_payment(intent.id)).intent
        assert failed.status == "failed"
        assert failed.failure_reason == "confirmation_timeout"

        polls_at_deadline = len(polls)
        await asyncio.sleep(0.1)
        assert len(polls) == polls_at_deadline
        assert not (await _order(db, "ORD-1001")).is_paid
        await engine.shutdown()

    @pytest.mark.asyncio
    async def test_broken_gateway_still_times_out(self, db, orders, router, notifier, redirect_gateway, monkeypatch):
        engine = PaymentEngine(db, router, orders, notifier=notifier, poll_interval=0.02, poll_timeout=0.2)

        async def reset(payment_id):
            raise ConnectionResetError("socket reset by provider")

        monkeypatch.setattr(redirect_gateway, "retrieve", reset)

        intent = (await engine.request_payment("ORD-1001", "redirect_provider")).unwrap()
        await asyncio.wait_for(engine.poller.active(intent.id).wait(), timeout=2.0)
        await engine.shutdown()

        failed = (await engine.get_payment(intent.id)).intent
        assert failed.status == "failed"
        assert failed.failure_reason == "confirmation_timeout"
        assert engine.poller.active(intent.id) is None

    @pytest.mark.asyncio
    async def test_webhook_delivered_through_channel(self, engine):
        """The checkout itself never settles; only the webhook can complete the intent."""
        intent = (await engine.request_payment("ORD-1001", "redirect_provider")).unwrap()
        handle = engine.poller.active(intent.id)

        assert await engine.report_confirmation(intent.provider_ref, SUCCEEDED) is True
        await asyncio.wait_for(handle.wait(), timeout=2.0)

        assert handle.outcome is SUCCEEDED
        assert (await engine.get_payment(intent.id)).intent.status == "completed"

    @pytest.mark.asyncio
    async def test_duplicate_signals_reconcile_once(self, engine, redirect_gateway, notifier):
        intent = (await engine.request_payment("ORD-1001", "redirect_provider")).unwrap()
        handle = engine.poller.active(intent.id)

        redirect_gateway.settle(payment_id_from_ref(intent.provider_ref), succeeded=True)
        await engine.report_confirmation(intent.provider_ref, SUCCEEDED)
        await asyncio.wait_for(handle.wait(), timeout=2.0)
        assert await engine.report_confirmation(intent.provider_ref, SUCCEEDED) is False

        assert len(notifier.of(NotificationKind.SUCCESS)) == 1

    @pytest.mark.asyncio
    async def test_process_payment_does_not_start_second_poller(self, engine):
        intent = (await engine.request_payment("ORD-1001", "redirect_provider")).unwrap()
        handle = engine.poller.active(intent.id)

        result = await engine.process_payment(intent.id)
        assert result.intent.status == "requires_action"
        assert engine.poller.active(intent.id) is handle
        assert len(engine.poller) == 1

    @pytest.mark.asyncio
    async def test_failed_checkout(self, engine, redirect_gateway):
        intent = (await engine.request_payment("ORD-1001", "redirect_provider")).unwrap()
        handle = engine.poller.active(intent.id)
        redirect_gateway.settle(payment_id_from_ref(intent.provider_ref), succeeded=False, message="3-D Secure failed")
        await asyncio.wait_for(handle.wait(), timeout=2.0)

        failed = (await engine.get_payment(intent.id)).intent
        assert failed.status == "failed"
        assert failed.failure_message == "3-D Secure failed"


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_stops_poller(self, engine, redirect_gateway, monkeypatch):
        polls = _count_retrieves(monkeypatch, redirect_gateway)
        intent = (await engine.request_payment("ORD-1001", "redirect_provider")).unwrap()
        handle = engine.poller.active(intent.id)

        result = await engine.cancel_payment(intent.id)
        await handle.wait()

        assert result.intent.status == "cancelled"
        assert handle.cancelled
        assert engine.poller.active(intent.id) is None

        polls_after_cancel = len(polls)
        redirect_gateway.settle(payment_id_from_ref(intent.provider_ref), succeeded=True)
        await asyncio.sleep(0.1)
        assert len(polls) == polls_after_cancel
        assert (await engine.get_payment(intent.id)).intent.status == "cancelled"

    @pytest.mark.asyncio
    async def test_cancel_survives_provider_crash(self, engine, redirect_gateway, monkeypatch):
        intent = (await engine.request_payment("ORD-1001", "redirect_provider")).unwrap()

        async def reset(payment_id):
            raise ConnectionResetError("socket reset by provider")

        monkeypatch.setattr(redirect_gateway, "cancel_checkout", reset)
        result = await engine.cancel_payment(intent.id)

        assert result.ok
        assert result.intent.status == "cancelled"
        assert engine.poller.active(intent.id) is None

    @pytest.mark.asyncio
    async def test_cancel_survives_adapter_bug(self, engine, monkeypatch):
        intent = (await engine.request_payment("ORD-1001", "embedded_form_provider")).unwrap()
        adapter = engine.router.adapter_for("embedded_form_provider")

        async def broken_cancel(intent):
            raise AttributeError("session")

        monkeypatch.setattr(adapter, "cancel", broken_cancel)
        result = await engine.cancel_payment(intent.id)
        assert result.intent.status == "cancelled"

    @pytest.mark.asyncio
    async def test_cancel_completed_is_noop(self, engine):
        intent = (await engine.request_payment("ORD-1001", "cash")).unwrap()
        result = await engine.cancel_payment(intent.id)
        assert result.ok
        assert result.intent.status == "completed"

    @pytest.mark.asyncio
    async def test_process_cancelled_conflicts(self, engine):
        intent = (await engine.request_payment("ORD-1001", "embedded_form_provider")).unwrap()
        await engine.cancel_payment(intent.id)
        assert isinstance((await engine.process_payment(intent.id)).error, Conflict)

    @pytest.mark.asyncio
    async def test_new_intent_after_cancel(self, engine):
        first = (await engine.request_payment("ORD-1001", "embedded_form_provider")).unwrap()
        await engine.cancel_payment(first.id)
        second = (await engine.request_payment("ORD-1001", "cash")).unwrap()
        assert second.id != first.id
        assert second.status == "completed"


class TestConfirmationSafety:
    @pytest.mark.asyncio
    async def test_unknown_reference_is_ignored_and_audited(self, db, engine):
        assert await engine.report_confirmation("cs_forged", SUCCEEDED) is False
        assert "confirmation_ignored" in await _audit_actions(db)

    @pytest.mark.asyncio
    async def test_terminal_reference_is_ignored(self, db, engine):
        intent = (await engine.request_payment("ORD-1001", "cash")).unwrap()
        failed = ConfirmationOutcome(status=ConfirmationStatus.FAILED, message="chargeback?")

        assert await engine.report_confirmation(intent.provider_ref, failed) is False
        assert (await engine.get_payment(intent.id)).intent.status == "completed"
        assert "confirmation_ignored" in await _audit_actions(db, intent.id)


class TestDuplicateGuard:
    @pytest.mark.asyncio
    async def test_order_paid_elsewhere_blocks_completion(self, db, engine, orders, notifier):
        intent = (await engine.request_payment("ORD-1001", "embedded_form_provider")).unwrap()
        await orders.mark_paid("ORD-1001", "pi_other_0000001")

        result = await engine.process_payment(intent.id, {"payment_method_id": "pm_card_visa"})

        assert isinstance(result.error, Conflict)
        assert result.intent.status == "failed"
        assert result.intent.failure_reason == "duplicate_payment"
        assert (await _order(db, "ORD-1001")).payment_id == "pi_other_0000001"
        assert notifier.of(NotificationKind.SUCCESS) == []


class TestSweep:
    @pytest.mark.asyncio
    async def test_reconcile_completed_marks_unpaid_orders(self, db, engine):
        async with db() as session:
            session.add(PaymentIntent(
                id="pi_crash_0000001",
                order_id="ORD-1002",
                method="cash",
                provider="cash",
                amount=42.0,
                currency="USD",
                status="completed",
                attempts=1,
            ))
            await session.commit()

        assert await engine.reconcile_completed() == 1
        assert (await _order(db, "ORD-1002")).payment_id == "pi_crash_0000001"
        assert await engine.reconcile_completed() == 0


class TestListing:
    @pytest.mark.asyncio
    async def test_filters(self, engine):
        await engine.request_payment("ORD-1001", "cash")
        await engine.request_payment("ORD-1002", "embedded_form_provider")

        assert [p.order_id for p in await engine.list_payments(order_id="ORD-1002")] == ["ORD-1002"]
        completed = await engine.list_payments(status=PaymentStatus.COMPLETED)
        assert [p.order_id for p in completed] == ["ORD-1001"]
        assert len(await engine.list_payments()) == 2
