"""
Payment engine: the one entry point callers use.

Ties together intent creation, provider routing, the state machine, the
confirmation poller and reconciliation. The flow for an order:

  1. request_payment: route (method + country → adapter), create or reuse
     the open intent, run the first attempt
  2. Attempt: CREATED/FAILED → PROCESSING, then the adapter decides:
     COMPLETED (cash, direct capture), REQUIRES_ACTION (embedded form,
     hosted redirect) or FAILED (rejection, timeout)
  3. REQUIRES_ACTION settles through process_payment (embedded form
     submission) or the confirmation poller (hosted redirect, webhooks)
  4. COMPLETED: duplicate-payment guard under the order lock, then
     reconciliation marks the order paid and notifies the payer

Concurrency rules:
  - Every mutation of an intent runs under that intent's lock
  - Intent creation and the completion check-then-act run under the
    order's lock; the order lock is always taken after the intent lock
  - No database transaction is held open across a provider call

Operations return a PaymentResult. Caller errors (validation, conflict,
unknown intent, attempts exhausted) come back with no state change;
provider failures come back together with the FAILED intent.
InvalidTransition is a defect and propagates.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_engine.audit.logger import log_event
from payment_engine.collaborators.notifications import LogNotifier, Notifier, send_notification
from payment_engine.collaborators.orders import OrderService
from payment_engine.config import settings
from payment_engine.engine.channel import ConfirmationChannel
from payment_engine.engine.intents import PaymentIntentManager
from payment_engine.engine.locks import KeyedLocks
from payment_engine.engine.poller import ConfirmationPoller, PollHandle
from payment_engine.engine.reconciliation import ReconciliationService
from payment_engine.engine.state_machine import PaymentStateMachine
from payment_engine.errors import (
    Conflict,
    NotFound,
    PaymentError,
    ProviderRejected,
    ProviderTimeout,
    RetriesExhausted,
    ValidationError,
)
from payment_engine.models.enums import (
    ConfirmationStatus,
    FailureReason,
    NotificationKind,
    PaymentMethod,
    PaymentStatus,
)
from payment_engine.models.payment import AuditLog, PaymentIntent, PaymentTransition
from payment_engine.providers.base import (
    AdapterResult,
    ConfirmationOutcome,
    PaymentContext,
    ProviderAdapter,
)
from payment_engine.routing.provider_router import ProviderRouter

logger = logging.getLogger("payment_engine.orchestrator")


@dataclass
class PaymentResult:
    """Outcome of an engine operation."""

    intent: Optional[PaymentIntent] = None
    error: Optional[PaymentError] = None
    retryable: bool = False  # the caller may start another attempt on this intent

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> PaymentIntent:
        if self.error is not None:
            raise self.error
        return self.intent


@dataclass
class PaymentTrace:
    intent: PaymentIntent
    transitions: list[PaymentTransition]
    audit: list[AuditLog]


def _as_utc(value: Optional[datetime]) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    # SQLite hands back naive datetimes; they were written as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PaymentEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        router: ProviderRouter,
        orders: OrderService,
        notifier: Optional[Notifier] = None,
        state_machine: Optional[PaymentStateMachine] = None,
        poll_interval: Optional[float] = None,
        poll_timeout: Optional[float] = None,
    ):
        self._session_factory = session_factory
        self._router = router
        self._orders = orders
        self._notifier = notifier or LogNotifier()
        self.state_machine = state_machine or PaymentStateMachine()
        self.poll_interval = settings.poll_interval_seconds if poll_interval is None else poll_interval
        self.poll_timeout = settings.poll_timeout_seconds if poll_timeout is None else poll_timeout

        self.intents = PaymentIntentManager(orders, self.state_machine)
        self.reconciliation = ReconciliationService(orders, self._notifier)
        self.channel = ConfirmationChannel()
        self.poller = ConfirmationPoller(self.channel, self._resolve_confirmation)
        self._intent_locks = KeyedLocks("intent")
        self._order_locks = KeyedLocks("order")

    @property
    def router(self) -> ProviderRouter:
        return self._router

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def request_payment(
        self,
        order_id: str,
        method: PaymentMethod | str,
        context: Optional[PaymentContext] = None,
    ) -> PaymentResult:
        """
        Start paying for an order.

        Re-requesting while the order has an open intent returns that
        intent unchanged; a brand-new intent gets its first attempt here.
        """
        context = context or PaymentContext()
        try:
            decision = self._router.decide(method, context)
        except PaymentError as e:
            logger.warning("Rejected payment request for order %s: %s", order_id, e)
            return PaymentResult(error=e)

        async with self._order_locks.hold(order_id):
            async with self._session_factory() as session:
                try:
                    intent = await self.intents.create_or_get(
                        session,
                        order_id,
                        decision.method,
                        decision.adapter.name,
                        amount=context.amount,
                        currency=context.currency,
                        country=context.country,
                        routing={
                            "requested_method": decision.requested_method.value,
                            "method": decision.method.value,
                            "provider": decision.adapter.name,
                            "region": decision.region,
                            "label": decision.label,
                        },
                    )
                except PaymentError as e:
                    logger.info("Payment request for order %s refused: %s", order_id, e)
                    return PaymentResult(error=e)
                await session.commit()

        return await self._start_if_new(intent.id, context)

    async def process_payment(
        self,
        intent_id: str,
        external_result: Optional[dict[str, Any]] = None,
        context: Optional[PaymentContext] = None,
    ) -> PaymentResult:
        """
        Advance an intent.

        CREATED/FAILED start a new attempt (FAILED only while attempts
        remain). REQUIRES_ACTION is confirmed with the caller's external
        result; for hosted redirects the result goes to the confirmation
        poller instead of being applied here.
        """
        async with self._intent_locks.hold(intent_id):
            async with self._session_factory() as session:
                try:
                    intent = await self.intents.get(session, intent_id)
                except NotFound as e:
                    return PaymentResult(error=e)

                status = PaymentStatus(intent.status)

                if status is PaymentStatus.COMPLETED:
                    return self._result(intent, Conflict(f"Payment {intent.id} is already completed"))
                if status is PaymentStatus.CANCELLED:
                    return self._result(intent, Conflict(f"Payment {intent.id} was cancelled"))

                if status is PaymentStatus.FAILED and not self.state_machine.can_retry(intent):
                    error = RetriesExhausted(intent.id, intent.attempts)
                    log_event(session, "retries_exhausted", intent_id=intent.id, order_id=intent.order_id, details={
                        "attempts": intent.attempts,
                        "max_attempts": self.state_machine.max_attempts,
                    })
                    await session.commit()
                    return self._result(intent, error)

                if status in (PaymentStatus.CREATED, PaymentStatus.FAILED):
                    return await self._attempt(session, intent, context or PaymentContext(country=intent.country))

                if status is PaymentStatus.PROCESSING:
                    # Nobody else holds the intent lock, so this attempt was interrupted.
                    error = ProviderTimeout(f"Attempt {intent.attempts} for payment {intent.id} was interrupted")
                    return await self._fail(session, intent, error)

                adapter = self._router.adapter_for(intent.method)
                if adapter.polls_for_confirmation:
                    if external_result:
                        try:
                            outcome = ConfirmationOutcome.from_dict(external_result)
                        except ValidationError as e:
                            return self._result(intent, e)
                        self.channel.publish(intent.provider_ref, outcome)
                    self._ensure_poller(intent, adapter)
                    return self._result(intent)

                try:
                    outcome = await adapter.confirm(intent, external_result or {})
                except ValidationError as e:
                    return self._result(intent, e)
                except (ProviderRejected, ProviderTimeout) as e:
                    return await self._fail(session, intent, e)
                except Exception as e:
                    return await self._fail(session, intent, self._unexpected(adapter, intent, e))
                return await self._apply(session, intent, adapter, outcome, reason="confirmed by payer")

    async def cancel_payment(self, intent_id: str) -> PaymentResult:
        """
        Cancel an open intent. Stops its poller first; no-op on terminal intents.
        """
        handle = self.poller.active(intent_id)
        if handle is not None:
            handle.cancel()

        async with self._intent_locks.hold(intent_id):
            async with self._session_factory() as session:
                try:
                    intent = await self.intents.get(session, intent_id)
                except NotFound as e:
                    return PaymentResult(error=e)

                if self.state_machine.is_terminal(intent):
                    logger.info("Cancel of %s payment %s is a no-op", intent.status, intent.id)
                    return self._result(intent)

                # A poller may have been started while we waited for the lock.
                handle = self.poller.active(intent_id)
                if handle is not None:
                    handle.cancel()

                adapter = self._router.adapter_for(intent.method)
                if intent.status == PaymentStatus.REQUIRES_ACTION:
                    try:
                        await adapter.cancel(intent)
                    except PaymentError as e:
                        logger.warning("%s could not release payment %s: %s", adapter.name, intent.id, e)
                    except Exception:
                        logger.exception("%s raised while releasing payment %s", adapter.name, intent.id)

                self.state_machine.transition(session, intent, PaymentStatus.CANCELLED, reason="cancelled by payer")
                await session.commit()

        logger.info("Payment %s for order %s cancelled", intent.id, intent.order_id)
        return self._result(intent)

    async def get_payment(self, intent_id: str) -> PaymentResult:
        async with self._session_factory() as session:
            try:
                intent = await self.intents.get(session, intent_id)
            except NotFound as e:
                return PaymentResult(error=e)
        return self._result(intent)

    async def list_payments(
        self,
        order_id: Optional[str] = None,
        status: Optional[PaymentStatus | str] = None,
        limit: int = 100,
    ) -> list[PaymentIntent]:
        query = select(PaymentIntent).order_by(PaymentIntent.created_at.desc()).limit(limit)
        if order_id:
            query = query.where(PaymentIntent.order_id == order_id)
        if status:
            query = query.where(PaymentIntent.status == PaymentStatus(status).value)
        async with self._session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def get_trace(self, intent_id: str) -> PaymentTrace:
        """
        Full history of an intent: transitions and audit entries, oldest first.

        Raises:
            NotFound: Unknown intent.
        """
        async with self._session_factory() as session:
            intent = await self.intents.get(session, intent_id)
            transitions = await session.execute(
                select(PaymentTransition)
                .where(PaymentTransition.intent_id == intent_id)
                .order_by(PaymentTransition.id.asc())
            )
            audit = await session.execute(
                select(AuditLog).where(AuditLog.intent_id == intent_id).order_by(AuditLog.id.asc())
            )
            return PaymentTrace(
                intent=intent,
                transitions=list(transitions.scalars().all()),
                audit=list(audit.scalars().all()),
            )

    async def report_confirmation(self, provider_ref: str, outcome: ConfirmationOutcome) -> bool:
        """
        Deliver a provider-reported outcome (webhook) for an intent.

        References that match no intent awaiting confirmation are ignored
        and audited. Returns True if the confirmation was accepted.
        """
        async with self._session_factory() as session:
            intent = await self.intents.get_by_provider_ref(session, provider_ref) if provider_ref else None
            if intent is None or intent.status != PaymentStatus.REQUIRES_ACTION:
                reason = "unknown_reference" if intent is None else f"payment_{intent.status}"
                logger.warning("Ignoring %s confirmation for %s (%s)", outcome.status.value, provider_ref, reason)
                log_event(
                    session,
                    "confirmation_ignored",
                    intent_id=intent.id if intent else None,
                    order_id=intent.order_id if intent else None,
                    details={
                        "provider_ref": (provider_ref or "")[:255],
                        "status": outcome.status.value,
                        "reason": reason,
                    },
                )
                await session.commit()
                return False

            log_event(session, "confirmation_received", intent_id=intent.id, order_id=intent.order_id, details={
                "status": outcome.status.value,
                "message": outcome.message,
            })
            await session.commit()

        adapter = self._router.adapter_for(intent.method)
        if adapter.polls_for_confirmation:
            self.channel.publish(provider_ref, outcome)
            self._ensure_poller(intent, adapter)
            return True

        if outcome.is_terminal:
            await self._settle(intent.id, provider_ref, outcome)
        return True

    async def reconcile_completed(self) -> int:
        """
        Sweep completed intents whose order is not flagged paid.

        Covers a crash between completing an intent and marking its order.
        Returns the number of orders marked paid.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                select(PaymentIntent)
                .where(PaymentIntent.status == PaymentStatus.COMPLETED.value)
                .order_by(PaymentIntent.completed_at.asc())
            )
            completed = list(result.scalars().all())

        applied = 0
        for intent in completed:
            async with self._order_locks.hold(intent.order_id):
                try:
                    if await self.reconciliation.on_completed(intent):
                        applied += 1
                except NotFound:
                    logger.error("Completed payment %s points at unknown order %s", intent.id, intent.order_id)
        if applied:
            logger.info("Reconciliation sweep marked %d orders paid", applied)
        return applied

    async def shutdown(self) -> None:
        await self.poller.stop_all()

    # ------------------------------------------------------------------
    # Attempts
    # ------------------------------------------------------------------

    async def _start_if_new(self, intent_id: str, context: PaymentContext) -> PaymentResult:
        async with self._intent_locks.hold(intent_id):
            async with self._session_factory() as session:
                intent = await self.intents.get(session, intent_id)
                if intent.status == PaymentStatus.CREATED:
                    return await self._attempt(session, intent, context)

        if intent.status == PaymentStatus.REQUIRES_ACTION:
            adapter = self._router.adapter_for(intent.method)
            if adapter.polls_for_confirmation:
                self._ensure_poller(intent, adapter)
        return self._result(intent)

    async def _attempt(self, session: AsyncSession, intent: PaymentIntent, context: PaymentContext) -> PaymentResult:
        """Run one attempt. Caller holds the intent lock."""
        adapter = self._router.adapter_for(intent.method)
        try:
            adapter.validate(context)
        except ValidationError as e:
            return self._result(intent, e)

        self.state_machine.transition(
            session, intent, PaymentStatus.PROCESSING, reason=f"attempt {intent.attempts + 1} via {adapter.name}"
        )
        await session.commit()

        try:
            outcome = await adapter.initiate(intent, context)
        except (ProviderRejected, ProviderTimeout) as e:
            logger.warning("Attempt %d for payment %s failed: %s", intent.attempts, intent.id, e)
            return await self._fail(session, intent, e)
        except Exception as e:
            return await self._fail(session, intent, self._unexpected(adapter, intent, e))

        return await self._apply(session, intent, adapter, outcome, reason=outcome.message or None)

    async def _apply(
        self,
        session: AsyncSession,
        intent: PaymentIntent,
        adapter: ProviderAdapter,
        outcome: AdapterResult,
        reason: Optional[str] = None,
    ) -> PaymentResult:
        if outcome.provider_ref and outcome.provider_ref != intent.provider_ref:
            intent.provider_ref = outcome.provider_ref
        if outcome.action_url:
            intent.action_url = outcome.action_url

        if outcome.status is PaymentStatus.COMPLETED:
            return await self._complete(session, intent, reason)

        if outcome.status is PaymentStatus.REQUIRES_ACTION:
            if intent.status != PaymentStatus.REQUIRES_ACTION:
                self.state_machine.transition(session, intent, PaymentStatus.REQUIRES_ACTION, reason=reason)
                log_event(session, "awaiting_confirmation", intent_id=intent.id, order_id=intent.order_id, details={
                    "provider": adapter.name,
                    "provider_ref": intent.provider_ref,
                })
            await session.commit()
            if adapter.polls_for_confirmation:
                self._ensure_poller(intent, adapter)
            return self._result(intent)

        return await self._fail(session, intent, ProviderRejected(outcome.message or f"{adapter.name} declined"))

    async def _complete(self, session: AsyncSession, intent: PaymentIntent, reason: Optional[str]) -> PaymentResult:
        """Complete an intent unless its order is already paid. Caller holds the intent lock."""
        async with self._order_locks.hold(intent.order_id):
            summary = await self._orders.get_payment_summary(intent.order_id)
            siblings = await self.intents.list_for_order(session, intent.order_id)
            other = next(
                (i for i in siblings if i.id != intent.id and i.status == PaymentStatus.COMPLETED),
                None,
            )
            paid_by = other.id if other is not None else (
                summary.payment_id if summary.is_paid and summary.payment_id != intent.id else None
            )
            if paid_by is not None:
                return await self._block_duplicate(session, intent, paid_by)

            self.state_machine.transition(session, intent, PaymentStatus.COMPLETED, reason=reason)
            log_event(session, "payment_completed", intent_id=intent.id, order_id=intent.order_id, details={
                "provider": intent.provider,
                "provider_ref": intent.provider_ref,
                "amount": intent.amount,
                "currency": intent.currency,
                "attempts": intent.attempts,
            })
            try:
                await session.commit()
            except IntegrityError:
                # Another process completed a payment for this order first.
                await session.rollback()
                intent = await self.intents.get(session, intent.id)
                return await self._block_duplicate(session, intent, paid_by="another payment")

            await self.reconciliation.on_completed(intent)

        logger.info("Payment %s completed for order %s", intent.id, intent.order_id)
        return self._result(intent)

    async def _block_duplicate(self, session: AsyncSession, intent: PaymentIntent, paid_by: str) -> PaymentResult:
        error = Conflict(f"Order {intent.order_id} is already paid by {paid_by}")
        logger.error("Blocked duplicate payment %s for order %s (paid by %s)", intent.id, intent.order_id, paid_by)
        self.state_machine.fail(session, intent, FailureReason.DUPLICATE_PAYMENT, error.message)
        log_event(session, "duplicate_payment_blocked", intent_id=intent.id, order_id=intent.order_id, details={
            "paid_by": paid_by,
            "provider_ref": intent.provider_ref,
        })
        await session.commit()
        await send_notification(
            self._notifier,
            NotificationKind.ERROR,
            f"Order {intent.order_id} was already paid; payment {intent.id} will be refunded",
        )
        return self._result(intent, error)

    async def _fail(self, session: AsyncSession, intent: PaymentIntent, error: PaymentError) -> PaymentResult:
        self.state_machine.fail_with(session, intent, error)
        log_event(session, "attempt_failed", intent_id=intent.id, order_id=intent.order_id, details={
            "attempt": intent.attempts,
            "error": error.code,
            "message": error.message,
        })
        await session.commit()

        retry_hint = "You can try again." if self.state_machine.can_retry(intent) else "Please contact support."
        await send_notification(
            self._notifier,
            NotificationKind.ERROR,
            f"Payment for order {intent.order_id} failed: {error.message.rstrip('.')}. {retry_hint}",
        )
        return self._result(intent, error)

    def _unexpected(self, adapter: ProviderAdapter, intent: PaymentIntent, error: Exception) -> ProviderTimeout:
        logger.exception("%s raised unexpectedly for payment %s", adapter.name, intent.id)
        return ProviderTimeout(f"Unexpected error from {adapter.name}: {error}")

    def _result(self, intent: Optional[PaymentIntent], error: Optional[PaymentError] = None) -> PaymentResult:
        retryable = bool(
            error is not None
            and error.retryable
            and intent is not None
            and self.state_machine.can_retry(intent)
        )
        return PaymentResult(intent=intent, error=error, retryable=retryable)

    # ------------------------------------------------------------------
    # Out-of-band confirmation
    # ------------------------------------------------------------------

    def _ensure_poller(self, intent: PaymentIntent, adapter: ProviderAdapter) -> PollHandle:
        """Start the intent's poller unless one is running; the deadline counts from REQUIRES_ACTION."""
        elapsed = (datetime.now(timezone.utc) - _as_utc(intent.updated_at)).total_seconds()
        remaining = max(self.poll_timeout - max(elapsed, 0.0), 0.0)
        return self.poller.start(intent, adapter.poll, interval=self.poll_interval, timeout=remaining)

    async def _resolve_confirmation(self, handle: PollHandle, outcome: Optional[ConfirmationOutcome]) -> None:
        """Poller resolver: apply the terminal outcome, or fail the intent when outcome is None."""
        await self._settle(handle.intent_id, handle.provider_ref, outcome, handle=handle)

    async def _settle(
        self,
        intent_id: str,
        provider_ref: str,
        outcome: Optional[ConfirmationOutcome],
        handle: Optional[PollHandle] = None,
    ) -> Optional[PaymentResult]:
        async with self._intent_locks.hold(intent_id):
            if handle is not None and handle.cancelled:
                logger.info("Poller for payment %s was cancelled; dropping its outcome", intent_id)
                return None

            async with self._session_factory() as session:
                intent = await self.intents.get(session, intent_id)
                if intent.status != PaymentStatus.REQUIRES_ACTION or intent.provider_ref != provider_ref:
                    logger.info("Payment %s is %s; confirmation for %s not applied", intent.id, intent.status, provider_ref)
                    return None

                if outcome is None:
                    error = ProviderTimeout(
                        f"No confirmation from {intent.provider} within {self.poll_timeout:.0f}s",
                        reason=FailureReason.CONFIRMATION_TIMEOUT,
                    )
                    return await self._fail(session, intent, error)

                adapter = self._router.adapter_for(intent.method)
                try:
                    if adapter.polls_for_confirmation:
                        result = await adapter.confirm(intent, outcome.to_dict())
                    else:
                        result = adapter.settle(intent, outcome)
                except (ProviderRejected, ProviderTimeout) as e:
                    return await self._fail(session, intent, e)
                except Exception as e:
                    return await self._fail(session, intent, self._unexpected(adapter, intent, e))

                reason = f"{outcome.status.value} at {adapter.name}"
                if outcome.status is ConfirmationStatus.SUCCEEDED and outcome.message:
                    reason = f"{reason}: {outcome.message}"
                return await self._apply(session, intent, adapter, result, reason=reason)
