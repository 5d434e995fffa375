"""
Payment intent creation and lookup.

Guards, in order:
  1. Order already has a completed intent → Conflict
  2. Order has an open intent → return it (idempotent re-entry, e.g. a
     page reload); a different explicit amount → Conflict
  3. Order flagged paid by its owner → Conflict
  4. Amount: explicit override, or the order total fetched and frozen;
     anything that is not a positive number → ValidationError

Callers hold the order lock around create_or_get so concurrent requests
for one order see each other's intents.
"""

import logging
import math
import uuid
from numbers import Real
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from payment_engine.audit.logger import log_event
from payment_engine.collaborators.orders import OrderService
from payment_engine.config import settings
from payment_engine.engine.state_machine import PaymentStateMachine
from payment_engine.errors import Conflict, NotFound, ValidationError
from payment_engine.models.enums import PaymentMethod, PaymentStatus
from payment_engine.models.payment import PaymentIntent

logger = logging.getLogger("payment_engine.intents")

AMOUNT_TOLERANCE = 0.005


def _valid_amount(amount: object) -> bool:
    return (
        isinstance(amount, Real)
        and not isinstance(amount, bool)
        and math.isfinite(amount)
        and amount > 0
    )


class PaymentIntentManager:
    def __init__(self, orders: OrderService, state_machine: PaymentStateMachine):
        self._orders = orders
        self._state_machine = state_machine

    async def get(self, session: AsyncSession, intent_id: str) -> PaymentIntent:
        intent = await session.get(PaymentIntent, intent_id)
        if intent is None:
            raise NotFound(f"Payment not found: {intent_id}")
        return intent

    async def get_by_provider_ref(self, session: AsyncSession, provider_ref: str) -> Optional[PaymentIntent]:
        result = await session.execute(
            select(PaymentIntent).where(PaymentIntent.provider_ref == provider_ref)
        )
        return result.scalar_one_or_none()

    async def list_for_order(self, session: AsyncSession, order_id: str) -> list[PaymentIntent]:
        result = await session.execute(
            select(PaymentIntent)
            .where(PaymentIntent.order_id == order_id)
            .order_by(PaymentIntent.created_at.asc())
        )
        return list(result.scalars().all())

    async def create_or_get(
        self,
        session: AsyncSession,
        order_id: str,
        method: PaymentMethod,
        provider: str,
        amount: Optional[float] = None,
        currency: Optional[str] = None,
        country: Optional[str] = None,
        routing: Optional[dict] = None,
    ) -> PaymentIntent:
        """
        Return the open intent for an order, or create a new one.

        The new intent is flushed to the session before returning; the
        caller commits.

        Raises:
            Conflict: Order already paid, or open intent with a different amount.
            ValidationError: Explicit or fetched amount is not a positive number.
            NotFound: The order collaborator does not know the order.
        """
        existing = await self.list_for_order(session, order_id)

        completed = next((i for i in existing if i.status == PaymentStatus.COMPLETED), None)
        if completed is not None:
            raise Conflict(f"Order {order_id} is already paid by payment {completed.id}")

        open_intents = [i for i in existing if not self._state_machine.is_terminal(i)]
        if open_intents:
            intent = open_intents[-1]
            if amount is not None and abs(intent.amount - amount) > AMOUNT_TOLERANCE:
                raise Conflict(
                    f"Payment {intent.id} for order {order_id} is open for "
                    f"{intent.amount:.2f}; cancel it before requesting {amount:.2f}"
                )
            logger.info("Reusing open payment %s for order %s (%s)", intent.id, order_id, intent.status)
            return intent

        summary = await self._orders.get_payment_summary(order_id)
        if summary.is_paid:
            raise Conflict(f"Order {order_id} is already paid by payment {summary.payment_id}")

        if amount is None:
            amount, order_currency = await self._orders.get_order_total(order_id)
            if not _valid_amount(amount):
                raise ValidationError(f"Order {order_id} has no payable total: {amount!r}")
            currency = currency or order_currency
        elif not _valid_amount(amount):
            raise ValidationError(f"Invalid amount: {amount!r}")

        intent = PaymentIntent(
            id=uuid.uuid4().hex[:16],
            order_id=order_id,
            method=PaymentMethod(method).value,
            provider=provider,
            country=country,
            amount=float(amount),
            currency=(currency or summary.currency or settings.default_currency).upper(),
            status=PaymentStatus.CREATED.value,
            attempts=0,
        )
        session.add(intent)
        log_event(session, "intent_created", intent_id=intent.id, order_id=order_id, details={
            "method": intent.method,
            "provider": provider,
            "amount": intent.amount,
            "currency": intent.currency,
            "country": country,
        })
        if routing:
            log_event(session, "provider_selected", intent_id=intent.id, order_id=order_id, details=routing)
        await session.flush()
        return intent
