"""
Reconciliation: apply a completed payment to its order, exactly once.

Duplicate completion signals (webhook retries, a poll racing a webhook,
a sweep after a crash) all end up here. The order's is_paid flag is read
first and written with a conditional update, so the order is flagged and
the payer notified only for the first signal.
"""

import logging

from payment_engine.collaborators.notifications import Notifier, send_notification
from payment_engine.collaborators.orders import OrderService
from payment_engine.errors import Conflict
from payment_engine.models.enums import NotificationKind, PaymentStatus
from payment_engine.models.payment import PaymentIntent

logger = logging.getLogger("payment_engine.reconciliation")


class ReconciliationService:
    def __init__(self, orders: OrderService, notifier: Notifier):
        self._orders = orders
        self._notifier = notifier

    async def on_completed(self, intent: PaymentIntent) -> bool:
        """
        Mark the intent's order paid and record the payment id.

        Returns:
            True if this call applied the payment, False if the order was
            already paid (by this intent or, abnormally, by another one).

        Raises:
            Conflict: The intent is not completed.
        """
        if intent.status != PaymentStatus.COMPLETED:
            raise Conflict(f"Payment {intent.id} is {intent.status}, not completed")

        summary = await self._orders.get_payment_summary(intent.order_id)
        if summary.is_paid:
            if summary.payment_id == intent.id:
                logger.info("Order %s already reconciled with payment %s", intent.order_id, intent.id)
            else:
                logger.error(
                    "Order %s is paid by %s but payment %s also completed; manual refund required",
                    intent.order_id,
                    summary.payment_id,
                    intent.id,
                )
            return False

        applied = await self._orders.mark_paid(intent.order_id, intent.id)
        if not applied:
            logger.info("Order %s was marked paid concurrently; skipping payment %s", intent.order_id, intent.id)
            return False

        logger.info("Order %s marked paid by payment %s", intent.order_id, intent.id)
        await send_notification(
            self._notifier,
            NotificationKind.SUCCESS,
            f"Payment of {intent.currency} {intent.amount:.2f} received for order {intent.order_id}",
        )
        return True
