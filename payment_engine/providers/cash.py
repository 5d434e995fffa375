"""Cash adapter: settled at the counter, no external step."""

import uuid

from payment_engine.models.enums import PaymentMethod, PaymentStatus
from payment_engine.models.payment import PaymentIntent
from payment_engine.providers.base import AdapterResult, PaymentContext, ProviderAdapter


class CashAdapter(ProviderAdapter):
    method = PaymentMethod.CASH

    @property
    def name(self) -> str:
        return "cash"

    async def initiate(self, intent: PaymentIntent, context: PaymentContext) -> AdapterResult:
        return AdapterResult(
            status=PaymentStatus.COMPLETED,
            provider_ref=f"CASH-{uuid.uuid4().hex[:12].upper()}",
            message=f"Cash received: {intent.currency} {intent.amount:.2f}",
        )
