"""
Direct card capture.

The caller hands over card data it captured itself (card terminal, POS
form). One round trip to the acquirer settles the attempt either way;
there is nothing to confirm or poll afterwards.
"""

from typing import Optional

from payment_engine.engine.retry import RetryPolicy
from payment_engine.errors import ValidationError
from payment_engine.models.enums import PaymentMethod, PaymentStatus
from payment_engine.models.payment import PaymentIntent
from payment_engine.providers.base import AdapterResult, PaymentContext, ProviderAdapter, _cents
from payment_engine.providers.mock_gateways import MockCardGateway


class DirectCaptureAdapter(ProviderAdapter):
    method = PaymentMethod.DIRECT_CARD

    def __init__(
        self,
        gateway: MockCardGateway,
        timeout: Optional[float] = None,
        retry: Optional[RetryPolicy] = None,
    ):
        super().__init__(timeout, retry)
        self._gateway = gateway

    @property
    def name(self) -> str:
        return self._gateway.provider_name

    def validate(self, context: PaymentContext) -> None:
        if context.card is None:
            raise ValidationError("Card details are required for direct card payments")
        if not context.card.number or not context.card.number.isdigit():
            raise ValidationError("Card number must contain digits only")

    async def initiate(self, intent: PaymentIntent, context: PaymentContext) -> AdapterResult:
        self.validate(context)
        charge = await self._call(
            self._gateway.capture,
            amount_cents=_cents(intent.amount),
            currency=intent.currency,
            card_number=context.card.number,
            reference=intent.id,
        )
        return AdapterResult(
            status=PaymentStatus.COMPLETED,
            provider_ref=charge.charge_id,
            message=f"Card ending {context.card.last4} captured",
        )
