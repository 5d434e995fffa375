"""
Embedded checkout (Stripe-style).

initiate() opens a checkout session and hands its token back to the
caller, who renders the provider's embedded form. The payer's submission
comes back through confirm() with the payment method the form produced.
"""

from typing import Any, Optional

from payment_engine.engine.retry import RetryPolicy
from payment_engine.errors import ValidationError
from payment_engine.models.enums import PaymentMethod, PaymentStatus
from payment_engine.models.payment import PaymentIntent
from payment_engine.providers.base import AdapterResult, PaymentContext, ProviderAdapter, _cents
from payment_engine.providers.mock_gateways import MockEmbeddedGateway


class EmbeddedFormAdapter(ProviderAdapter):
    method = PaymentMethod.EMBEDDED_FORM_PROVIDER

    def __init__(
        self,
        gateway: MockEmbeddedGateway,
        timeout: Optional[float] = None,
        retry: Optional[RetryPolicy] = None,
    ):
        super().__init__(timeout, retry)
        self._gateway = gateway

    @property
    def name(self) -> str:
        return self._gateway.provider_name

    async def initiate(self, intent: PaymentIntent, context: PaymentContext) -> AdapterResult:
        session = await self._call(
            self._gateway.create_session,
            amount_cents=_cents(intent.amount),
            currency=intent.currency,
            reference=intent.id,
        )
        return AdapterResult(
            status=PaymentStatus.REQUIRES_ACTION,
            provider_ref=session.session_id,
            requires_action=True,
            message="Present the embedded checkout form to the payer",
        )

    async def confirm(self, intent: PaymentIntent, external_result: dict[str, Any]) -> AdapterResult:
        payment_method_id = (external_result or {}).get("payment_method_id")
        if not payment_method_id:
            raise ValidationError("payment_method_id is required to confirm an embedded checkout")

        await self._call(self._gateway.confirm_session, intent.provider_ref, payment_method_id)
        return AdapterResult(status=PaymentStatus.COMPLETED, provider_ref=intent.provider_ref)

    async def cancel(self, intent: PaymentIntent) -> AdapterResult:
        if intent.provider_ref:
            await self._call(self._gateway.expire_session, intent.provider_ref)
        return AdapterResult(status=PaymentStatus.CANCELLED, provider_ref=intent.provider_ref)
