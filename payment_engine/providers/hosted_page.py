"""
Hosted approval page (PayPal-style).

initiate() creates an order on the provider and returns its approval URL;
the payer approves on the provider's page and is sent back to the
caller's return URL with their payer id. confirm() then captures the
order. A webhook reporting the capture settles the intent directly.
"""

from typing import Any, Optional

from payment_engine.engine.retry import RetryPolicy
from payment_engine.errors import ValidationError
from payment_engine.models.enums import PaymentMethod, PaymentStatus
from payment_engine.models.payment import PaymentIntent
from payment_engine.providers.base import AdapterResult, PaymentContext, ProviderAdapter, _cents
from payment_engine.providers.mock_gateways import MockHostedPageGateway


class HostedPageAdapter(ProviderAdapter):
    method = PaymentMethod.HOSTED_PAGE_PROVIDER

    def __init__(
        self,
        gateway: MockHostedPageGateway,
        timeout: Optional[float] = None,
        retry: Optional[RetryPolicy] = None,
    ):
        super().__init__(timeout, retry)
        self._gateway = gateway

    @property
    def name(self) -> str:
        return self._gateway.provider_name

    async def initiate(self, intent: PaymentIntent, context: PaymentContext) -> AdapterResult:
        order = await self._call(
            self._gateway.create_order,
            amount_cents=_cents(intent.amount),
            currency=intent.currency,
            reference=intent.id,
            return_url=context.return_url,
        )
        return AdapterResult(
            status=PaymentStatus.REQUIRES_ACTION,
            provider_ref=order.order_id,
            requires_action=True,
            action_url=order.approval_url,
            message="Payer sent to the hosted approval page",
        )

    async def confirm(self, intent: PaymentIntent, external_result: dict[str, Any]) -> AdapterResult:
        """Capture an approved order: {"payer_id": ..., "token": <order id, optional>}."""
        external_result = external_result or {}
        payer_id = external_result.get("payer_id") or external_result.get("PayerID")
        if not payer_id:
            raise ValidationError("payer_id is required to capture a hosted-page checkout")
        token = external_result.get("token")
        if token and token != intent.provider_ref:
            raise ValidationError(f"Approval token {token} does not belong to payment {intent.id}")

        order = await self._call(self._gateway.capture_order, intent.provider_ref, payer_id)
        return AdapterResult(
            status=PaymentStatus.COMPLETED,
            provider_ref=intent.provider_ref,
            message=f"Captured as {order.capture_id}",
        )

    async def cancel(self, intent: PaymentIntent) -> AdapterResult:
        if intent.provider_ref:
            await self._call(self._gateway.void_order, intent.provider_ref)
        return AdapterResult(status=PaymentStatus.CANCELLED, provider_ref=intent.provider_ref)
