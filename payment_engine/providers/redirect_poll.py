"""
Hosted redirect checkout (iyzico-style).

initiate() creates a checkout on the provider and opens its URL out of
band; the payer finishes on the provider's page and nothing comes back
as a return value. Completion is discovered by the ConfirmationPoller
calling poll(), or delivered by a webhook through the confirmation
channel.
"""

import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Union
from urllib.parse import parse_qs, urlparse

from payment_engine.engine.retry import RetryPolicy
from payment_engine.errors import ValidationError
from payment_engine.models.enums import PaymentMethod, PaymentStatus
from payment_engine.models.payment import PaymentIntent
from payment_engine.providers.base import (
    AdapterResult,
    ConfirmationOutcome,
    PaymentContext,
    ProviderAdapter,
    _cents,
)
from payment_engine.providers.mock_gateways import MockRedirectGateway

logger = logging.getLogger("payment_engine.providers.redirect")

RedirectLauncher = Callable[[str], Union[Awaitable[None], None]]


def _log_redirect(url: str) -> None:
    logger.info("Redirect payer to %s", url)


def payment_id_from_ref(provider_ref: str) -> str:
    """Extract the provider payment id from the checkout URL."""
    query = parse_qs(urlparse(provider_ref).query)
    values = query.get("paymentId")
    if not values:
        raise ValidationError(f"Not a hosted checkout reference: {provider_ref}")
    return values[0]


class RedirectPollAdapter(ProviderAdapter):
    method = PaymentMethod.REDIRECT_PROVIDER
    polls_for_confirmation = True

    def __init__(
        self,
        gateway: MockRedirectGateway,
        launcher: Optional[RedirectLauncher] = None,
        timeout: Optional[float] = None,
        retry: Optional[RetryPolicy] = None,
    ):
        super().__init__(timeout, retry)
        self._gateway = gateway
        self._launcher = launcher or _log_redirect

    @property
    def name(self) -> str:
        return self._gateway.provider_name

    async def initiate(self, intent: PaymentIntent, context: PaymentContext) -> AdapterResult:
        checkout = await self._call(
            self._gateway.create_checkout,
            amount_cents=_cents(intent.amount),
            currency=intent.currency,
            reference=intent.id,
        )
        await self._launch(checkout.redirect_url)
        return AdapterResult(
            status=PaymentStatus.REQUIRES_ACTION,
            provider_ref=checkout.redirect_url,
            requires_action=True,
            action_url=checkout.redirect_url,
            message="Payer redirected to hosted checkout",
        )

    async def poll(self, provider_ref: str) -> ConfirmationOutcome:
        checkout = await self._call(self._gateway.retrieve, payment_id_from_ref(provider_ref))
        return ConfirmationOutcome(status=checkout.status, message=checkout.message)

    async def confirm(self, intent: PaymentIntent, external_result: dict[str, Any]) -> AdapterResult:
        """Apply a hosted checkout result: {"status": "succeeded" | "failed" | "pending", "message": ...}."""
        return self.settle(intent, ConfirmationOutcome.from_dict(external_result))

    async def cancel(self, intent: PaymentIntent) -> AdapterResult:
        if intent.provider_ref:
            await self._call(self._gateway.cancel_checkout, payment_id_from_ref(intent.provider_ref))
        return AdapterResult(status=PaymentStatus.CANCELLED, provider_ref=intent.provider_ref)

    async def _launch(self, url: str) -> None:
        try:
            result = self._launcher(url)
            if inspect.isawaitable(result):
                await result
        except Exception:
            # The checkout exists either way; the caller still gets the URL back.
            logger.exception("Redirect launcher failed for %s", url)
