"""
Simulated payment gateways.

Mimic real provider APIs closely enough to exercise every adapter path:
  - Configurable latency (default 100ms)
  - Configurable failure rate (default 5%) split between rate limits,
    transient 503s and permanent rejections
  - Test tokens that are always declined, like the sandbox cards of real
    providers
  - Realistic identifiers (ch_…, cs_…, iyzico_…, PAYPAL-…)

In production these would be replaced by clients for the real card
acquirer, Stripe (embedded checkout), iyzico (hosted redirect page) and
PayPal (hosted approval page).
"""

import asyncio
import random
import uuid
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlencode

from payment_engine.config import settings
from payment_engine.engine.retry import GatewayError, PermanentGatewayError, RateLimitError
from payment_engine.models.enums import ConfirmationStatus

DECLINED_CARDS = {
    "4000000000000002": "Your card was declined.",
    "4000000000009995": "Your card has insufficient funds.",
    "4000000000000069": "Your card has expired.",
}

DECLINED_PAYMENT_METHODS = {
    "pm_card_declined": "Your card was declined.",
    "pm_card_insufficient_funds": "Your card has insufficient funds.",
}

DECLINED_PAYERS = {
    "PAYER_DECLINED": "The instrument presented was either declined by the processor or bank.",
}


@dataclass
class GatewayCharge:
    charge_id: str
    status: str  # "succeeded"
    message: str = ""


@dataclass
class CheckoutSession:
    session_id: str
    amount_cents: int
    currency: str
    status: str = "open"  # "open", "complete", "expired"


@dataclass
class ApprovalOrder:
    order_id: str
    approval_url: str
    amount_cents: int
    currency: str
    status: str = "CREATED"  # "CREATED", "COMPLETED", "VOIDED"
    capture_id: Optional[str] = None


@dataclass
class HostedCheckout:
    payment_id: str
    redirect_url: str
    amount_cents: int
    currency: str
    status: ConfirmationStatus = ConfirmationStatus.PENDING
    message: str = ""


class SimulatedGateway:
    """Shared latency and failure simulation."""

    provider_name = "mock"

    def __init__(
        self,
        failure_rate: Optional[float] = None,
        latency_ms: Optional[int] = None,
    ):
        self._failure_rate = failure_rate if failure_rate is not None else settings.mock_failure_rate
        self._latency_ms = latency_ms if latency_ms is not None else settings.mock_latency_ms
        self.calls = 0

    async def _simulate(self) -> None:
        self.calls += 1

        # Simulate network latency
        if self._latency_ms > 0:
            jitter = random.uniform(0.5, 1.5)
            await asyncio.sleep(self._latency_ms * jitter / 1000)

        roll = random.random()

        if roll < self._failure_rate * 0.3:
            raise RateLimitError(message=f"{self.provider_name}: too many requests", retry_after=1.0)

        if roll < self._failure_rate * 0.6:
            raise GatewayError(
                message=f"{self.provider_name}: service temporarily unavailable",
                status_code=503,
            )

        if roll < self._failure_rate:
            raise PermanentGatewayError(
                message=f"{self.provider_name}: payment could not be processed",
                status_code=400,
            )


class MockCardGateway(SimulatedGateway):
    """Card acquirer: one synchronous capture call, no follow-up."""

    provider_name = "mock_acquirer"

    async def capture(
        self,
        amount_cents: int,
        currency: str,
        card_number: str,
        reference: str,
    ) -> GatewayCharge:
        await self._simulate()

        decline = DECLINED_CARDS.get(card_number)
        if decline:
            raise PermanentGatewayError(decline)

        return GatewayCharge(
            charge_id=f"ch_{uuid.uuid4().hex[:16]}",
            status="succeeded",
            message=f"Captured {currency} {amount_cents / 100:.2f} for {reference}",
        )


class MockEmbeddedGateway(SimulatedGateway):
    """Stripe-like embedded checkout: session token now, confirmation later."""

    provider_name = "mock_stripe"

    def __init__(self, failure_rate: Optional[float] = None, latency_ms: Optional[int] = None):
        super().__init__(failure_rate, latency_ms)
        self._sessions: dict[str, CheckoutSession] = {}

    async def create_session(self, amount_cents: int, currency: str, reference: str) -> CheckoutSession:
        await self._simulate()
        session = CheckoutSession(
            session_id=f"cs_{uuid.uuid4().hex[:24]}",
            amount_cents=amount_cents,
            currency=currency,
        )
        self._sessions[session.session_id] = session
        return session

    async def confirm_session(self, session_id: str, payment_method_id: str) -> CheckoutSession:
        await self._simulate()
        session = self._sessions.get(session_id)
        if session is None:
            raise PermanentGatewayError(f"No such checkout session: {session_id}", status_code=404)
        if session.status == "expired":
            raise PermanentGatewayError("This checkout session has expired.", status_code=400)

        decline = DECLINED_PAYMENT_METHODS.get(payment_method_id)
        if decline:
            raise PermanentGatewayError(decline)

        session.status = "complete"
        return session

    async def expire_session(self, session_id: str) -> None:
        await self._simulate()
        session = self._sessions.get(session_id)
        if session is not None and session.status == "open":
            session.status = "expired"


class MockRedirectGateway(SimulatedGateway):
    """iyzico-like hosted page: the payer finishes on the provider's site."""

    provider_name = "mock_iyzico"

    def __init__(
        self,
        failure_rate: Optional[float] = None,
        latency_ms: Optional[int] = None,
        base_url: Optional[str] = None,
    ):
        super().__init__(failure_rate, latency_ms)
        self._base_url = (base_url or settings.redirect_base_url).rstrip("/")
        self._checkouts: dict[str, HostedCheckout] = {}

    async def create_checkout(self, amount_cents: int, currency: str, reference: str) -> HostedCheckout:
        await self._simulate()
        payment_id = f"iyzico_{uuid.uuid4().hex[:16]}"
        query = urlencode({"paymentId": payment_id, "reference": reference})
        checkout = HostedCheckout(
            payment_id=payment_id,
            redirect_url=f"{self._base_url}/payment/mock?{query}",
            amount_cents=amount_cents,
            currency=currency,
        )
        self._checkouts[payment_id] = checkout
        return checkout

    async def retrieve(self, payment_id: str) -> HostedCheckout:
        await self._simulate()
        checkout = self._checkouts.get(payment_id)
        if checkout is None:
            raise PermanentGatewayError(f"Unknown payment: {payment_id}", status_code=404)
        return checkout

    async def cancel_checkout(self, payment_id: str) -> None:
        await self._simulate()
        checkout = self._checkouts.get(payment_id)
        if checkout is not None and checkout.status is ConfirmationStatus.PENDING:
            checkout.status = ConfirmationStatus.FAILED
            checkout.message = "Checkout cancelled by merchant"

    def settle(self, payment_id: str, succeeded: bool, message: str = "") -> None:
        """Simulate the payer finishing (or abandoning) the hosted page."""
        checkout = self._checkouts[payment_id]
        checkout.status = ConfirmationStatus.SUCCEEDED if succeeded else ConfirmationStatus.FAILED
        checkout.message = message


class MockHostedPageGateway(SimulatedGateway):
    """PayPal-like checkout: the payer approves on the provider's page, the merchant captures."""

    provider_name = "mock_paypal"

    def __init__(
        self,
        failure_rate: Optional[float] = None,
        latency_ms: Optional[int] = None,
        base_url: Optional[str] = None,
    ):
        super().__init__(failure_rate, latency_ms)
        self._base_url = (base_url or settings.hosted_page_base_url).rstrip("/")
        self._orders: dict[str, ApprovalOrder] = {}

    async def create_order(
        self,
        amount_cents: int,
        currency: str,
        reference: str,
        return_url: Optional[str] = None,
    ) -> ApprovalOrder:
        await self._simulate()
        order_id = f"PAYPAL-{uuid.uuid4().hex[:17].upper()}"
        query = {"token": order_id}
        if return_url:
            query["return_url"] = return_url
        order = ApprovalOrder(
            order_id=order_id,
            approval_url=f"{self._base_url}/checkoutnow?{urlencode(query)}",
            amount_cents=amount_cents,
            currency=currency,
        )
        self._orders[order_id] = order
        return order

    async def capture_order(self, order_id: str, payer_id: str) -> ApprovalOrder:
        await self._simulate()
        order = self._orders.get(order_id)
        if order is None:
            raise PermanentGatewayError(f"The specified resource does not exist: {order_id}", status_code=404)
        if order.status == "VOIDED":
            raise PermanentGatewayError("The order was voided and cannot be captured.", status_code=422)
        if order.status == "COMPLETED":
            raise PermanentGatewayError("The order has already been captured.", status_code=422)

        decline = DECLINED_PAYERS.get(payer_id)
        if decline:
            raise PermanentGatewayError(decline, status_code=422)

        order.status = "COMPLETED"
        order.capture_id = f"CAP-{uuid.uuid4().hex[:17].upper()}"
        return order

    async def void_order(self, order_id: str) -> None:
        await self._simulate()
        order = self._orders.get(order_id)
        if order is not None and order.status == "CREATED":
            order.status = "VOIDED"

    def order(self, order_id: str) -> ApprovalOrder:
        return self._orders[order_id]
