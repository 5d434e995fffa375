"""
Abstract payment provider adapter interface.

Each adapter wraps one provider's confirmation protocol behind the same
three calls: initiate, confirm, cancel. In production the gateways behind
them would be Stripe, iyzico or a card terminal; here they are simulated
(see mock_gateways.py) to demonstrate the integration pattern.

Gateway failures are normalized at this boundary: anything that reaches
the engine is a ProviderTimeout or ProviderRejected, never a raw gateway
exception.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from payment_engine.config import settings
from payment_engine.engine.retry import GatewayError, PermanentGatewayError, RetryPolicy
from payment_engine.errors import ProviderRejected, ProviderTimeout, ValidationError
from payment_engine.models.enums import ConfirmationStatus, PaymentMethod, PaymentStatus
from payment_engine.models.payment import PaymentIntent

logger = logging.getLogger("payment_engine.providers")


def _cents(amount: float) -> int:
    """Convert a decimal amount to minor units, avoiding floating point issues."""
    return int(round(amount * 100))


@dataclass
class CardDetails:
    """Card data captured synchronously by the caller (direct capture only)."""

    number: str
    exp_month: int
    exp_year: int
    cvc: str
    holder_name: str = ""

    @property
    def last4(self) -> str:
        return self.number[-4:]


@dataclass
class PaymentContext:
    """What the caller knows about the payer when requesting a payment."""

    country: Optional[str] = None  # free text as declared ("TR", "Turkey", "germany")
    amount: Optional[float] = None  # explicit override of the order total
    currency: Optional[str] = None
    card: Optional[CardDetails] = None
    return_url: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class AdapterResult:
    """Outcome of an adapter call, already mapped to engine states."""

    status: PaymentStatus
    provider_ref: Optional[str] = None
    requires_action: bool = False
    message: str = ""
    action_url: Optional[str] = None  # page the payer must visit to finish


@dataclass
class ConfirmationOutcome:
    """What the provider says about an out-of-band confirmation."""

    status: ConfirmationStatus
    message: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "ConfirmationOutcome":
        """
        Parse a provider-reported result such as {"status": "succeeded"}.

        Raises:
            ValidationError: The status is missing or unknown.
        """
        data = data or {}
        try:
            status = ConfirmationStatus(str(data.get("status", "")).lower())
        except ValueError:
            raise ValidationError(f"Unknown confirmation status: {data.get('status')!r}")
        return cls(status=status, message=str(data.get("message") or ""))

    def to_dict(self) -> dict[str, str]:
        return {"status": self.status.value, "message": self.message}


class ProviderAdapter(ABC):
    """Abstract base class for provider adapters."""

    #: Method this adapter settles; stored on the intent as its effective method.
    method: PaymentMethod
    #: True when completion is discovered by polling rather than by a return value.
    polls_for_confirmation: bool = False

    def __init__(self, timeout: Optional[float] = None, retry: Optional[RetryPolicy] = None):
        self._timeout = timeout if timeout is not None else settings.provider_timeout_seconds
        self._retry = retry

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry or RetryPolicy.from_settings()

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider identifier (e.g. 'cash', 'mock_stripe')."""
        ...

    @abstractmethod
    async def initiate(self, intent: PaymentIntent, context: PaymentContext) -> AdapterResult:
        """
        Start a payment attempt with the provider.

        Returns COMPLETED for providers that settle immediately, or
        REQUIRES_ACTION with a provider_ref the caller must act on.

        Raises:
            ProviderRejected: The provider declined the payment.
            ProviderTimeout: The provider did not answer within bounds.
            ValidationError: The context lacks data this provider needs.
        """
        ...

    def validate(self, context: PaymentContext) -> None:
        """Reject a context this provider cannot work with, before any attempt starts."""

    async def confirm(self, intent: PaymentIntent, external_result: dict[str, Any]) -> AdapterResult:
        """Finish a REQUIRES_ACTION attempt using the caller's external result."""
        raise ValidationError(f"{self.name} payments settle on initiate; there is nothing to confirm")

    def settle(self, intent: PaymentIntent, outcome: ConfirmationOutcome) -> AdapterResult:
        """
        Map an outcome the provider reported out of band (webhook, poll).

        Raises:
            ProviderRejected: The provider reports the payment failed.
        """
        if outcome.status is ConfirmationStatus.SUCCEEDED:
            return AdapterResult(status=PaymentStatus.COMPLETED, provider_ref=intent.provider_ref)
        if outcome.status is ConfirmationStatus.FAILED:
            raise ProviderRejected(outcome.message or f"Payment was not completed at {self.name}")
        return AdapterResult(
            status=PaymentStatus.REQUIRES_ACTION,
            provider_ref=intent.provider_ref,
            requires_action=True,
        )

    async def cancel(self, intent: PaymentIntent) -> AdapterResult:
        """Release whatever the provider holds for this intent."""
        return AdapterResult(status=PaymentStatus.CANCELLED, provider_ref=intent.provider_ref)

    async def _call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """
        Call the gateway with retries, inside one bounded wait.

        Nothing but ProviderTimeout or ProviderRejected leaves this method.

        Raises:
            ProviderTimeout: Bound exceeded, transient errors outlasted the
                retries, or the gateway client failed unexpectedly.
            ProviderRejected: Permanent gateway error; its message is kept verbatim.
        """
        try:
            return await asyncio.wait_for(self._call_with_backoff(func, *args, **kwargs), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning("%s call timed out after %.1fs", self.name, self._timeout)
            raise ProviderTimeout(f"{self.name} did not respond within {self._timeout:.1f}s")
        except PermanentGatewayError as e:
            raise ProviderRejected(str(e))
        except GatewayError as e:
            raise ProviderTimeout(f"{self.name} unavailable: {e}")
        except Exception as e:
            logger.exception("%s call raised unexpectedly", self.name)
            raise ProviderTimeout(f"{self.name} call failed: {e}")

    async def _call_with_backoff(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        policy = self.retry_policy
        retries = 0
        while True:
            try:
                return await func(*args, **kwargs)
            except GatewayError as e:
                if not policy.should_retry(e, retries):
                    if e.retriable:
                        logger.error("%s still failing after %d retries: %s", self.name, retries, e)
                    raise
                sleep_for = policy.delay(e, retries)
                retries += 1
                logger.warning(
                    "%s call failed (retry %d/%d in %.1fs): %s",
                    self.name,
                    retries,
                    policy.max_retries,
                    sleep_for,
                    e,
                )
                await asyncio.sleep(sleep_for)
