from payment_engine.providers.base import (
    AdapterResult,
    CardDetails,
    ConfirmationOutcome,
    PaymentContext,
    ProviderAdapter,
)
from payment_engine.providers.cash import CashAdapter
from payment_engine.providers.direct_capture import DirectCaptureAdapter
from payment_engine.providers.embedded_form import EmbeddedFormAdapter
from payment_engine.providers.hosted_page import HostedPageAdapter
from payment_engine.providers.redirect_poll import RedirectPollAdapter

__all__ = [
    "AdapterResult",
    "CardDetails",
    "ConfirmationOutcome",
    "PaymentContext",
    "ProviderAdapter",
    "CashAdapter",
    "DirectCaptureAdapter",
    "EmbeddedFormAdapter",
    "HostedPageAdapter",
    "RedirectPollAdapter",
]
