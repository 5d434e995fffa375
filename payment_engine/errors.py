"""
Payment error taxonomy.

Every engine operation reports failures with one of these classes:

    PaymentError
    ├── ValidationError      - bad amount, missing card data (never retried)
    │   └── UnsupportedMethod
    ├── NotFound             - unknown intent or order
    ├── Conflict             - order already paid, amount mismatch, closed intent
    ├── RetriesExhausted     - attempt cap reached (terminal)
    ├── ProviderTimeout      - gateway call or confirmation exceeded its bound
    ├── ProviderRejected     - provider declined; message kept verbatim
    └── InvalidTransition    - state machine invariant violated (a defect)

Gateway-level errors (see engine/retry.py) are normalized into
ProviderTimeout / ProviderRejected at the adapter boundary and never reach
the state machine.
"""

from typing import Optional

from payment_engine.models.enums import FailureReason


class PaymentError(Exception):
    """Base exception for all payment engine errors."""

    code = "payment_error"
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(PaymentError):
    code = "validation_error"


class UnsupportedMethod(ValidationError):
    code = "unsupported_method"

    def __init__(self, method: Optional[str]):
        super().__init__(f"Unsupported payment method: {method}")
        self.method = method


class NotFound(PaymentError):
    code = "not_found"


class Conflict(PaymentError):
    code = "conflict"


class RetriesExhausted(PaymentError):
    """Raised when an intent already used every allowed attempt."""

    code = "retries_exhausted"

    def __init__(self, intent_id: str, attempts: int):
        super().__init__(
            f"Payment {intent_id} failed {attempts} times and cannot be retried; "
            "please contact support"
        )
        self.intent_id = intent_id
        self.attempts = attempts


class ProviderTimeout(PaymentError):
    code = "provider_timeout"
    retryable = True

    def __init__(self, message: str, reason: FailureReason = FailureReason.PROVIDER_TIMEOUT):
        super().__init__(message)
        self.reason = reason


class ProviderRejected(PaymentError):
    code = "provider_rejected"
    retryable = True
    reason = FailureReason.PROVIDER_REJECTED


class InvalidTransition(PaymentError):
    """A transition outside the state table. Always a programming error."""

    code = "invalid_transition"

    def __init__(self, intent_id: str, from_status: str, to_status: str):
        super().__init__(f"Invalid payment state transition for {intent_id}: {from_status} -> {to_status}")
        self.intent_id = intent_id
        self.from_status = from_status
        self.to_status = to_status
