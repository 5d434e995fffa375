"""Enumerations for the payment engine domain model."""

from enum import Enum


class PaymentStatus(str, Enum):
    """Lifecycle states for a payment intent."""

    CREATED = "created"
    PROCESSING = "processing"
    REQUIRES_ACTION = "requires_action"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PaymentMethod(str, Enum):
    """Payment methods a caller can request."""

    CASH = "cash"
    DIRECT_CARD = "direct_card"
    EMBEDDED_FORM_PROVIDER = "embedded_form_provider"
    REDIRECT_PROVIDER = "redirect_provider"
    HOSTED_PAGE_PROVIDER = "hosted_page_provider"


class FailureReason(str, Enum):
    """Categorized reasons for a failed attempt."""

    PROVIDER_REJECTED = "provider_rejected"
    PROVIDER_TIMEOUT = "provider_timeout"
    CONFIRMATION_TIMEOUT = "confirmation_timeout"
    DUPLICATE_PAYMENT = "duplicate_payment"


class ConfirmationStatus(str, Enum):
    """What a provider reports about an out-of-band confirmation."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not ConfirmationStatus.PENDING


class NotificationKind(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


ONLINE_METHODS = {
    PaymentMethod.EMBEDDED_FORM_PROVIDER,
    PaymentMethod.REDIRECT_PROVIDER,
    PaymentMethod.HOSTED_PAGE_PROVIDER,
}
