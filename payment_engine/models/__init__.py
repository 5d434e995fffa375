from payment_engine.models.enums import (
    ConfirmationStatus,
    FailureReason,
    NotificationKind,
    PaymentMethod,
    PaymentStatus,
)
from payment_engine.models.payment import AuditLog, Base, Order, PaymentIntent, PaymentTransition

__all__ = [
    "Base",
    "PaymentIntent",
    "PaymentTransition",
    "AuditLog",
    "Order",
    "PaymentStatus",
    "PaymentMethod",
    "FailureReason",
    "ConfirmationStatus",
    "NotificationKind",
]
