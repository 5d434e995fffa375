"""
Payment state machine.

    CREATED → PROCESSING → [REQUIRES_ACTION] → COMPLETED | FAILED | CANCELLED

REQUIRES_ACTION is skipped by providers that settle in one round trip
(cash, direct capture). FAILED may go back to PROCESSING while the intent
has attempts left; COMPLETED and CANCELLED are final.

The machine is the only writer of PaymentIntent.status. Each applied
transition is appended to payment_transitions and the audit trail; a
transition outside the table raises InvalidTransition, which is logged as
a defect because no business outcome ever produces one.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from payment_engine.audit.logger import append_note, log_event
from payment_engine.config import settings
from payment_engine.errors import InvalidTransition, PaymentError
from payment_engine.models.enums import FailureReason, PaymentStatus
from payment_engine.models.payment import PaymentIntent, PaymentTransition

logger = logging.getLogger("payment_engine.state_machine")


TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.CREATED: frozenset({PaymentStatus.PROCESSING, PaymentStatus.CANCELLED}),
    PaymentStatus.PROCESSING: frozenset({
        PaymentStatus.REQUIRES_ACTION,
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    }),
    PaymentStatus.REQUIRES_ACTION: frozenset({
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    }),
    PaymentStatus.FAILED: frozenset({PaymentStatus.PROCESSING, PaymentStatus.CANCELLED}),
    PaymentStatus.COMPLETED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
}


class PaymentStateMachine:
    """Validates and applies status transitions for payment intents."""

    def __init__(self, max_attempts: Optional[int] = None):
        self.max_attempts = settings.max_attempts if max_attempts is None else max_attempts

    @staticmethod
    def next_states(status: PaymentStatus | str) -> frozenset[PaymentStatus]:
        return TRANSITIONS[PaymentStatus(status)]

    def can_retry(self, intent: PaymentIntent) -> bool:
        return intent.status == PaymentStatus.FAILED and intent.attempts < self.max_attempts

    def is_terminal(self, intent: PaymentIntent) -> bool:
        if intent.status == PaymentStatus.FAILED:
            return not self.can_retry(intent)
        return not self.next_states(intent.status)

    def transition(
        self,
        session: AsyncSession,
        intent: PaymentIntent,
        to_status: PaymentStatus,
        reason: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> PaymentTransition:
        """
        Apply a single transition to an intent.

        Entering PROCESSING starts a new attempt and increments the
        attempt counter; from FAILED that is only allowed while attempts
        remain.

        Raises:
            InvalidTransition: The move is not in the transition table.
        """
        from_status = PaymentStatus(intent.status)
        allowed = to_status in TRANSITIONS[from_status]
        if allowed and from_status is PaymentStatus.FAILED and to_status is PaymentStatus.PROCESSING:
            allowed = intent.attempts < self.max_attempts

        if not allowed:
            logger.error(
                "DEFECT: rejected transition %s -> %s for intent %s (attempts=%d)",
                from_status.value,
                to_status.value,
                intent.id,
                intent.attempts or 0,
            )
            raise InvalidTransition(intent.id, from_status.value, to_status.value)

        now = datetime.now(timezone.utc)
        intent.status = to_status.value
        intent.updated_at = now

        if to_status is PaymentStatus.PROCESSING:
            intent.attempts = (intent.attempts or 0) + 1
            intent.failure_reason = None
            intent.failure_message = None
        elif to_status is PaymentStatus.COMPLETED:
            intent.completed_at = now

        intent.notes = append_note(
            intent.notes,
            f"{from_status.value} -> {to_status.value}" + (f": {reason}" if reason else ""),
        )

        entry = PaymentTransition(
            intent_id=intent.id,
            from_status=from_status.value,
            to_status=to_status.value,
            reason=reason,
            details=json.dumps(details, default=str) if details else None,
            created_at=now,
        )
        session.add(entry)

        log_event(session, "status_changed", intent_id=intent.id, order_id=intent.order_id, details={
            "from": from_status.value,
            "to": to_status.value,
            "attempt": intent.attempts,
            "reason": reason,
        })
        return entry

    def fail(
        self,
        session: AsyncSession,
        intent: PaymentIntent,
        reason: FailureReason,
        message: str,
    ) -> PaymentTransition:
        """Move an intent to FAILED, keeping the provider message verbatim."""
        entry = self.transition(session, intent, PaymentStatus.FAILED, reason=reason.value, details={
            "message": message,
        })
        intent.failure_reason = reason.value
        intent.failure_message = message
        return entry

    def fail_with(self, session: AsyncSession, intent: PaymentIntent, error: PaymentError) -> PaymentTransition:
        reason = getattr(error, "reason", FailureReason.PROVIDER_REJECTED)
        return self.fail(session, intent, reason, error.message)
