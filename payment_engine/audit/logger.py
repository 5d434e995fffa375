"""
Immutable audit trail for payment operations.

Every significant event gets an append-only audit log entry with:
  - Intent ID (which payment attempt)
  - Order ID (which order it pays for)
  - Action (what happened)
  - Details (routing decisions, provider responses, error messages)
  - Timestamp (UTC)

Entries are never modified or deleted. Ignored webhook confirmations are
recorded here too, so probing attempts leave a trace without changing
any payment state.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from payment_engine.models.payment import AuditLog

logger = logging.getLogger("payment_engine.audit")


def log_event(
    session: AsyncSession,
    action: str,
    intent_id: Optional[str] = None,
    order_id: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
) -> AuditLog:
    """
    Add an immutable audit log entry to the session.

    Args:
        session: Database session; the entry is committed with the caller's unit of work.
        action: What happened (e.g. "provider_selected", "confirmation_ignored").
        intent_id: The payment intent this event relates to.
        order_id: The order the intent pays for.
        details: Arbitrary context (serialized to JSON).

    Returns:
        The created AuditLog record.
    """
    entry = AuditLog(
        intent_id=intent_id,
        order_id=order_id,
        action=action,
        details=json.dumps(details, default=str) if details else None,
        timestamp=datetime.now(timezone.utc),
    )
    session.add(entry)
    logger.info(
        "AUDIT | order=%s intent=%s action=%s | %s",
        order_id or "-",
        intent_id or "-",
        action,
        json.dumps(details, default=str)[:200] if details else "",
    )
    return entry


def append_note(existing_notes: Optional[str], message: str) -> str:
    """Append a timestamped note to an intent's running notes field."""
    prefix = f"[{datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M UTC')}] "
    new_note = prefix + message
    if not existing_notes:
        return new_note
    return f"{existing_notes}\n{new_note}"
