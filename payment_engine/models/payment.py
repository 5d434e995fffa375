"""SQLAlchemy models for the payment engine."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import DeclarativeBase, relationship


class Base(DeclarativeBase):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


class PaymentIntent(Base):
    """
    One attempt to collect money for an order.

    Created once per order request, mutated only through the state machine,
    never deleted. Terminal records (completed, cancelled, failed with
    attempts exhausted) stay in place for audit and reconciliation.
    """

    __tablename__ = "payment_intents"
    __table_args__ = (
        # At most one completed payment per order, whatever the process.
        Index(
            "uq_order_completed_payment",
            "order_id",
            unique=True,
            sqlite_where=text("status = 'completed'"),
            postgresql_where=text("status = 'completed'"),
        ),
    )

    id = Column(String(16), primary_key=True, default=_new_id)
    order_id = Column(String(100), nullable=False, index=True)
    method = Column(String(30), nullable=False)  # effective method after routing
    provider = Column(String(30), nullable=False)  # e.g. "cash", "mock_stripe", "mock_iyzico"
    country = Column(String(60), nullable=True)  # as declared by the payer

    amount = Column(Float, nullable=False)
    currency = Column(String(3), nullable=False, default="USD")

    status = Column(String(20), nullable=False, default="created")
    provider_ref = Column(String(255), nullable=True, unique=True)
    action_url = Column(String(500), nullable=True)  # where the payer finishes, for hosted checkouts
    attempts = Column(Integer, nullable=False, default=0)

    failure_reason = Column(String(40), nullable=True)
    failure_message = Column(Text, nullable=True)  # provider message, verbatim
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    transitions = relationship("PaymentTransition", back_populates="intent", lazy="raise")


class PaymentTransition(Base):
    """Append-only history of every state change applied to an intent."""

    __tablename__ = "payment_transitions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    intent_id = Column(String(16), ForeignKey("payment_intents.id"), nullable=False, index=True)
    from_status = Column(String(20), nullable=False)
    to_status = Column(String(20), nullable=False)
    reason = Column(String(240), nullable=True)
    details = Column(Text, nullable=True)  # JSON
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    intent = relationship("PaymentIntent", back_populates="transitions")


class AuditLog(Base):
    """
    Immutable audit trail entry.

    Routing decisions, provider calls, ignored confirmations and
    reconciliation all get an entry. These are append-only and never
    modified.
    """

    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    intent_id = Column(String(16), nullable=True, index=True)
    order_id = Column(String(100), nullable=True, index=True)
    action = Column(String(50), nullable=False)
    details = Column(Text, nullable=True)
    timestamp = Column(DateTime(timezone=True), default=_utcnow)


class Order(Base):
    """
    Payment summary of an order, owned by the order collaborator.

    The engine reads the total and flips is_paid exactly once.
    """

    __tablename__ = "orders"

    id = Column(String(100), primary_key=True)
    total_amount = Column(Float, nullable=False)
    currency = Column(String(3), default="USD")
    is_paid = Column(Boolean, nullable=False, default=False)
    payment_id = Column(String(16), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
