"""
Order collaborator.

The engine needs three things from whoever owns orders: the total to
charge, the current payment summary, and a way to flag the order paid.
SqlOrderService provides them on top of the orders table.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_engine.config import settings
from payment_engine.errors import NotFound
from payment_engine.models.payment import Order


@dataclass(frozen=True)
class OrderPaymentSummary:
    order_id: str
    total_amount: float
    currency: str
    payment_id: Optional[str]
    is_paid: bool


class OrderService(Protocol):
    async def get_order_total(self, order_id: str) -> tuple[float, str]:
        ...

    async def get_payment_summary(self, order_id: str) -> OrderPaymentSummary:
        ...

    async def mark_paid(self, order_id: str, payment_id: str) -> bool:
        """Flag the order paid; False if it already was."""
        ...


class SqlOrderService:
    """Order collaborator backed by the orders table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def _load(self, session: AsyncSession, order_id: str) -> Order:
        order = await session.get(Order, order_id)
        if order is None:
            raise NotFound(f"Order not found: {order_id}")
        return order

    async def get_order_total(self, order_id: str) -> tuple[float, str]:
        async with self._session_factory() as session:
            order = await self._load(session, order_id)
            return order.total_amount, order.currency or settings.default_currency

    async def get_payment_summary(self, order_id: str) -> OrderPaymentSummary:
        async with self._session_factory() as session:
            order = await self._load(session, order_id)
            return OrderPaymentSummary(
                order_id=order.id,
                total_amount=order.total_amount,
                currency=order.currency or settings.default_currency,
                payment_id=order.payment_id,
                is_paid=bool(order.is_paid),
            )

    async def mark_paid(self, order_id: str, payment_id: str) -> bool:
        async with self._session_factory() as session:
            # Conditional update: only one writer can flip is_paid.
            result = await session.execute(
                update(Order)
                .where(Order.id == order_id, Order.is_paid == False)  # noqa: E712
                .values(is_paid=True, payment_id=payment_id, paid_at=datetime.now(timezone.utc))
            )
            await session.commit()
            if result.rowcount:
                return True
            await self._load(session, order_id)
            return False
