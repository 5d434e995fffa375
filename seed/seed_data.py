"""
Seed the database with sample orders.

Creates:
  - Restaurant-style orders in several currencies, ready to be paid
  - Edge cases: zero total, an order already marked paid

Pay one with, for example:
    curl -X POST localhost:8000/api/payments \\
         -H 'content-type: application/json' \\
         -d '{"order_id": "ORD-1001", "method": "redirect_provider", "country": "Turkey"}'

Run:
    python -m seed.seed_data
"""

import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from payment_engine.database import async_session, init_db
from payment_engine.models.payment import Order


ORDERS = [
    # Dine-in, paid at the counter or by card terminal
    {"id": "ORD-1001", "total_amount": 100.50, "currency": "USD"},
    {"id": "ORD-1002", "total_amount": 42.00, "currency": "USD"},
    {"id": "ORD-1003", "total_amount": 18.75, "currency": "EUR"},

    # Online orders (embedded checkout, or hosted redirect for Turkish payers)
    {"id": "ORD-2001", "total_amount": 1250.00, "currency": "TRY"},
    {"id": "ORD-2002", "total_amount": 86.40, "currency": "EUR"},
    {"id": "ORD-2003", "total_amount": 310.00, "currency": "GBP"},

    # ─── Edge cases ────────────────────────────────────────────────────

    # Nothing to pay → payment request rejected with a validation error
    {"id": "ORD-9001", "total_amount": 0.0, "currency": "USD"},

    # Paid outside the engine → payment request rejected with a conflict
    {"id": "ORD-9002", "total_amount": 55.00, "currency": "USD", "is_paid": True},
]


async def seed():
    """Seed the database with sample orders."""
    await init_db()

    async with async_session() as session:
        # Check if already seeded
        existing = await session.get(Order, "ORD-1001")
        if existing:
            print("Database already seeded. Skipping.")
            return

        for order_data in ORDERS:
            session.add(Order(**order_data))

        await session.commit()
        print(f"Seeded {len(ORDERS)} orders.")


if __name__ == "__main__":
    asyncio.run(seed())
