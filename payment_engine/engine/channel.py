"""
Confirmation channel.

Inbound confirmations for redirect-style providers (webhooks, return-URL
hits) are written here, keyed by provider_ref. The only reader is the
ConfirmationPoller watching that reference, which applies the outcome
to the intent. Nothing else ever learns about an external redirect's
result through shared state.
"""

import asyncio
from typing import Optional

from payment_engine.providers.base import ConfirmationOutcome


class ConfirmationChannel:
    def __init__(self):
        self._queues: dict[str, asyncio.Queue[ConfirmationOutcome]] = {}

    def _queue(self, provider_ref: str) -> asyncio.Queue[ConfirmationOutcome]:
        return self._queues.setdefault(provider_ref, asyncio.Queue())

    def publish(self, provider_ref: str, outcome: ConfirmationOutcome) -> None:
        self._queue(provider_ref).put_nowait(outcome)

    async def receive(self, provider_ref: str, timeout: float) -> Optional[ConfirmationOutcome]:
        """Wait up to timeout seconds for an outcome; None if nothing arrived."""
        queue = self._queue(provider_ref)
        if not queue.empty():
            return queue.get_nowait()
        if timeout <= 0:
            return None
        try:
            return await asyncio.wait_for(queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def has_pending(self, provider_ref: str) -> bool:
        queue = self._queues.get(provider_ref)
        return bool(queue and not queue.empty())

    def discard(self, provider_ref: str) -> None:
        self._queues.pop(provider_ref, None)
