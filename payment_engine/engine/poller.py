"""
Confirmation poller for out-of-band providers.

Each poller is an asyncio task bound to one intent. Per iteration it:
  1. Waits up to `interval` on the confirmation channel for the intent's
     provider_ref (webhooks land there)
  2. If nothing arrived, asks the provider via poll_fn(provider_ref)
  3. On a terminal outcome hands it to the resolver and stops

The overall deadline is `timeout`: once it passes no further poll call
is made and the resolver is told the confirmation timed out. Poll errors,
expected or not, are logged and polling continues until the deadline; a
poller task that dies anyway still resolves its intent as timed out.

Cancellation goes through the PollHandle. The flag is checked at every
iteration boundary, and the resolver re-checks it under the intent lock,
so nothing is written for an intent once its poller was cancelled.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from payment_engine.config import settings
from payment_engine.engine.channel import ConfirmationChannel
from payment_engine.errors import PaymentError, ProviderRejected
from payment_engine.models.enums import ConfirmationStatus
from payment_engine.models.payment import PaymentIntent
from payment_engine.providers.base import ConfirmationOutcome

logger = logging.getLogger("payment_engine.poller")

PollFn = Callable[[str], Awaitable[ConfirmationOutcome]]


class PollHandle:
    """Cancellation token and status of one running poller."""

    def __init__(self, intent_id: str, provider_ref: str, loop: asyncio.AbstractEventLoop):
        self.intent_id = intent_id
        self.provider_ref = provider_ref
        self.polls = 0
        self.outcome: Optional[ConfirmationOutcome] = None
        self.timed_out = False
        self._loop = loop
        self._cancelled = False
        self._task: Optional[asyncio.Task] = None
        self._resolution: Optional[asyncio.Future] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def done(self) -> bool:
        return self._task is None or self._task.done()

    def cancel(self) -> None:
        """Stop the poller. Idempotent; callable from any task or thread."""
        self._cancelled = True
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._cancel_task()
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._cancel_task)

    def _cancel_task(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait(self) -> None:
        """Wait until the poller task, and any resolution it started, has finished."""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
        if self._resolution is not None:
            await asyncio.gather(self._resolution, return_exceptions=True)


# Resolver receives the terminal outcome, or None when the deadline passed.
Resolver = Callable[[PollHandle, Optional[ConfirmationOutcome]], Awaitable[None]]


class ConfirmationPoller:
    def __init__(self, channel: ConfirmationChannel, resolver: Resolver):
        self._channel = channel
        self._resolver = resolver
        self._handles: dict[str, PollHandle] = {}
        self._orphaned: set[asyncio.Future] = set()

    def active(self, intent_id: str) -> Optional[PollHandle]:
        handle = self._handles.get(intent_id)
        if handle is None or handle.done:
            return None
        return handle

    def __len__(self) -> int:
        return sum(1 for handle in self._handles.values() if not handle.done)

    def start(
        self,
        intent: PaymentIntent,
        poll_fn: PollFn,
        interval: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> PollHandle:
        """
        Start polling for an intent's confirmation.

        Only one poller runs per intent; starting again returns the
        handle of the one already running.
        """
        existing = self.active(intent.id)
        if existing is not None:
            return existing

        interval = settings.poll_interval_seconds if interval is None else interval
        timeout = settings.poll_timeout_seconds if timeout is None else timeout

        loop = asyncio.get_running_loop()
        handle = PollHandle(intent.id, intent.provider_ref, loop)
        handle._task = loop.create_task(
            self._run(handle, poll_fn, interval, timeout),
            name=f"confirmation-poller-{intent.id}",
        )
        handle._task.add_done_callback(lambda task: self._finished(handle, task))
        self._handles[intent.id] = handle

        logger.info(
            "Polling %s for intent %s every %.1fs (timeout %.0fs)",
            intent.provider_ref,
            intent.id,
            interval,
            timeout,
        )
        return handle

    async def _run(self, handle: PollHandle, poll_fn: PollFn, interval: float, timeout: float) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        ref = handle.provider_ref

        while not handle.cancelled:
            # A confirmation already on the channel is taken even at the deadline.
            remaining = max(deadline - loop.time(), 0)
            outcome = await self._channel.receive(ref, timeout=min(interval, remaining))

            if outcome is None:
                if handle.cancelled or loop.time() >= deadline:
                    break
                handle.polls += 1
                try:
                    outcome = await asyncio.wait_for(poll_fn(ref), timeout=deadline - loop.time())
                except asyncio.TimeoutError:
                    logger.warning("Poll %d for intent %s hit the deadline", handle.polls, handle.intent_id)
                    continue
                except ProviderRejected as e:
                    outcome = ConfirmationOutcome(status=ConfirmationStatus.FAILED, message=e.message)
                except PaymentError as e:
                    logger.warning("Poll %d for intent %s failed, will retry: %s", handle.polls, handle.intent_id, e)
                    continue
                except Exception:
                    logger.exception(
                        "Poll %d for intent %s raised unexpectedly, will retry", handle.polls, handle.intent_id
                    )
                    continue

            if outcome.is_terminal:
                handle.outcome = outcome
                if not handle.cancelled:
                    await self._resolve(handle, outcome)
                return

        if not handle.cancelled:
            handle.timed_out = True
            logger.warning(
                "No confirmation for intent %s after %.0fs (%d polls)",
                handle.intent_id,
                timeout,
                handle.polls,
            )
            await self._resolve(handle, None)

    async def _resolve(self, handle: PollHandle, outcome: Optional[ConfirmationOutcome]) -> None:
        # Shielded: cancelling the poller must not interrupt a write already under way.
        handle._resolution = asyncio.ensure_future(self._resolver(handle, outcome))
        await asyncio.shield(handle._resolution)

    def _finished(self, handle: PollHandle, task: asyncio.Task) -> None:
        if self._handles.get(handle.intent_id) is handle:
            del self._handles[handle.intent_id]
        self._channel.discard(handle.provider_ref)

        if task.cancelled():
            logger.info("Poller for intent %s cancelled after %d polls", handle.intent_id, handle.polls)
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "Poller for intent %s crashed",
                handle.intent_id,
                exc_info=(type(error), error, error.__traceback__),
            )
            if handle._resolution is None and not handle.cancelled:
                # Nothing resolved the intent yet: settle it as timed out.
                handle.timed_out = True
                handle._resolution = asyncio.ensure_future(self._resolver(handle, None))
                self._orphaned.add(handle._resolution)
                handle._resolution.add_done_callback(self._orphan_done)

    def _orphan_done(self, future: asyncio.Future) -> None:
        self._orphaned.discard(future)
        if not future.cancelled() and future.exception() is not None:
            error = future.exception()
            logger.error("Timing out a crashed poller failed", exc_info=(type(error), error, error.__traceback__))

    async def stop_all(self) -> None:
        """Cancel every running poller and wait for them to finish."""
        handles = list(self._handles.values())
        for handle in handles:
            handle.cancel()
        for handle in handles:
            await handle.wait()
        if self._orphaned:
            await asyncio.gather(*list(self._orphaned), return_exceptions=True)
