"""Notification collaborator: fire-and-forget success/error messages."""

import logging
from typing import Protocol

from payment_engine.models.enums import NotificationKind

logger = logging.getLogger("payment_engine.notifications")


class Notifier(Protocol):
    async def notify(self, kind: NotificationKind, message: str) -> None:
        ...


class LogNotifier:
    """Writes notifications to the application log."""

    async def notify(self, kind: NotificationKind, message: str) -> None:
        level = logging.INFO if kind is NotificationKind.SUCCESS else logging.WARNING
        logger.log(level, "[%s] %s", kind.value, message)


async def send_notification(notifier: Notifier, kind: NotificationKind, message: str) -> None:
    """Deliver a notification without letting delivery failures reach the caller."""
    try:
        await notifier.notify(kind, message)
    except Exception:
        logger.exception("Notification delivery failed (%s): %s", kind.value, message)
