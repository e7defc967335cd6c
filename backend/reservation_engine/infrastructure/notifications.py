from __future__ import annotations

import json
import logging

from ..domain.gateways import Notification, Notifier

logger = logging.getLogger(__name__)


class LoggingNotifier(Notifier):
    """Hands notifications to the delivery pipeline by logging them as JSON.

    Delivery (email, push) is owned by the notification service, which
    consumes these lines.
    """

    def __init__(self, logger_name: str = "notifications") -> None:
        self._logger = logging.getLogger(logger_name)

    async def send(self, notification: Notification) -> None:
        self._logger.info(
            json.dumps(
                {
                    "recipient": notification.recipient,
                    "template_id": notification.template_id,
                    "variables": notification.variables,
                },
                ensure_ascii=True,
                default=str,
            )
        )


async def dispatch_notifications(notifier: Notifier, notifications: list[Notification]) -> int:
    """Fire-and-forget delivery. Returns how many were handed off successfully."""
    sent = 0
    for notification in notifications:
        try:
            await notifier.send(notification)
        except Exception:
            logger.exception(
                "Failed to send notification %s to %s", notification.template_id, notification.recipient
            )
            continue
        sent += 1
    return sent
