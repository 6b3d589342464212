"""
Vendor notifications (fire-and-forget).

Delivery itself belongs to an external messaging service; this module is the seam.
The default dispatcher hands each message to the logger and keeps nothing in
process. A real transport (or a recording double in tests) subclasses
NotificationService, overrides deliver() and is installed with
set_notification_service(app, service).

Callers that notify after a committed transaction must never let a failure here
propagate (see awards.notify_award_outcome).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from flask import Flask, current_app

logger = logging.getLogger(__name__)

EXTENSION_KEY = "bidtab.notifications"


@dataclass
class OutgoingMessage:
    to: str
    subject: str
    body: str


@dataclass
class NotificationService:
    sender: str = "procurement@example.com"
    enabled: bool = True

    def _dispatch(self, message: OutgoingMessage) -> None:
        if not self.enabled:
            logger.debug("Notifications disabled; dropping message to %s", message.to)
            return
        if not message.to:
            raise ValueError(f"No recipient address for '{message.subject}'")
        self.deliver(message)

    def deliver(self, message: OutgoingMessage) -> None:
        logger.info("Notification from %s to %s: %s", self.sender, message.to, message.subject)

    def send_award_notification(self, email: str, vendor_name: str, rfp_title: str, amount: Decimal) -> None:
        self._dispatch(
            OutgoingMessage(
                to=email,
                subject=f"Award notice: {rfp_title}",
                body=(
                    f"Dear {vendor_name},\n\n"
                    f"Your bid for '{rfp_title}' has been awarded in the amount of {amount:,.2f}."
                ),
            )
        )

    def send_unsuccessful_bid_notification(self, email: str, vendor_name: str, rfp_title: str) -> None:
        self._dispatch(
            OutgoingMessage(
                to=email,
                subject=f"Bid result: {rfp_title}",
                body=(
                    f"Dear {vendor_name},\n\n"
                    f"Thank you for bidding on '{rfp_title}'. Your bid was not selected."
                ),
            )
        )


def init_notifications(app: Flask) -> None:
    app.extensions[EXTENSION_KEY] = NotificationService(
        sender=app.config.get("NOTIFICATION_SENDER", "procurement@example.com"),
        enabled=bool(app.config.get("NOTIFICATIONS_ENABLED", True)),
    )


def set_notification_service(app: Flask, service) -> None:
    app.extensions[EXTENSION_KEY] = service


def get_notification_service():
    return current_app.extensions[EXTENSION_KEY]
