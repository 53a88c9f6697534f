"""
Notification dispatch port.

Approval, rejection and cancellation notices (email in the back office)
are delivered by an external collaborator.  The settlement service hands a
``DocumentNotification`` to the injected ``Notifier`` after its transaction
commits and never waits on, or fails because of, the delivery.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Protocol
from uuid import UUID

from settlement_kernel.logging_config import get_logger

logger = get_logger("services.notifications")


@dataclass(frozen=True)
class DocumentNotification:
    event: str
    document_id: UUID
    document_number: str
    document_kind: str
    counterparty_id: str
    actor: str
    occurred_at: datetime
    details: Mapping[str, Any] = field(default_factory=dict)


class Notifier(Protocol):
    def notify(self, notification: DocumentNotification) -> None: ...


class NullNotifier:
    """Default notifier: drops every notification."""

    def notify(self, notification: DocumentNotification) -> None:
        return None


class LoggingNotifier:
    """Writes each notification as a structured log record."""

    def notify(self, notification: DocumentNotification) -> None:
        logger.info("document_notification", extra={
            "event": notification.event,
            "document_id": str(notification.document_id),
            "document_number": notification.document_number,
            "document_kind": notification.document_kind,
            "counterparty_id": notification.counterparty_id,
            "actor": notification.actor,
            **{f"detail_{k}": v for k, v in notification.details.items()},
        })


def dispatch(notifier: Notifier, notification: DocumentNotification) -> None:
    """Fire-and-forget delivery: failures are logged and never propagate."""
    try:
        notifier.notify(notification)
    except Exception:
        logger.exception("notification_dispatch_failed", extra={
            "event": notification.event,
            "document_id": str(notification.document_id),
        })
