from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.rental_models import NotificationQueue, utc_now


NOTIFICATION_MAX_ATTEMPTS = int(os.environ.get("NOTIFICATION_MAX_ATTEMPTS") or "5")
NOTIFICATION_BACKOFF_SECONDS = int(os.environ.get("NOTIFICATION_BACKOFF_SECONDS") or "60")
NOTIFY_LOGGER = logging.getLogger("equipment_rental.notifications")

Sender = Callable[[NotificationQueue], None]


def log_sender(notification: NotificationQueue) -> None:
    NOTIFY_LOGGER.info(
        "Notify user=%s type=%s reservation=%s: %s",
        notification.RecipientUserID,
        notification.NotificationType,
        notification.ReservationID,
        notification.Payload,
    )


def enqueue_notification(
    db: Session,
    *,
    tenant_id: int,
    recipient_user_id: int | None,
    notification_type: str,
    payload: str,
    reservation_id: int | None = None,
) -> NotificationQueue:
    """Queue a notification in the caller's transaction; delivery happens in dispatch_pending."""
    now = utc_now()
    notification = NotificationQueue(
        TenantID=tenant_id,
        ReservationID=reservation_id,
        RecipientUserID=recipient_user_id,
        NotificationType=notification_type,
        Payload=payload[:2000],
        Attempts=0,
        NextAttemptAt=now,
        CreatedAt=now,
    )
    db.add(notification)
    return notification


def _backoff(attempts: int) -> timedelta:
    return timedelta(seconds=NOTIFICATION_BACKOFF_SECONDS * (2 ** max(attempts - 1, 0)))


def dispatch_pending(
    db: Session,
    tenant_id: int,
    sender: Sender | None = None,
    *,
    limit: int = 100,
    now: datetime | None = None,
) -> dict[str, int]:
    """Deliver due notifications one by one, committing after each.

    A failing sender only reschedules its own row; it never touches reservation state.
    """
    deliver = sender or log_sender
    current = now or utc_now()
    due = db.execute(
        select(NotificationQueue)
        .where(NotificationQueue.TenantID == tenant_id)
        .where(NotificationQueue.SentAt.is_(None))
        .where(NotificationQueue.FailedAt.is_(None))
        .where(NotificationQueue.NextAttemptAt <= current)
        .order_by(NotificationQueue.NotificationID.asc())
        .limit(limit)
    ).scalars().all()

    stats = {"sent": 0, "retrying": 0, "failed": 0}
    for notification in due:
        notification.Attempts = int(notification.Attempts or 0) + 1
        try:
            deliver(notification)
        except Exception as exc:
            notification.LastError = str(exc)[:1000]
            if notification.Attempts >= NOTIFICATION_MAX_ATTEMPTS:
                notification.FailedAt = current
                stats["failed"] += 1
                NOTIFY_LOGGER.error(
                    "Giving up on notification %s after %s attempts: %s",
                    notification.NotificationID,
                    notification.Attempts,
                    exc,
                )
            else:
                notification.NextAttemptAt = current + _backoff(notification.Attempts)
                stats["retrying"] += 1
                NOTIFY_LOGGER.warning(
                    "Notification %s failed (attempt %s), retry at %s: %s",
                    notification.NotificationID,
                    notification.Attempts,
                    notification.NextAttemptAt,
                    exc,
                )
        else:
            notification.SentAt = current
            notification.LastError = None
            stats["sent"] += 1
        db.commit()
    return stats


def list_pending(db: Session, tenant_id: int) -> list[NotificationQueue]:
    return list(
        db.execute(
            select(NotificationQueue)
            .where(NotificationQueue.TenantID == tenant_id)
            .where(NotificationQueue.SentAt.is_(None))
            .where(NotificationQueue.FailedAt.is_(None))
            .order_by(NotificationQueue.NotificationID.asc())
        ).scalars().all()
    )


def serialize_notification(n: NotificationQueue) -> dict:
    return {
        "notificationID": n.NotificationID,
        "reservationID": n.ReservationID,
        "recipientUserID": n.RecipientUserID,
        "type": n.NotificationType,
        "payload": n.Payload,
        "attempts": n.Attempts,
        "lastError": n.LastError,
        "nextAttemptAt": n.NextAttemptAt,
        "createdAt": n.CreatedAt,
        "sentAt": n.SentAt,
    }
