from __future__ import annotations

from datetime import datetime

from sqlalchemy.orm import Session

from models.reservation_models import AuditLog, NotificationQueue


def log_audit(db: Session, entity_type: str, entity_id: int, action: str, details: str | None = None, user_id: int | None = None) -> None:
    db.add(
        AuditLog(
            EntityType=entity_type,
            EntityID=entity_id,
            Action=action,
            Details=(details or "")[:2000] or None,
            UserID=user_id,
            CreatedAt=datetime.now(),
        )
    )


def queue_notification(
    db: Session,
    *,
    user_id: int | None,
    entity_type: str,
    entity_id: int,
    notification_type: str,
    payload: str,
) -> None:
    # Delivery (push, e-mail, chat) is done by the notifier reading this outbox.
    db.add(
        NotificationQueue(
            UserID=user_id,
            EntityType=entity_type,
            EntityID=entity_id,
            NotificationType=notification_type,
            Payload=payload[:2000],
            CreatedAt=datetime.now(),
        )
    )
