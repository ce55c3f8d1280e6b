from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.billing import Notification

logger = logging.getLogger(__name__)

# kind -> (title, body)
NOTIFICATION_TEMPLATES: dict[str, tuple[str, str]] = {
    "trial_started": ("Trial started", "Your trial period has begun."),
    "subscription_active": ("Subscription active", "Your plan is active."),
    "subscription_renewed": ("Subscription renewed", "Your subscription was renewed successfully."),
    "payment_failed": ("Payment failed", "We could not process your payment."),
}


class NotificationService:
    """Fire-and-forget in-app notifications (the inbox the dashboard reads)."""

    def __init__(self, db: Session):
        self.db = db

    def notify(self, owner_id: str, kind: str, data: dict[str, Any] | None = None,
               *, dedupe_key: str | None = None) -> bool:
        """Store a notification. Returns False when skipped (duplicate) or failed; never raises."""
        title, body = NOTIFICATION_TEMPLATES.get(kind, (kind, ""))
        payload = {k: str(v) for k, v in (data or {}).items() if v is not None}
        payload["kind"] = kind
        try:
            if dedupe_key and self.db.execute(
                select(Notification.id).where(Notification.dedupe_key == dedupe_key)
            ).first():
                logger.debug("Notification %s already sent", dedupe_key)
                return False
            self.db.add(Notification(
                id=str(uuid.uuid4()),
                owner_id=owner_id,
                kind=kind,
                title=title,
                body=body,
                data=payload,
                dedupe_key=dedupe_key,
                created_at=datetime.utcnow(),
            ))
            self.db.commit()
        except SQLAlchemyError as e:
            # Includes the unique dedupe_key race
            self.db.rollback()
            logger.warning("Notification %s for %s not stored: %s", kind, owner_id, e)
            return False
        logger.info("Notification %s sent to %s", kind, owner_id)
        return True

    def list_for(self, owner_id: str, limit: int = 50) -> list[Notification]:
        rows = self.db.execute(
            select(Notification)
            .where(Notification.owner_id == owner_id)
            .order_by(Notification.created_at.desc())
            .limit(limit)
        ).scalars()
        return list(rows)
