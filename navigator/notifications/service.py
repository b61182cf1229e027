"""In-app notifications for filing status changes."""

import logging
import uuid
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from navigator.models.notification import Notification

logger = logging.getLogger(__name__)


async def send_notification(
    db: AsyncSession,
    user_id: uuid.UUID,
    title: str,
    message: str,
    type: str = "info",
    metadata: dict[str, Any] | None = None,
) -> Notification | None:
    """Persist a notification for `user_id`.

    Errors are logged and swallowed: a failed notification must never
    undo the filing state change that triggered it.
    """
    try:
        notification = Notification(user_id=user_id, title=title, message=message, type=type, extra=metadata)
        db.add(notification)
        await db.flush()
        return notification
    except Exception as e:
        logger.error("Failed to store notification for user %s: %s", user_id, e)
        return None
