from fastapi import APIRouter, Depends, Query
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from navigator.core.dependencies import get_current_user
from navigator.core.exceptions import NotFoundError
from navigator.db.postgres import get_db
from navigator.models.notification import Notification
from navigator.models.user import User
from navigator.schemas.common import MessageResponse
from navigator.schemas.notification import NotificationResponse

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("/")
async def list_notifications(
    unread_only: bool = Query(False),
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    filters = [Notification.user_id == user.id]
    if unread_only:
        filters.append(Notification.is_read == False)  # noqa: E712

    total = (await db.execute(select(func.count(Notification.id)).where(*filters))).scalar() or 0
    unread = (
        await db.execute(
            select(func.count(Notification.id)).where(
                Notification.user_id == user.id, Notification.is_read == False  # noqa: E712
            )
        )
    ).scalar() or 0
    result = await db.execute(
        select(Notification)
        .where(*filters)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return {
        "items": [NotificationResponse.model_validate(n) for n in result.scalars().all()],
        "total": total,
        "unread": unread,
        "offset": offset,
        "limit": limit,
    }


@router.post("/{notification_id}/read", response_model=NotificationResponse)
async def mark_read(
    notification_id: int,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    notification = await db.get(Notification, notification_id)
    # Other users' notifications are reported as missing
    if not notification or notification.user_id != user.id:
        raise NotFoundError("Notification not found")
    notification.is_read = True
    await db.flush()
    return notification


@router.post("/read-all", response_model=MessageResponse)
async def mark_all_read(
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    result = await db.execute(
        update(Notification)
        .where(Notification.user_id == user.id, Notification.is_read == False)  # noqa: E712
        .values(is_read=True)
    )
    return MessageResponse(message=f"{result.rowcount} notifications marked as read")
