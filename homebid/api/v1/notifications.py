"""In-app notifications produced by lifecycle transitions."""

from __future__ import annotations

import uuid
from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from homebid.api.deps import get_current_user, get_db
from homebid.common.exceptions import NotFoundError
from homebid.common.pagination import PaginatedResponse, PaginationParams, paginate
from homebid.db.models.notification import Notification
from homebid.db.models.user import User

router = APIRouter(prefix="/notifications", tags=["Notifications"])


# ---------- Schemas ----------

class NotificationResponse(BaseModel):
    id: uuid.UUID
    category: str
    title: str
    body: str
    is_read: bool
    metadata: dict | None
    created_at: datetime


class NotificationListResponse(PaginatedResponse[NotificationResponse]):
    unread_count: int


# ---------- Endpoints ----------

@router.get("", response_model=NotificationListResponse)
async def list_notifications(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    params: PaginationParams = Depends(),
    unread_only: bool = False,
):
    query = select(Notification).where(
        Notification.user_id == current_user.id,
        Notification.is_deleted.is_(False),
    )
    if unread_only:
        query = query.where(Notification.is_read.is_(False))
    query = query.order_by(Notification.created_at.desc())

    items, total = await paginate(db, query, params)

    unread_count = (
        await db.execute(
            select(func.count(Notification.id)).where(
                Notification.user_id == current_user.id,
                Notification.is_read.is_(False),
                Notification.is_deleted.is_(False),
            )
        )
    ).scalar() or 0

    return NotificationListResponse(
        items=[_notif_response(n) for n in items],
        total=total, page=params.page, page_size=params.page_size,
        total_pages=params.total_pages(total), unread_count=unread_count,
    )


@router.post("/{notification_id}/read", response_model=NotificationResponse)
async def mark_read(
    notification_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(Notification).where(
            Notification.id == notification_id,
            Notification.user_id == current_user.id,
        )
    )
    notif = result.scalar_one_or_none()
    if not notif:
        raise NotFoundError("Notification", str(notification_id))

    notif.is_read = True
    await db.flush()
    await db.refresh(notif)
    return _notif_response(notif)


@router.post("/read-all")
async def mark_all_read(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await db.execute(
        update(Notification)
        .where(
            Notification.user_id == current_user.id,
            Notification.is_read.is_(False),
        )
        .values(is_read=True)
    )
    await db.flush()
    return {"message": "All notifications marked as read"}


def _notif_response(n: Notification) -> NotificationResponse:
    return NotificationResponse(
        id=n.id, category=n.category, title=n.title, body=n.body,
        is_read=n.is_read, metadata=n.metadata_, created_at=n.created_at,
    )
