"""
services/notification/router.py
Device token registration and the in-app notification inbox.
"""

from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from shared.errors import NotFoundError
from shared.middleware.auth import TokenData, get_token_data
from shared.models.models import DeviceToken, Notification
from shared.schemas.schemas import DeviceTokenRequest, MessageResponse, NotificationResponse

router = APIRouter(prefix="/notifications", tags=["Notifications"])


# ── Device Tokens ─────────────────────────────────────────────

@router.put("/device-token", response_model=MessageResponse)
async def register_device_token(
    payload: DeviceTokenRequest,
    token: TokenData = Depends(get_token_data),
    db: AsyncSession = Depends(get_db),
):
    """Register (or move) an FCM token to the current user."""
    result = await db.execute(select(DeviceToken).where(DeviceToken.token == payload.token))
    device = result.scalar_one_or_none()
    if device:
        # A device that changed hands belongs to whoever registered it last
        device.user_id = token.user_id
        device.platform = payload.platform
    else:
        db.add(DeviceToken(user_id=token.user_id, token=payload.token, platform=payload.platform))
    await db.flush()
    return MessageResponse(message="Device token registered")


@router.delete("/device-token", response_model=MessageResponse)
async def remove_device_token(
    payload: DeviceTokenRequest,
    token: TokenData = Depends(get_token_data),
    db: AsyncSession = Depends(get_db),
):
    await db.execute(
        delete(DeviceToken).where(
            DeviceToken.token == payload.token,
            DeviceToken.user_id == token.user_id,
        )
    )
    return MessageResponse(message="Device token removed")


# ── Inbox ─────────────────────────────────────────────────────

@router.get("", response_model=List[NotificationResponse])
async def get_my_notifications(
    unread_only: bool = Query(False),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    token: TokenData = Depends(get_token_data),
    db: AsyncSession = Depends(get_db),
):
    """Get authenticated user's in-app notifications."""
    query = (
        select(Notification)
        .where(Notification.user_id == token.user_id)
        .order_by(Notification.created_at.desc())
    )
    if unread_only:
        query = query.where(Notification.is_read == False)  # noqa: E712

    query = query.offset((page - 1) * page_size).limit(page_size)
    result = await db.execute(query)
    return [NotificationResponse.model_validate(n) for n in result.scalars()]


@router.get("/unread-count")
async def unread_count(
    token: TokenData = Depends(get_token_data),
    db: AsyncSession = Depends(get_db),
):
    count = await db.scalar(
        select(func.count(Notification.id)).where(
            Notification.user_id == token.user_id,
            Notification.is_read == False,  # noqa: E712
        )
    )
    return {"unread_count": count or 0}


@router.post("/read-all", response_model=MessageResponse)
async def mark_all_read(
    token: TokenData = Depends(get_token_data),
    db: AsyncSession = Depends(get_db),
):
    await db.execute(
        update(Notification)
        .where(Notification.user_id == token.user_id, Notification.is_read == False)  # noqa: E712
        .values(is_read=True)
    )
    return MessageResponse(message="All notifications marked as read")


@router.post("/{notification_id}/read", response_model=MessageResponse)
async def mark_read(
    notification_id: UUID,
    token: TokenData = Depends(get_token_data),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        update(Notification)
        .where(Notification.id == notification_id, Notification.user_id == token.user_id)
        .values(is_read=True)
    )
    if not result.rowcount:
        raise NotFoundError("Notification not found")
    return MessageResponse(message="Marked as read")
