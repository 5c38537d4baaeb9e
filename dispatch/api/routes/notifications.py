"""
Notification feed
=================

GET  /api/v1/notifications                      -- the caller's notifications
POST /api/v1/notifications/{notification_id}/read -- mark one as read
"""

from fastapi import APIRouter, Depends, Query, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from dispatch.api.auth import Actor, get_current_actor
from dispatch.api.dependencies import get_db
from dispatch.api.middleware import limiter
from dispatch.api.schemas import NotificationResponse
from dispatch.config import settings
from dispatch.domain.errors import NotFound
from dispatch.infrastructure.repositories import NotificationRepository

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=list[NotificationResponse])
@limiter.limit(settings.rate_limit)
async def list_notifications(
    request: Request,
    unread_only: bool = False,
    limit: int = Query(100, ge=1, le=500),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    return await NotificationRepository(db).list_for_user(
        actor.user_id, unread_only=unread_only, limit=limit
    )


@router.post("/{notification_id}/read", status_code=204)
@limiter.limit(settings.rate_limit)
async def mark_read(
    request: Request,
    notification_id: str,
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    if not await NotificationRepository(db).mark_read(notification_id, actor.user_id):
        raise NotFound(f"Notification {notification_id} not found")
    return Response(status_code=204)
