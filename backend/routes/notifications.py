"""
Compliance Case Hub - Notifications Router

Per-user notification feed written by the approval workflows.
"""

from fastapi import APIRouter, Depends, HTTPException, Query
from typing import List, Optional
from pydantic import BaseModel

from .auth import get_current_actor
from services.actors import Actor

router = APIRouter(prefix="/notifications", tags=["notifications"])

# Notification service - set by main app
notification_service = None

def set_dependencies(service):
    global notification_service
    notification_service = service


class MarkReadRequest(BaseModel):
    ids: Optional[List[str]] = None


@router.get("")
async def get_notifications(
    limit: int = Query(50, ge=1, le=200),
    actor: Actor = Depends(get_current_actor)
):
    notifications = await notification_service.get_user_notifications(actor.id, limit=limit)
    unread = sum(1 for n in notifications if n["status"] == "unread")
    return {"notifications": notifications, "unread": unread}


@router.put("/read")
async def mark_notifications_read(body: MarkReadRequest, actor: Actor = Depends(get_current_actor)):
    """Mark the given notifications read, or all of them when `ids` is omitted."""
    updated = await notification_service.mark_as_read(actor.id, body.ids)
    return {"success": True, "updated": updated}


@router.get("/unread-count")
async def get_unread_count(actor: Actor = Depends(get_current_actor)):
    return {"unread_count": await notification_service.get_unread_count(actor.id)}


@router.delete("/{notification_id}")
async def remove_notification(notification_id: str, actor: Actor = Depends(get_current_actor)):
    """Remove a notification from the caller's feed only."""
    removed = await notification_service.remove_notification(actor.id, notification_id)
    if not removed:
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"success": True, "id": notification_id}


@router.delete("")
async def clear_notifications(actor: Actor = Depends(get_current_actor)):
    cleared = await notification_service.clear_all(actor.id)
    return {"success": True, "cleared": cleared}
