"""
VBMS Backend - Notifications Router
Per-user notification inbox plus admin broadcast and maintenance.
"""
from datetime import datetime
from typing import List, Optional, Dict, Any
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..database import get_db
from ..models.db_models import UserDB, NotificationPriority, NotificationStatus, UserRole
from ..auth import get_current_user, require_admin_permission
from ..services.notifications import (
    NotificationService, RecipientNotFoundError, NoRecipientsError, to_client_format,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["notifications"])

require_notification_admin = require_admin_permission("can_manage_notifications")


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class NotificationPayload(BaseModel):
    title: str
    message: str
    type: str
    priority: NotificationPriority = NotificationPriority.NORMAL
    category: str = "business"
    action: Optional[Dict[str, Any]] = None
    content: Optional[Dict[str, Any]] = None
    sound: Optional[Dict[str, Any]] = None
    display: Optional[Dict[str, Any]] = None
    scheduled_for: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    tags: Optional[List[str]] = None
    metadata: Optional[Dict[str, Any]] = None

    def payload_fields(self) -> Dict[str, Any]:
        return {
            "priority": self.priority,
            "category": self.category,
            "action": self.action,
            "content": self.content,
            "sound": self.sound,
            "display": self.display,
            "scheduled_for": self.scheduled_for,
            "expires_at": self.expires_at,
            "tags": self.tags,
            "extra_metadata": self.metadata,
        }


class CreateNotificationRequest(NotificationPayload):
    recipient_user_id: Optional[str] = None
    recipient_role: Optional[UserRole] = None


class BulkNotificationRequest(NotificationPayload):
    user_ids: Optional[List[str]] = None
    user_role: Optional[UserRole] = None


# =============================================================================
# HELPERS
# =============================================================================

def _get_or_404(service: NotificationService, user: UserDB, notification_id: str):
    notification = service.get_for_user(user, notification_id)
    if not notification:
        raise HTTPException(status_code=404, detail="Notification not found")
    return notification


# =============================================================================
# USER ENDPOINTS
# =============================================================================

@router.get("")
async def list_notifications(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[NotificationStatus] = None,
    type: Optional[str] = None,
    priority: Optional[NotificationPriority] = None,
    include_expired: bool = False,
    current_user: UserDB = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    service = NotificationService(db)
    result = service.find_for_user(
        current_user, status=status, type=type, priority=priority,
        include_expired=include_expired, page=page, limit=limit,
    )
    return {
        "success": True,
        "data": {
            "notifications": [to_client_format(n) for n in result.items],
            "pagination": result.to_dict(),
            "unread_count": service.unread_count(current_user),
        },
    }


@router.get("/unread")
async def list_unread(
    limit: int = Query(50, ge=1, le=200),
    current_user: UserDB = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    service = NotificationService(db)
    notifications = service.find_unread(current_user, limit)
    return {
        "success": True,
        "data": {
            "notifications": [to_client_format(n) for n in notifications],
            "count": service.unread_count(current_user),
        },
    }


@router.get("/count")
async def unread_count(
    current_user: UserDB = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    service = NotificationService(db)
    return {"success": True, "data": {"unread_count": service.unread_count(current_user)}}


@router.put("/read-all")
async def mark_all_read(
    current_user: UserDB = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    service = NotificationService(db)
    updated = service.mark_all_read(current_user)
    return {
        "success": True,
        "message": "All notifications marked as read",
        "data": {"updated": updated},
    }


@router.get("/stats/overview")
async def stats_overview(
    days: int = Query(30, ge=1, le=365),
    current_user: UserDB = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    service = NotificationService(db)
    return {
        "success": True,
        "data": {
            "stats": service.stats(current_user, days),
            "unread_count": service.unread_count(current_user),
        },
    }


@router.post("")
async def create_notification(
    request: CreateNotificationRequest,
    current_user: UserDB = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Send a notification to one user or to every user of a role."""
    service = NotificationService(db)
    try:
        notification = service.create(
            request.title, request.message, request.type,
            sender=current_user,
            recipient_user_id=request.recipient_user_id,
            recipient_role=request.recipient_role.value if request.recipient_role else None,
            **request.payload_fields(),
        )
    except RecipientNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to create notification: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to create notification: {e}")

    return {
        "success": True,
        "message": "Notification created successfully",
        "data": to_client_format(notification),
    }


# =============================================================================
# ADMIN ENDPOINTS
# =============================================================================

@router.post("/bulk")
async def create_bulk_notification(
    request: BulkNotificationRequest,
    admin: UserDB = Depends(require_notification_admin),
    db: Session = Depends(get_db)
):
    service = NotificationService(db)
    try:
        notifications = service.create_bulk(
            request.title, request.message, request.type,
            sender=admin,
            user_ids=request.user_ids,
            user_role=request.user_role.value if request.user_role else None,
            **request.payload_fields(),
        )
    except (NoRecipientsError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to create bulk notification: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to create bulk notification: {e}")

    return {
        "success": True,
        "message": f"Bulk notification sent to {len(notifications)} users",
        "data": {"count": len(notifications)},
    }


@router.get("/admin/all")
async def admin_list_notifications(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    type: Optional[str] = None,
    priority: Optional[NotificationPriority] = None,
    status: Optional[NotificationStatus] = None,
    days: Optional[int] = Query(30, ge=1),
    user_id: Optional[str] = None,
    admin: UserDB = Depends(require_notification_admin),
    db: Session = Depends(get_db)
):
    service = NotificationService(db)
    result = service.admin_list(
        page=page, limit=limit, type=type, priority=priority,
        status=status, days=days, user_id=user_id,
    )
    return {
        "success": True,
        "data": {
            "notifications": [to_client_format(n) for n in result.items],
            "pagination": result.to_dict(),
        },
    }


@router.get("/admin/analytics")
async def admin_analytics(
    days: int = Query(30, ge=1, le=365),
    admin: UserDB = Depends(require_notification_admin),
    db: Session = Depends(get_db)
):
    service = NotificationService(db)
    return {"success": True, "data": service.analytics(days)}


@router.post("/admin/cleanup")
async def admin_cleanup(
    admin: UserDB = Depends(require_notification_admin),
    db: Session = Depends(get_db)
):
    service = NotificationService(db)
    deleted = service.cleanup_expired()
    return {
        "success": True,
        "message": f"Cleaned up {deleted} expired notifications",
        "data": {"deleted_count": deleted},
    }


# =============================================================================
# SINGLE NOTIFICATION ENDPOINTS
# =============================================================================

@router.get("/{notification_id}")
async def get_notification(
    notification_id: str,
    current_user: UserDB = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    service = NotificationService(db)
    notification = _get_or_404(service, current_user, notification_id)
    return {"success": True, "data": to_client_format(notification)}


@router.put("/{notification_id}/read")
async def mark_read(
    notification_id: str,
    current_user: UserDB = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    service = NotificationService(db)
    notification = _get_or_404(service, current_user, notification_id)
    service.mark_read(notification)
    return {"success": True, "message": "Notification marked as read", "data": to_client_format(notification)}


@router.put("/{notification_id}/archive")
async def archive_notification(
    notification_id: str,
    current_user: UserDB = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    service = NotificationService(db)
    notification = _get_or_404(service, current_user, notification_id)
    service.archive(notification)
    return {"success": True, "message": "Notification archived"}


@router.put("/{notification_id}/dismiss")
async def dismiss_notification(
    notification_id: str,
    current_user: UserDB = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    service = NotificationService(db)
    notification = _get_or_404(service, current_user, notification_id)
    service.dismiss(notification)
    return {"success": True, "message": "Notification dismissed"}


@router.delete("/{notification_id}")
async def delete_notification(
    notification_id: str,
    current_user: UserDB = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    service = NotificationService(db)
    notification = _get_or_404(service, current_user, notification_id)
    service.delete(notification)
    return {"success": True, "message": "Notification deleted"}
