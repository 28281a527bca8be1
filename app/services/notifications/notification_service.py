"""
Notification Service

Stores in-app notifications and answers the per-user and admin queries over
them. A user sees notifications addressed to them directly plus those
addressed to their role.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4
import logging

from sqlalchemy import and_, case, func, or_
from sqlalchemy.orm import Session

from ...models.db_models import (
    NotificationDB, NotificationStatus, NotificationPriority, UserDB, UserRole,
)
from ..pagination import Page, paginate

logger = logging.getLogger(__name__)


class RecipientNotFoundError(LookupError):
    pass


class NoRecipientsError(ValueError):
    """A bulk send resolved to no users."""


URGENT_PRIORITIES = (NotificationPriority.URGENT, NotificationPriority.CRITICAL)

# Optional payload fields copied verbatim from create requests
PAYLOAD_FIELDS = ("action", "content", "sound", "display", "scheduled_for", "expires_at", "tags", "extra_metadata")


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Stored timestamps are naive UTC."""
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _role_value(role) -> Optional[str]:
    if role is None:
        return None
    return role.value if isinstance(role, UserRole) else str(role)


def to_client_format(notification: NotificationDB) -> Dict[str, Any]:
    """Serialize a notification the way the client renders it."""
    return {
        "id": notification.id,
        "title": notification.title,
        "message": notification.message,
        "type": notification.type,
        "priority": notification.priority.value if notification.priority else None,
        "category": notification.category,
        "status": notification.status.value if notification.status else None,
        "recipient": {
            "user_id": notification.recipient_user_id,
            "role": notification.recipient_role,
        },
        "sender": {
            "user_id": notification.sender_user_id,
            "name": notification.sender_name,
            "role": notification.sender_role,
            "is_system": bool(notification.sender_is_system),
        },
        "action": notification.action,
        "content": notification.content,
        "sound": notification.sound,
        "display": notification.display,
        "tags": notification.tags or [],
        "metadata": notification.extra_metadata,
        "is_read": notification.status != NotificationStatus.UNREAD,
        "read_at": notification.read_at.isoformat() if notification.read_at else None,
        "scheduled_for": notification.scheduled_for.isoformat() if notification.scheduled_for else None,
        "expires_at": notification.expires_at.isoformat() if notification.expires_at else None,
        "created_at": notification.created_at.isoformat() if notification.created_at else None,
    }


class NotificationService:
    """In-app notification storage and queries."""

    def __init__(self, db_session: Session):
        self.db = db_session

    # =========================================================================
    # VISIBILITY
    # =========================================================================

    def _recipient_filter(self, user: UserDB):
        return or_(
            NotificationDB.recipient_user_id == user.id,
            and_(
                NotificationDB.recipient_user_id.is_(None),
                NotificationDB.recipient_role == _role_value(user.role),
            ),
        )

    def _visible_query(self, user: UserDB, include_expired: bool = False, now: Optional[datetime] = None):
        now = now or datetime.utcnow()
        query = self.db.query(NotificationDB).filter(
            self._recipient_filter(user),
            or_(NotificationDB.scheduled_for.is_(None), NotificationDB.scheduled_for <= now),
        )
        if not include_expired:
            query = query.filter(or_(NotificationDB.expires_at.is_(None), NotificationDB.expires_at > now))
        return query

    # =========================================================================
    # USER QUERIES
    # =========================================================================

    def find_for_user(
        self,
        user: UserDB,
        status: Optional[str] = None,
        type: Optional[str] = None,
        priority: Optional[str] = None,
        include_expired: bool = False,
        page: int = 1,
        limit: int = 20,
    ) -> Page:
        query = self._visible_query(user, include_expired)
        if status:
            query = query.filter(NotificationDB.status == NotificationStatus(status))
        if type:
            query = query.filter(NotificationDB.type == type)
        if priority:
            query = query.filter(NotificationDB.priority == NotificationPriority(priority))
        query = query.order_by(NotificationDB.created_at.desc())
        return paginate(query, page, limit)

    def find_unread(self, user: UserDB, limit: int = 50) -> List[NotificationDB]:
        return self._visible_query(user).filter(
            NotificationDB.status == NotificationStatus.UNREAD
        ).order_by(NotificationDB.created_at.desc()).limit(limit).all()

    def unread_count(self, user: UserDB) -> int:
        return self._visible_query(user).filter(
            NotificationDB.status == NotificationStatus.UNREAD
        ).count()

    def get_for_user(self, user: UserDB, notification_id: str) -> Optional[NotificationDB]:
        return self.db.query(NotificationDB).filter(
            NotificationDB.id == notification_id,
            self._recipient_filter(user),
        ).first()

    # =========================================================================
    # STATUS CHANGES
    # =========================================================================

    def mark_read(self, notification: NotificationDB) -> NotificationDB:
        """Mark read. read_at is stamped once; repeated calls change nothing."""
        if notification.read_at is None:
            notification.read_at = datetime.utcnow()
        if notification.status == NotificationStatus.UNREAD:
            notification.status = NotificationStatus.READ
        self.db.commit()
        return notification

    def mark_all_read(self, user: UserDB) -> int:
        notifications = self._visible_query(user, include_expired=True).filter(
            NotificationDB.status == NotificationStatus.UNREAD
        ).all()
        now = datetime.utcnow()
        for notification in notifications:
            notification.status = NotificationStatus.READ
            if notification.read_at is None:
                notification.read_at = now
        self.db.commit()
        logger.info(f"Marked {len(notifications)} notifications read for user {user.id}")
        return len(notifications)

    def archive(self, notification: NotificationDB) -> NotificationDB:
        notification.status = NotificationStatus.ARCHIVED
        notification.archived_at = datetime.utcnow()
        self.db.commit()
        return notification

    def dismiss(self, notification: NotificationDB) -> NotificationDB:
        notification.status = NotificationStatus.DISMISSED
        notification.dismissed_at = datetime.utcnow()
        self.db.commit()
        return notification

    def delete(self, notification: NotificationDB):
        self.db.delete(notification)
        self.db.commit()

    # =========================================================================
    # CREATION
    # =========================================================================

    def _build(self, title: str, message: str, type: str, sender: Optional[UserDB], **fields) -> NotificationDB:
        notification = NotificationDB(
            id=str(uuid4()),
            title=title,
            message=message,
            type=type,
            priority=NotificationPriority(fields.get("priority") or NotificationPriority.NORMAL),
            category=fields.get("category") or "business",
            status=NotificationStatus.UNREAD,
            sender_user_id=sender.id if sender else None,
            sender_name=sender.name if sender else "System",
            sender_role=_role_value(sender.role) if sender else None,
            sender_is_system=sender is None,
        )
        for key in PAYLOAD_FIELDS:
            value = fields.get(key)
            if key in ("scheduled_for", "expires_at"):
                value = _naive_utc(value)
            if value is not None:
                setattr(notification, key, value)
        return notification

    def create(
        self,
        title: str,
        message: str,
        type: str,
        sender: Optional[UserDB] = None,
        recipient_user_id: Optional[str] = None,
        recipient_role: Optional[str] = None,
        **fields,
    ) -> NotificationDB:
        """
        Create one notification for a user or for every user of a role.

        Raises RecipientNotFoundError for an unknown user id and ValueError
        when neither recipient is given.
        """
        notification = self._build(title, message, type, sender, **fields)

        if recipient_user_id:
            recipient = self.db.query(UserDB).filter(UserDB.id == recipient_user_id).first()
            if recipient is None:
                raise RecipientNotFoundError(f"Recipient user {recipient_user_id} not found")
            notification.recipient_user_id = recipient.id
            notification.recipient_role = _role_value(recipient.role)
        elif recipient_role:
            notification.recipient_role = _role_value(UserRole(recipient_role))
        else:
            raise ValueError("Recipient user ID or role is required")

        self.db.add(notification)
        self.db.commit()
        self.db.refresh(notification)
        return notification

    def create_bulk(
        self,
        title: str,
        message: str,
        type: str,
        sender: Optional[UserDB] = None,
        user_ids: Optional[Iterable[str]] = None,
        user_role: Optional[str] = None,
        **fields,
    ) -> List[NotificationDB]:
        """One notification per resolved user. Raises NoRecipientsError when none resolve."""
        if user_ids:
            users = self.db.query(UserDB).filter(UserDB.id.in_(list(user_ids))).all()
        elif user_role:
            users = self.db.query(UserDB).filter(UserDB.role == UserRole(user_role)).all()
        else:
            raise ValueError("User IDs array or user role is required")

        if not users:
            raise NoRecipientsError("No target users found")

        notifications = []
        for user in users:
            notification = self._build(title, message, type, sender, **fields)
            notification.recipient_user_id = user.id
            notification.recipient_role = _role_value(user.role)
            self.db.add(notification)
            notifications.append(notification)

        self.db.commit()
        logger.info(f"Bulk notification '{title}' sent to {len(notifications)} users")
        return notifications

    # =========================================================================
    # STATS / ADMIN
    # =========================================================================

    def stats(self, user: UserDB, days: int = 30) -> Dict[str, Any]:
        since = datetime.utcnow() - timedelta(days=days)
        rows = self.db.query(
            NotificationDB.type,
            func.count(NotificationDB.id),
            func.sum(case((NotificationDB.status == NotificationStatus.UNREAD, 1), else_=0)),
        ).filter(
            self._recipient_filter(user),
            NotificationDB.created_at >= since,
        ).group_by(NotificationDB.type).all()

        by_type = [{"type": t, "count": count, "unread": int(unread or 0)} for t, count, unread in rows]
        return {
            "total": sum(item["count"] for item in by_type),
            "unread": sum(item["unread"] for item in by_type),
            "by_type": by_type,
        }

    def admin_list(
        self,
        page: int = 1,
        limit: int = 50,
        type: Optional[str] = None,
        priority: Optional[str] = None,
        status: Optional[str] = None,
        days: Optional[int] = 30,
        user_id: Optional[str] = None,
    ) -> Page:
        query = self.db.query(NotificationDB)
        if type:
            query = query.filter(NotificationDB.type == type)
        if priority:
            query = query.filter(NotificationDB.priority == NotificationPriority(priority))
        if status:
            query = query.filter(NotificationDB.status == NotificationStatus(status))
        if user_id:
            query = query.filter(NotificationDB.recipient_user_id == user_id)
        if days:
            query = query.filter(NotificationDB.created_at >= datetime.utcnow() - timedelta(days=days))
        return paginate(query.order_by(NotificationDB.created_at.desc()), page, limit)

    def analytics(self, days: int = 30) -> Dict[str, Any]:
        since = datetime.utcnow() - timedelta(days=days)
        window = NotificationDB.created_at >= since

        totals = self.db.query(
            func.count(NotificationDB.id),
            func.sum(case((NotificationDB.status == NotificationStatus.UNREAD, 1), else_=0)),
            func.sum(case((NotificationDB.status == NotificationStatus.READ, 1), else_=0)),
            func.sum(case((NotificationDB.priority.in_(URGENT_PRIORITIES), 1), else_=0)),
        ).filter(window).one()

        type_rows = self.db.query(
            NotificationDB.type,
            func.count(NotificationDB.id),
            func.sum(case((NotificationDB.status == NotificationStatus.UNREAD, 1), else_=0)),
        ).filter(window).group_by(NotificationDB.type).all()

        priority_rows = self.db.query(
            NotificationDB.priority, func.count(NotificationDB.id),
        ).filter(window).group_by(NotificationDB.priority).all()

        return {
            "analytics": {
                "total_notifications": totals[0] or 0,
                "unread_notifications": int(totals[1] or 0),
                "read_notifications": int(totals[2] or 0),
                "urgent_notifications": int(totals[3] or 0),
            },
            "type_breakdown": [
                {"type": t, "count": count, "unread": int(unread or 0)} for t, count, unread in type_rows
            ],
            "priority_breakdown": [
                {"priority": p.value if p else None, "count": count} for p, count in priority_rows
            ],
        }

    def cleanup_expired(self) -> int:
        """Delete notifications whose expiry has passed. Returns the count removed."""
        deleted = self.db.query(NotificationDB).filter(
            NotificationDB.expires_at.isnot(None),
            NotificationDB.expires_at <= datetime.utcnow(),
        ).delete(synchronize_session=False)
        self.db.commit()
        logger.info(f"Cleaned up {deleted} expired notifications")
        return deleted
