"""
Notifications - Service Package
"""
from .notification_service import (
    NotificationService,
    RecipientNotFoundError,
    NoRecipientsError,
    to_client_format,
)

__all__ = [
    "NotificationService",
    "RecipientNotFoundError",
    "NoRecipientsError",
    "to_client_format",
]
