"""VBMS Backend - Data Models"""
from .db_models import (
    # Enums
    UserRole, UserStatus, PackageType, SubscriptionStatus,
    AffiliateStatus, AffiliateTier, PayoutMethod, ReferralStatus, CommissionStatus,
    NotificationStatus, NotificationPriority,
    # Constants
    ADMIN_ROLES, ADMIN_PERMISSIONS, TIER_COMMISSION_RATES, DEFAULT_CUSTOM_COMMISSION_RATES,
    # Accounts and billing
    UserDB, BusinessDB, SubscriptionDB, PaymentDB, OrderDB, AnalyticsSnapshotDB,
    # Affiliate program
    AffiliateDB, ReferralDB, CommissionDB, CommissionEventDB, AffiliateLinkDB,
    # Notifications, settings, files
    NotificationDB, SettingsDB, FileDB,
)

__all__ = [
    "UserRole", "UserStatus", "PackageType", "SubscriptionStatus",
    "AffiliateStatus", "AffiliateTier", "PayoutMethod", "ReferralStatus", "CommissionStatus",
    "NotificationStatus", "NotificationPriority",
    "ADMIN_ROLES", "ADMIN_PERMISSIONS", "TIER_COMMISSION_RATES", "DEFAULT_CUSTOM_COMMISSION_RATES",
    "UserDB", "BusinessDB", "SubscriptionDB", "PaymentDB", "OrderDB", "AnalyticsSnapshotDB",
    "AffiliateDB", "ReferralDB", "CommissionDB", "CommissionEventDB", "AffiliateLinkDB",
    "NotificationDB", "SettingsDB", "FileDB",
]
