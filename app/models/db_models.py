"""
VBMS Backend - SQLAlchemy ORM Models
Relational models for accounts, billing, the affiliate program,
notifications, settings and uploaded files
"""
from datetime import datetime
from enum import Enum
from sqlalchemy import Column, String, Integer, Float, DateTime, Date, Text, JSON, ForeignKey, Enum as SQLEnum, Boolean
from sqlalchemy.orm import relationship
from ..database import Base


# =============================================================================
# ENUMS
# =============================================================================

class UserRole(str, Enum):
    """Account roles, from most to least privileged."""
    MAIN_ADMIN = "main_admin"
    ADMIN = "admin"
    SUPPORT = "support"
    CUSTOMER = "customer"
    CLIENT = "client"


class UserStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    PENDING = "pending"


class PackageType(str, Enum):
    """Subscription packages sold to customers."""
    START = "start"
    CORE = "core"
    AI_PHONE = "ai_phone"
    PREMIUM_PLUS = "premium_plus"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    PAST_DUE = "past_due"


class AffiliateStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    PENDING = "pending"


class AffiliateTier(str, Enum):
    """Affiliate classification. Sets the default commission rate."""
    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"
    PLATINUM = "platinum"


class PayoutMethod(str, Enum):
    PAYPAL = "paypal"
    STRIPE = "stripe"
    BANK_TRANSFER = "bank_transfer"
    CHECK = "check"


class ReferralStatus(str, Enum):
    SIGNUP = "signup"
    CONVERTED = "converted"
    CHURNED = "churned"


class CommissionStatus(str, Enum):
    """Commission lifecycle: pending -> approved -> paid, or pending -> cancelled."""
    PENDING = "pending"
    APPROVED = "approved"
    PAID = "paid"
    CANCELLED = "cancelled"


class NotificationStatus(str, Enum):
    UNREAD = "unread"
    READ = "read"
    ARCHIVED = "archived"
    DISMISSED = "dismissed"


class NotificationPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"
    CRITICAL = "critical"


ADMIN_ROLES = (UserRole.MAIN_ADMIN, UserRole.ADMIN)

# Flags stored in UserDB.admin_permissions
ADMIN_PERMISSIONS = [
    "can_create_admins",
    "can_manage_customers",
    "can_view_all_data",
    "can_set_pricing",
    "can_toggle_features",
    "can_manage_staff",
    "can_access_billing",
    "can_view_analytics",
    "can_system_settings",
    "can_manage_notifications",
]

# Default commission rate per tier
TIER_COMMISSION_RATES = {
    AffiliateTier.BRONZE: 0.15,
    AffiliateTier.SILVER: 0.18,
    AffiliateTier.GOLD: 0.20,
    AffiliateTier.PLATINUM: 0.25,
}

# Plan-specific rates an affiliate starts with
DEFAULT_CUSTOM_COMMISSION_RATES = {
    "starter": 0.15,
    "professional": 0.20,
    "enterprise": 0.25,
}


def _default_preferences():
    return {"notifications": True, "dark_mode": False, "language": "en"}


def _default_affiliate_settings():
    return {
        "email_notifications": True,
        "monthly_reports": True,
        "marketing_emails": False,
        "auto_withdraw": False,
        "minimum_payout": 100,
    }


# =============================================================================
# ACCOUNTS
# =============================================================================

class UserDB(Base):
    """User account with embedded profile, billing and security fields."""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True)  # UUID
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=False, index=True)  # Always lowercased
    password_hash = Column(String(255), nullable=False)
    role = Column(SQLEnum(UserRole), nullable=False, default=UserRole.CLIENT)
    position = Column(String(100), default="Member")
    status = Column(SQLEnum(UserStatus), nullable=False, default=UserStatus.ACTIVE)

    # ==========================================================================
    # PROFILE
    # ==========================================================================
    photo = Column(String(500), default="")
    phone = Column(String(30), nullable=True)
    timezone = Column(String(64), default="America/New_York")
    preferences = Column(JSON, default=_default_preferences)
    department = Column(String(100), nullable=True)
    created_by = Column(String(36), nullable=True)  # Admin who created the account

    # ==========================================================================
    # REFERENCES
    # ==========================================================================
    business_id = Column(String(36), ForeignKey("businesses.id", ondelete="SET NULL"), nullable=True)
    # Plain column: subscriptions.customer_id already points back at users
    subscription_id = Column(String(36), nullable=True, index=True)

    # ==========================================================================
    # BILLING
    # ==========================================================================
    stripe_customer_id = Column(String(255), nullable=True)
    default_payment_method = Column(String(255), nullable=True)
    billing_address = Column(JSON, nullable=True)  # {"street", "city", "state", "zip_code", "country"}

    # ==========================================================================
    # ADMIN PERMISSIONS - only meaningful for admin and support roles
    # ==========================================================================
    admin_permissions = Column(JSON, default=dict)

    # ==========================================================================
    # ONBOARDING
    # ==========================================================================
    onboarding_completed = Column(Boolean, default=False)
    onboarding_step = Column(Integer, default=1)
    onboarding_data = Column(JSON, nullable=True)

    # ==========================================================================
    # SECURITY
    # ==========================================================================
    last_login = Column(DateTime, nullable=True)
    last_password_change = Column(DateTime, default=datetime.utcnow)
    login_attempts = Column(Integer, default=0)
    lock_until = Column(DateTime, nullable=True)
    two_factor_enabled = Column(Boolean, default=False)
    email_verified = Column(Boolean, default=False)
    login_history = Column(JSON, default=list)  # [{"ip", "user_agent", "timestamp", "success"}]

    last_activity = Column(DateTime, default=datetime.utcnow)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    business = relationship("BusinessDB", foreign_keys=[business_id])
    subscription = relationship(
        "SubscriptionDB",
        primaryjoin="foreign(UserDB.subscription_id) == SubscriptionDB.id",
        viewonly=True,
    )

    def has_permission(self, permission: str) -> bool:
        """Main admins hold every permission; other staff need the flag."""
        if self.role == UserRole.MAIN_ADMIN:
            return True
        if self.role not in (UserRole.ADMIN, UserRole.SUPPORT):
            return False
        return bool((self.admin_permissions or {}).get(permission))


class BusinessDB(Base):
    """Business owned by a customer account."""
    __tablename__ = "businesses"

    id = Column(String(36), primary_key=True)  # UUID
    owner_id = Column(String(36), nullable=True, index=True)
    business_name = Column(String(255), nullable=False)
    business_type = Column(String(100), nullable=True)
    industry = Column(String(100), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# =============================================================================
# BILLING
# =============================================================================

class SubscriptionDB(Base):
    """Package, price and feature bundle a customer is subscribed to."""
    __tablename__ = "subscriptions"

    id = Column(String(36), primary_key=True)  # UUID
    customer_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    package_type = Column(SQLEnum(PackageType), nullable=False)
    package_name = Column(String(100), nullable=False)

    # Price
    price_monthly = Column(Float, nullable=False)
    price_per_call = Column(Float, default=0)  # AI phone package only
    price_setup = Column(Float, default=0)

    status = Column(SQLEnum(SubscriptionStatus), default=SubscriptionStatus.ACTIVE, index=True)

    # Billing metadata mirrored from Stripe
    stripe_subscription_id = Column(String(255), nullable=True)
    stripe_customer_id = Column(String(255), nullable=True)
    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True)
    next_billing_date = Column(DateTime, nullable=True)
    last_payment_date = Column(DateTime, nullable=True)
    payment_failed_count = Column(Integer, default=0)
    cancelled_at = Column(DateTime, nullable=True)
    trial_end = Column(DateTime, nullable=True)
    discount = Column(JSON, nullable=True)  # {"coupon_id", "percent_off", "amount_off", "valid_until"}

    # Feature flags: live_monitoring, order_management, phone_support, ai_phone, ...
    features = Column(JSON, default=dict)

    # Usage
    usage_monthly_hours = Column(Float, default=0)
    usage_calls_count = Column(Integer, default=0)
    usage_last_reset = Column(DateTime, default=datetime.utcnow)

    start_date = Column(DateTime, default=datetime.utcnow)
    end_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class PaymentDB(Base):
    """Stripe payment mirrored locally."""
    __tablename__ = "payments"

    id = Column(String(36), primary_key=True)  # UUID
    user_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    email = Column(String(255), nullable=True)
    amount = Column(Float, nullable=False)
    stripe_payment_id = Column(String(255), unique=True, nullable=False)
    status = Column(String(50), nullable=True)  # succeeded, pending, failed, refunded
    extra_metadata = Column(JSON, nullable=True)  # 'metadata' is reserved by SQLAlchemy

    created_at = Column(DateTime, default=datetime.utcnow)


class OrderDB(Base):
    """Customer order, read by the admin order views."""
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True)  # UUID
    customer_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    business_id = Column(String(36), ForeignKey("businesses.id", ondelete="SET NULL"), nullable=True)
    order_number = Column(String(64), nullable=True)
    amount = Column(Float, default=0)
    status = Column(String(50), default="pending", index=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    customer = relationship("UserDB")
    business = relationship("BusinessDB")


class AnalyticsSnapshotDB(Base):
    """Daily business metrics rollup."""
    __tablename__ = "analytics_snapshots"

    id = Column(String(36), primary_key=True)  # UUID
    date = Column(Date, nullable=False, index=True)
    revenue = Column(Float, default=0)
    order_count = Column(Integer, default=0)
    customer_count = Column(Integer, default=0)

    created_at = Column(DateTime, default=datetime.utcnow)


# =============================================================================
# AFFILIATE PROGRAM
# =============================================================================

class AffiliateDB(Base):
    """
    Referral partner with running commission statistics.

    The stats columns are maintained alongside every commission transition.
    `version` is a compare-and-set guard: a flush against a stale row raises
    StaleDataError instead of silently overwriting a concurrent writer.
    """
    __tablename__ = "affiliates"

    id = Column(String(36), primary_key=True)  # UUID
    affiliate_code = Column(String(32), unique=True, nullable=False, index=True)  # AFF<epoch-ms><4 chars>
    referral_code = Column(String(32), unique=True, nullable=False, index=True)  # Uppercase
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=False, index=True)  # Lowercase

    # Status and control
    status = Column(SQLEnum(AffiliateStatus), default=AffiliateStatus.PENDING, index=True)
    tier = Column(SQLEnum(AffiliateTier), default=AffiliateTier.BRONZE, index=True)

    # Commission structure
    commission_rate = Column(Float, default=0.15)  # 0..1
    custom_commission_rates = Column(JSON, default=lambda: dict(DEFAULT_CUSTOM_COMMISSION_RATES))

    # Contact information
    phone = Column(String(30), nullable=True)
    website = Column(String(255), nullable=True)
    company = Column(String(255), nullable=True)
    address = Column(JSON, nullable=True)  # {"street", "city", "state", "zip_code", "country"}

    # Payment information
    payment_method = Column(SQLEnum(PayoutMethod), default=PayoutMethod.PAYPAL)
    paypal_email = Column(String(255), nullable=True)
    stripe_account_id = Column(String(255), nullable=True)
    bank_details = Column(JSON, nullable=True)  # Never returned by list endpoints

    # ==========================================================================
    # PERFORMANCE STATS
    # ==========================================================================
    total_referrals = Column(Integer, default=0)
    successful_referrals = Column(Integer, default=0)
    total_commission_earned = Column(Float, default=0.0)
    total_commission_paid = Column(Float, default=0.0)
    pending_commission = Column(Float, default=0.0)  # Pending + approved, not yet paid
    conversion_rate = Column(Float, default=0.0)  # successful_referrals / total_referrals
    average_order_value = Column(Float, default=0.0)
    lifetime_value = Column(Float, default=0.0)  # Sum of converted order amounts

    # Marketing: profile_image, banner_images, social_media_links
    marketing_assets = Column(JSON, default=dict)

    # Admin controls
    admin_notes = Column(Text, nullable=True)
    tags = Column(JSON, default=list)

    # Onboarding
    onboarding_completed = Column(Boolean, default=False)
    agreement_signed_at = Column(DateTime, nullable=True)
    agreement_version = Column(String(20), nullable=True)

    # Activity
    last_login_at = Column(DateTime, nullable=True)
    last_activity_at = Column(DateTime, default=datetime.utcnow)

    settings = Column(JSON, default=_default_affiliate_settings)

    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    referrals = relationship(
        "ReferralDB", back_populates="affiliate",
        cascade="all, delete-orphan", order_by="ReferralDB.signup_date",
    )
    commissions = relationship(
        "CommissionDB", back_populates="affiliate",
        cascade="all, delete-orphan", order_by="CommissionDB.created_at",
    )
    links = relationship("AffiliateLinkDB", back_populates="affiliate", cascade="all, delete-orphan")
    commission_events = relationship("CommissionEventDB", back_populates="affiliate", cascade="all, delete-orphan")

    __mapper_args__ = {"version_id_col": version}

    @property
    def calculated_conversion_rate(self) -> float:
        """Share of referrals that converted, 0 when there are none."""
        if not self.total_referrals:
            return 0.0
        return (self.successful_referrals or 0) / self.total_referrals

    @property
    def pending_payout(self) -> float:
        """Commission earned but not yet paid out."""
        return (self.total_commission_earned or 0.0) - (self.total_commission_paid or 0.0)


class ReferralDB(Base):
    """A customer brought in by an affiliate."""
    __tablename__ = "affiliate_referrals"

    id = Column(String(36), primary_key=True)  # UUID
    affiliate_id = Column(String(36), ForeignKey("affiliates.id", ondelete="CASCADE"), nullable=False, index=True)
    customer_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    customer_email = Column(String(255), nullable=True)

    signup_date = Column(DateTime, default=datetime.utcnow)
    first_purchase_date = Column(DateTime, nullable=True)
    total_spent = Column(Float, default=0.0)
    commission_earned = Column(Float, default=0.0)
    status = Column(SQLEnum(ReferralStatus), default=ReferralStatus.SIGNUP)

    affiliate = relationship("AffiliateDB", back_populates="referrals")


class CommissionDB(Base):
    """Commission owed to an affiliate for one converted order."""
    __tablename__ = "affiliate_commissions"

    id = Column(String(36), primary_key=True)  # UUID
    affiliate_id = Column(String(36), ForeignKey("affiliates.id", ondelete="CASCADE"), nullable=False, index=True)
    referral_id = Column(String(36), ForeignKey("affiliate_referrals.id", ondelete="SET NULL"), nullable=True)
    order_id = Column(String(100), nullable=True)
    customer_id = Column(String(36), nullable=True)

    order_amount = Column(Float, nullable=False)
    commission_amount = Column(Float, nullable=False)
    commission_rate = Column(Float, nullable=False)  # Rate frozen at conversion time

    status = Column(SQLEnum(CommissionStatus), default=CommissionStatus.PENDING, nullable=False, index=True)

    # Approval
    approved_by = Column(String(36), nullable=True)
    approved_at = Column(DateTime, nullable=True)

    # Payment
    paid_at = Column(DateTime, nullable=True)
    payment_method = Column(String(50), nullable=True)
    payment_reference = Column(String(255), nullable=True)

    # Cancellation
    cancelled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=datetime.utcnow)

    affiliate = relationship("AffiliateDB", back_populates="commissions")

    __mapper_args__ = {"version_id_col": version}


class CommissionEventDB(Base):
    """
    Append-only log of commission transitions.
    One row per conversion, approval, payment or cancellation.
    """
    __tablename__ = "affiliate_commission_events"

    id = Column(String(36), primary_key=True)  # UUID
    affiliate_id = Column(String(36), ForeignKey("affiliates.id", ondelete="CASCADE"), nullable=False, index=True)
    commission_id = Column(String(36), ForeignKey("affiliate_commissions.id", ondelete="CASCADE"), nullable=True, index=True)

    from_status = Column(SQLEnum(CommissionStatus), nullable=True)  # NULL when the commission is created
    to_status = Column(SQLEnum(CommissionStatus), nullable=False)
    actor_id = Column(String(36), nullable=True)
    amount = Column(Float, nullable=False)
    event_metadata = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    affiliate = relationship("AffiliateDB", back_populates="commission_events")


class AffiliateLinkDB(Base):
    """Tracking link generated for an affiliate."""
    __tablename__ = "affiliate_links"

    id = Column(String(36), primary_key=True)  # UUID
    affiliate_id = Column(String(36), ForeignKey("affiliates.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    url = Column(String(1000), nullable=False)
    description = Column(Text, nullable=True)
    tracking_id = Column(String(32), unique=True, nullable=False)
    clicks = Column(Integer, default=0)

    created_at = Column(DateTime, default=datetime.utcnow)

    affiliate = relationship("AffiliateDB", back_populates="links")


# =============================================================================
# NOTIFICATIONS
# =============================================================================

class NotificationDB(Base):
    """
    In-app notification.
    Addressed to a single user (recipient_user_id) or to every user of a role
    (recipient_role with no user id).
    """
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True)  # UUID
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    type = Column(String(50), nullable=False, index=True)  # order, payment, system, affiliate, ...
    priority = Column(SQLEnum(NotificationPriority), default=NotificationPriority.NORMAL, index=True)
    category = Column(String(50), default="business")

    # Recipient
    recipient_user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True)
    recipient_role = Column(String(50), nullable=True, index=True)

    # Sender
    sender_user_id = Column(String(36), nullable=True)
    sender_name = Column(String(255), nullable=True)
    sender_role = Column(String(50), nullable=True)
    sender_is_system = Column(Boolean, default=False)

    # Lifecycle
    status = Column(SQLEnum(NotificationStatus), default=NotificationStatus.UNREAD, nullable=False, index=True)
    read_at = Column(DateTime, nullable=True)
    archived_at = Column(DateTime, nullable=True)
    dismissed_at = Column(DateTime, nullable=True)
    scheduled_for = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)

    # Presentation payloads
    action = Column(JSON, nullable=True)  # {"type", "url", "label"}
    content = Column(JSON, nullable=True)
    sound = Column(JSON, nullable=True)
    display = Column(JSON, nullable=True)

    tags = Column(JSON, default=list)
    extra_metadata = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    recipient = relationship("UserDB", foreign_keys=[recipient_user_id])


# =============================================================================
# SETTINGS / FILES
# =============================================================================

class SettingsDB(Base):
    """Per-user business profile, notification and integration settings."""
    __tablename__ = "settings"

    id = Column(String(36), primary_key=True)  # UUID
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False, index=True)

    # Business profile
    business_name = Column(String(255), default="")
    business_email = Column(String(255), default="")
    business_phone = Column(String(50), default="")
    business_address = Column(String(500), default="")
    business_description = Column(Text, default="")
    logo_url = Column(String(1000), default="")
    logo_key = Column(String(500), nullable=True)

    # Notification preferences
    email_notifications = Column(Boolean, default=True)
    sms_notifications = Column(Boolean, default=False)
    order_notifications = Column(Boolean, default=True)
    marketing_notifications = Column(Boolean, default=False)

    # Delivery platform integrations
    uber_eats_connected = Column(Boolean, default=False)
    uber_eats_store_id = Column(String(255), nullable=True)
    door_dash_connected = Column(Boolean, default=False)
    grubhub_connected = Column(Boolean, default=False)
    clover_connected = Column(Boolean, default=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class FileDB(Base):
    """Metadata for a file held by the storage service."""
    __tablename__ = "files"

    id = Column(String(36), primary_key=True)  # UUID
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    original_name = Column(String(500), nullable=False)
    file_name = Column(String(500), nullable=False)
    file_key = Column(String(500), unique=True, nullable=False, index=True)  # <folder>/<uuid><ext>
    file_url = Column(String(1000), nullable=False)
    file_size = Column(Integer, default=0)
    mime_type = Column(String(255), nullable=True)
    category = Column(String(50), default="general", index=True)  # logos, images, videos, audio, documents, general
    storage = Column(String(20), default="local")
    access_level = Column(String(20), default="private")  # public, private

    created_at = Column(DateTime, default=datetime.utcnow)
