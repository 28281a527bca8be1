"""
Affiliate Program - Service Package

Referral tracking, the commission lifecycle and affiliate statistics.
"""
from .affiliate_service import (
    AffiliateService,
    DuplicateAffiliateError,
    InvalidBulkActionError,
    default_rate_for_tier,
)
from .commission_lifecycle import (
    CommissionStateMachine,
    CommissionTransitionError,
    CommissionNotFoundError,
    ReferralNotFoundError,
    ConcurrentModificationError,
    COMMISSION_STATE_CONFIG,
    OUTSTANDING_STATUSES,
    outstanding_amount,
)
from .identifiers import (
    generate_affiliate_code,
    generate_referral_code,
    generate_tracking_id,
    build_tracking_url,
)

__all__ = [
    "AffiliateService",
    "DuplicateAffiliateError",
    "InvalidBulkActionError",
    "default_rate_for_tier",
    "CommissionStateMachine",
    "CommissionTransitionError",
    "CommissionNotFoundError",
    "ReferralNotFoundError",
    "ConcurrentModificationError",
    "COMMISSION_STATE_CONFIG",
    "OUTSTANDING_STATUSES",
    "outstanding_amount",
    "generate_affiliate_code",
    "generate_referral_code",
    "generate_tracking_id",
    "build_tracking_url",
]
