"""
VBMS Backend - Affiliates Router
Admin-only management of the affiliate program.

All successful responses use the {success, message, data} envelope.
"""
from datetime import datetime
from typing import List, Optional, Dict, Any
import logging
import math

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, EmailStr, field_validator
from sqlalchemy.orm import Session

from ..database import get_db
from ..models.db_models import (
    UserDB, AffiliateDB, ReferralDB, CommissionDB, AffiliateLinkDB,
    AffiliateStatus, AffiliateTier, PayoutMethod,
)
from ..auth import require_admin
from ..services.affiliates import (
    AffiliateService,
    CommissionTransitionError,
    ConcurrentModificationError,
    DuplicateAffiliateError,
    InvalidBulkActionError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/affiliates", tags=["affiliates"])


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

def _check_rate(v):
    if v is not None and not 0 <= v <= 1:
        raise ValueError('Commission rate must be between 0 and 1')
    return v


def _check_rates(v):
    if v is not None:
        for rate in v.values():
            _check_rate(rate)
    return v


class AffiliateCreateRequest(BaseModel):
    name: str
    email: EmailStr
    tier: AffiliateTier = AffiliateTier.BRONZE
    commission_rate: Optional[float] = None
    referral_code: Optional[str] = None
    custom_commission_rates: Optional[Dict[str, float]] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    company: Optional[str] = None
    address: Optional[Dict[str, Any]] = None
    payment_method: Optional[PayoutMethod] = None
    paypal_email: Optional[str] = None
    stripe_account_id: Optional[str] = None
    bank_details: Optional[Dict[str, Any]] = None
    admin_notes: Optional[str] = None
    tags: Optional[List[str]] = None

    @field_validator('commission_rate')
    @classmethod
    def validate_rate(cls, v):
        return _check_rate(v)

    @field_validator('custom_commission_rates')
    @classmethod
    def validate_custom_rates(cls, v):
        return _check_rates(v)


class AffiliateUpdateRequest(BaseModel):
    """Stats fields are deliberately absent; they only change through the lifecycle."""
    name: Optional[str] = None
    status: Optional[AffiliateStatus] = None
    tier: Optional[AffiliateTier] = None
    commission_rate: Optional[float] = None
    custom_commission_rates: Optional[Dict[str, float]] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    company: Optional[str] = None
    address: Optional[Dict[str, Any]] = None
    payment_method: Optional[PayoutMethod] = None
    paypal_email: Optional[str] = None
    stripe_account_id: Optional[str] = None
    bank_details: Optional[Dict[str, Any]] = None
    marketing_assets: Optional[Dict[str, Any]] = None
    admin_notes: Optional[str] = None
    tags: Optional[List[str]] = None
    onboarding_completed: Optional[bool] = None
    agreement_version: Optional[str] = None
    settings: Optional[Dict[str, Any]] = None

    @field_validator('commission_rate')
    @classmethod
    def validate_rate(cls, v):
        return _check_rate(v)

    @field_validator('custom_commission_rates')
    @classmethod
    def validate_custom_rates(cls, v):
        return _check_rates(v)


class ReferralRequest(BaseModel):
    customer_id: Optional[str] = None
    customer_email: Optional[EmailStr] = None


class ConversionRequest(BaseModel):
    order_amount: float
    order_id: Optional[str] = None
    package: Optional[str] = None  # starter, professional, enterprise

    @field_validator('order_amount')
    @classmethod
    def validate_amount(cls, v):
        if not math.isfinite(v) or v < 0:
            raise ValueError('Order amount must be a finite, non-negative number')
        return v


class PaymentRequest(BaseModel):
    payment_method: Optional[str] = None
    payment_reference: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class GenerateLinkRequest(BaseModel):
    name: str
    target_url: str
    description: Optional[str] = None


class BulkActionRequest(BaseModel):
    action: str
    affiliate_ids: List[str]
    data: Optional[Dict[str, Any]] = None


# =============================================================================
# SERIALIZATION
# =============================================================================

def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def _mask_bank_details(details: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not details:
        return details
    masked = dict(details)
    for key in ("account_number", "routing_number"):
        value = masked.get(key)
        if value:
            value = str(value)
            masked[key] = "****" + value[-4:] if len(value) > 4 else "****"
    return masked


def serialize_referral(r: ReferralDB) -> Dict[str, Any]:
    return {
        "id": r.id,
        "customer_id": r.customer_id,
        "customer_email": r.customer_email,
        "signup_date": _iso(r.signup_date),
        "first_purchase_date": _iso(r.first_purchase_date),
        "total_spent": r.total_spent,
        "commission_earned": r.commission_earned,
        "status": r.status.value if r.status else None,
    }


def serialize_commission(c: CommissionDB) -> Dict[str, Any]:
    return {
        "id": c.id,
        "referral_id": c.referral_id,
        "order_id": c.order_id,
        "customer_id": c.customer_id,
        "order_amount": c.order_amount,
        "commission_amount": c.commission_amount,
        "commission_rate": c.commission_rate,
        "status": c.status.value if c.status else None,
        "approved_by": c.approved_by,
        "approved_at": _iso(c.approved_at),
        "paid_at": _iso(c.paid_at),
        "payment_method": c.payment_method,
        "payment_reference": c.payment_reference,
        "cancelled_at": _iso(c.cancelled_at),
        "cancellation_reason": c.cancellation_reason,
        "created_at": _iso(c.created_at),
    }


def serialize_link(link: AffiliateLinkDB) -> Dict[str, Any]:
    return {
        "id": link.id,
        "name": link.name,
        "url": link.url,
        "description": link.description,
        "tracking_id": link.tracking_id,
        "clicks": link.clicks,
        "created_at": _iso(link.created_at),
    }


def serialize_affiliate(a: AffiliateDB, detail: bool = False) -> Dict[str, Any]:
    """List view omits bank details and child rows; detail view masks bank details."""
    data = {
        "id": a.id,
        "affiliate_code": a.affiliate_code,
        "referral_code": a.referral_code,
        "name": a.name,
        "email": a.email,
        "status": a.status.value if a.status else None,
        "tier": a.tier.value if a.tier else None,
        "commission_rate": a.commission_rate,
        "custom_commission_rates": a.custom_commission_rates or {},
        "phone": a.phone,
        "website": a.website,
        "company": a.company,
        "payment_method": a.payment_method.value if a.payment_method else None,
        "stats": {
            "total_referrals": a.total_referrals or 0,
            "successful_referrals": a.successful_referrals or 0,
            "total_commission_earned": a.total_commission_earned or 0,
            "total_commission_paid": a.total_commission_paid or 0,
            "pending_commission": a.pending_commission or 0,
            "conversion_rate": a.conversion_rate or 0,
            "average_order_value": a.average_order_value or 0,
            "lifetime_value": a.lifetime_value or 0,
        },
        "tags": a.tags or [],
        "last_activity_at": _iso(a.last_activity_at),
        "created_at": _iso(a.created_at),
        "version": a.version,
    }
    if detail:
        data.update({
            "address": a.address,
            "paypal_email": a.paypal_email,
            "stripe_account_id": a.stripe_account_id,
            "bank_details": _mask_bank_details(a.bank_details),
            "marketing_assets": a.marketing_assets or {},
            "admin_notes": a.admin_notes,
            "onboarding_completed": bool(a.onboarding_completed),
            "agreement_signed_at": _iso(a.agreement_signed_at),
            "agreement_version": a.agreement_version,
            "settings": a.settings or {},
            "referrals": [serialize_referral(r) for r in a.referrals],
            "commissions": [serialize_commission(c) for c in a.commissions],
            "links": [serialize_link(link) for link in a.links],
        })
    return data


# =============================================================================
# HELPERS
# =============================================================================

def _get_affiliate_or_404(service: AffiliateService, affiliate_id: str) -> AffiliateDB:
    affiliate = service.get_affiliate(affiliate_id)
    if not affiliate:
        raise HTTPException(status_code=404, detail="Affiliate not found")
    return affiliate


def _http_error(e: Exception) -> HTTPException:
    """Map service exceptions onto HTTP status codes."""
    if isinstance(e, (CommissionTransitionError, ConcurrentModificationError, DuplicateAffiliateError)):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, LookupError):
        return HTTPException(status_code=404, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


SERVICE_ERRORS = (LookupError, ValueError, ConcurrentModificationError)


# =============================================================================
# COLLECTION ENDPOINTS
# =============================================================================

@router.get("")
async def list_affiliates(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    status: Optional[AffiliateStatus] = None,
    tier: Optional[AffiliateTier] = None,
    search: Optional[str] = None,
    sort_by: str = "created_at",
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    db: Session = Depends(get_db),
    admin: UserDB = Depends(require_admin)
):
    """
    Paginated affiliate list with program totals for the same filter.
    """
    service = AffiliateService(db)
    result, stats = service.list_affiliates(
        page=page, limit=limit, status=status, tier=tier, search=search,
        sort_by=sort_by, sort_order=sort_order,
    )
    return {
        "success": True,
        "data": {
            "affiliates": [serialize_affiliate(a) for a in result.items],
            "pagination": result.to_dict(),
            "stats": stats,
        },
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_affiliate(
    request: AffiliateCreateRequest,
    db: Session = Depends(get_db),
    admin: UserDB = Depends(require_admin)
):
    """Create an active affiliate. Commission rate defaults from the tier."""
    service = AffiliateService(db)
    fields = request.model_dump(exclude_none=True, exclude={"name", "email", "tier", "commission_rate", "referral_code"})
    try:
        affiliate = service.create_affiliate(
            name=request.name,
            email=request.email,
            tier=request.tier,
            commission_rate=request.commission_rate,
            referral_code=request.referral_code,
            **fields,
        )
    except SERVICE_ERRORS as e:
        raise _http_error(e)
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to create affiliate: {e}")
        raise HTTPException(status_code=500, detail=f"Error creating affiliate: {e}")

    return {
        "success": True,
        "message": "Affiliate created successfully",
        "data": serialize_affiliate(affiliate, detail=True),
    }


@router.get("/analytics/performance")
async def performance_analytics(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    affiliate_ids: Optional[List[str]] = Query(None),
    db: Session = Depends(get_db),
    admin: UserDB = Depends(require_admin)
):
    """Revenue, commission and conversion totals across the program."""
    service = AffiliateService(db)
    if affiliate_ids:
        # ?affiliate_ids=a,b and repeated ?affiliate_ids=a&affiliate_ids=b are both accepted
        affiliate_ids = [part.strip() for value in affiliate_ids for part in value.split(",") if part.strip()]
    return {
        "success": True,
        "data": service.performance_analytics(start_date, end_date, affiliate_ids),
    }


@router.get("/top-performers")
async def top_performers(
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
    admin: UserDB = Depends(require_admin)
):
    service = AffiliateService(db)
    return {
        "success": True,
        "data": [serialize_affiliate(a) for a in service.top_performers(limit)],
    }


@router.get("/pending-payouts")
async def pending_payouts(
    db: Session = Depends(get_db),
    admin: UserDB = Depends(require_admin)
):
    """Active affiliates with commission owed, largest balance first."""
    service = AffiliateService(db)
    affiliates = service.pending_payouts()
    return {
        "success": True,
        "data": {
            "affiliates": [serialize_affiliate(a) for a in affiliates],
            "total_pending": round(sum(a.pending_commission or 0 for a in affiliates), 2),
        },
    }


@router.get("/by-code/{referral_code}")
async def get_by_referral_code(
    referral_code: str,
    db: Session = Depends(get_db),
    admin: UserDB = Depends(require_admin)
):
    service = AffiliateService(db)
    affiliate = service.find_by_referral_code(referral_code)
    if not affiliate:
        raise HTTPException(status_code=404, detail="Affiliate not found")
    return {"success": True, "data": serialize_affiliate(affiliate)}


@router.post("/bulk-action")
async def bulk_action(
    request: BulkActionRequest,
    db: Session = Depends(get_db),
    admin: UserDB = Depends(require_admin)
):
    """activate, deactivate, update_tier or update_commission for many affiliates."""
    service = AffiliateService(db)
    try:
        result = service.bulk_action(request.action, request.affiliate_ids, request.data)
    except InvalidBulkActionError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SERVICE_ERRORS as e:
        raise _http_error(e)

    return {
        "success": True,
        "message": "Bulk action completed successfully",
        "data": result,
    }


# =============================================================================
# SINGLE AFFILIATE ENDPOINTS
# =============================================================================

@router.get("/{affiliate_id}")
async def get_affiliate(
    affiliate_id: str,
    db: Session = Depends(get_db),
    admin: UserDB = Depends(require_admin)
):
    service = AffiliateService(db)
    affiliate = _get_affiliate_or_404(service, affiliate_id)
    return {"success": True, "data": serialize_affiliate(affiliate, detail=True)}


@router.put("/{affiliate_id}")
async def update_affiliate(
    affiliate_id: str,
    request: AffiliateUpdateRequest,
    db: Session = Depends(get_db),
    admin: UserDB = Depends(require_admin)
):
    service = AffiliateService(db)
    affiliate = _get_affiliate_or_404(service, affiliate_id)
    try:
        affiliate = service.update_affiliate(affiliate, request.model_dump(exclude_unset=True))
    except SERVICE_ERRORS as e:
        raise _http_error(e)
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to update affiliate {affiliate_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Error updating affiliate: {e}")

    return {
        "success": True,
        "message": "Affiliate updated successfully",
        "data": serialize_affiliate(affiliate, detail=True),
    }


@router.delete("/{affiliate_id}")
async def delete_affiliate(
    affiliate_id: str,
    db: Session = Depends(get_db),
    admin: UserDB = Depends(require_admin)
):
    service = AffiliateService(db)
    affiliate = _get_affiliate_or_404(service, affiliate_id)
    try:
        service.delete_affiliate(affiliate)
    except SERVICE_ERRORS as e:
        raise _http_error(e)
    return {"success": True, "message": "Affiliate deleted successfully"}


@router.post("/{affiliate_id}/generate-link")
async def generate_link(
    affiliate_id: str,
    request: GenerateLinkRequest,
    db: Session = Depends(get_db),
    admin: UserDB = Depends(require_admin)
):
    service = AffiliateService(db)
    affiliate = _get_affiliate_or_404(service, affiliate_id)
    try:
        link = service.generate_link(affiliate, request.name, request.target_url, request.description)
    except SERVICE_ERRORS as e:
        raise _http_error(e)

    return {
        "success": True,
        "message": "Affiliate link generated successfully",
        "data": serialize_link(link),
    }


# =============================================================================
# COMMISSION LIFECYCLE ENDPOINTS
# =============================================================================

@router.post("/{affiliate_id}/referrals", status_code=status.HTTP_201_CREATED)
async def add_referral(
    affiliate_id: str,
    request: ReferralRequest,
    db: Session = Depends(get_db),
    admin: UserDB = Depends(require_admin)
):
    service = AffiliateService(db)
    affiliate = _get_affiliate_or_404(service, affiliate_id)
    try:
        referral = service.add_referral(affiliate, request.customer_id, request.customer_email)
    except SERVICE_ERRORS as e:
        raise _http_error(e)

    return {"success": True, "message": "Referral added", "data": serialize_referral(referral)}


@router.post("/{affiliate_id}/referrals/{referral_id}/convert", status_code=status.HTTP_201_CREATED)
async def convert_referral(
    affiliate_id: str,
    referral_id: str,
    request: ConversionRequest,
    db: Session = Depends(get_db),
    admin: UserDB = Depends(require_admin)
):
    """Record the referral's first order and create a pending commission."""
    service = AffiliateService(db)
    affiliate = _get_affiliate_or_404(service, affiliate_id)
    try:
        commission = service.record_conversion(
            affiliate, referral_id,
            order_amount=request.order_amount,
            order_id=request.order_id,
            package=request.package,
            actor_id=admin.id,
        )
    except SERVICE_ERRORS as e:
        raise _http_error(e)
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to record conversion for {affiliate_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Error recording conversion: {e}")

    return {"success": True, "message": "Conversion recorded", "data": serialize_commission(commission)}


@router.post("/{affiliate_id}/commissions/{commission_id}/approve")
async def approve_commission(
    affiliate_id: str,
    commission_id: str,
    db: Session = Depends(get_db),
    admin: UserDB = Depends(require_admin)
):
    service = AffiliateService(db)
    affiliate = _get_affiliate_or_404(service, affiliate_id)
    try:
        commission = service.approve_commission(affiliate, commission_id, admin.id)
    except SERVICE_ERRORS as e:
        raise _http_error(e)
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to approve commission {commission_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Error approving commission: {e}")

    return {"success": True, "message": "Commission approved successfully", "data": serialize_commission(commission)}


@router.post("/{affiliate_id}/commissions/{commission_id}/pay")
async def pay_commission(
    affiliate_id: str,
    commission_id: str,
    request: PaymentRequest,
    db: Session = Depends(get_db),
    admin: UserDB = Depends(require_admin)
):
    service = AffiliateService(db)
    affiliate = _get_affiliate_or_404(service, affiliate_id)
    try:
        commission = service.pay_commission(
            affiliate, commission_id,
            payment_method=request.payment_method,
            payment_reference=request.payment_reference,
            admin_id=admin.id,
        )
    except SERVICE_ERRORS as e:
        raise _http_error(e)
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to pay commission {commission_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Error processing payment: {e}")

    return {"success": True, "message": "Commission paid successfully", "data": serialize_commission(commission)}


@router.post("/{affiliate_id}/commissions/{commission_id}/cancel")
async def cancel_commission(
    affiliate_id: str,
    commission_id: str,
    request: CancelRequest,
    db: Session = Depends(get_db),
    admin: UserDB = Depends(require_admin)
):
    service = AffiliateService(db)
    affiliate = _get_affiliate_or_404(service, affiliate_id)
    try:
        commission = service.cancel_commission(affiliate, commission_id, request.reason, admin.id)
    except SERVICE_ERRORS as e:
        raise _http_error(e)
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to cancel commission {commission_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Error cancelling commission: {e}")

    return {"success": True, "message": "Commission cancelled", "data": serialize_commission(commission)}


@router.post("/{affiliate_id}/reconcile")
async def reconcile_affiliate(
    affiliate_id: str,
    db: Session = Depends(get_db),
    admin: UserDB = Depends(require_admin)
):
    """Recompute stats from referral and commission rows and report corrections."""
    service = AffiliateService(db)
    affiliate = _get_affiliate_or_404(service, affiliate_id)
    try:
        drift = service.reconcile_stats(affiliate)
    except SERVICE_ERRORS as e:
        raise _http_error(e)

    return {
        "success": True,
        "message": "Stats reconciled" if drift else "Stats already consistent",
        "data": {"corrected": drift, "affiliate": serialize_affiliate(affiliate)},
    }
