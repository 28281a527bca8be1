"""
Affiliate Service

Admin-side management of the affiliate program: affiliate records,
referral tracking, the commission lifecycle and the running statistics
kept on each affiliate.

STATS INVARIANT:
    total_commission_earned - total_commission_paid
        == pending_commission
        == sum of pending + approved commission amounts

Every mutating method updates the commission rows and the affiliate counters
together and commits once. Both rows are version-checked on flush, so a
concurrent writer surfaces as ConcurrentModificationError instead of a lost
update.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4
import logging
import math

from sqlalchemy import case, func, or_, asc, desc
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ...models.db_models import (
    AffiliateDB, ReferralDB, CommissionDB, AffiliateLinkDB,
    AffiliateStatus, AffiliateTier, CommissionStatus, ReferralStatus, PayoutMethod,
    TIER_COMMISSION_RATES, DEFAULT_CUSTOM_COMMISSION_RATES,
)
from ..pagination import Page, paginate
from .commission_lifecycle import (
    CommissionStateMachine, CommissionTransitionError, CommissionNotFoundError,
    ReferralNotFoundError, ConcurrentModificationError, OUTSTANDING_STATUSES,
)
from .identifiers import (
    generate_affiliate_code, generate_referral_code, generate_tracking_id, build_tracking_url,
)

logger = logging.getLogger(__name__)


class DuplicateAffiliateError(ValueError):
    """An affiliate with this email already exists."""


class InvalidBulkActionError(ValueError):
    pass


# Columns the list endpoint may sort by
SORTABLE_FIELDS = {
    "created_at": AffiliateDB.created_at,
    "name": AffiliateDB.name,
    "email": AffiliateDB.email,
    "status": AffiliateDB.status,
    "tier": AffiliateDB.tier,
    "total_referrals": AffiliateDB.total_referrals,
    "total_commission_earned": AffiliateDB.total_commission_earned,
    "pending_commission": AffiliateDB.pending_commission,
}

# Fields an admin may set through update_affiliate; stats are never writable
UPDATABLE_FIELDS = {
    "name", "status", "tier", "commission_rate", "custom_commission_rates",
    "phone", "website", "company", "address",
    "payment_method", "paypal_email", "stripe_account_id", "bank_details",
    "marketing_assets", "admin_notes", "tags",
    "onboarding_completed", "agreement_signed_at", "agreement_version", "settings",
}

BULK_ACTIONS = ("activate", "deactivate", "update_tier", "update_commission")


def _money(value: float) -> float:
    return round(value or 0.0, 2)


def default_rate_for_tier(tier: AffiliateTier) -> float:
    """Default commission rate an affiliate of this tier starts with."""
    return TIER_COMMISSION_RATES.get(AffiliateTier(tier), TIER_COMMISSION_RATES[AffiliateTier.BRONZE])


def _validate_rate(rate) -> float:
    if rate is None or isinstance(rate, bool):
        raise ValueError("Commission rate is required")
    try:
        rate = float(rate)
    except (TypeError, ValueError):
        raise ValueError(f"Commission rate must be a number, got {rate!r}")
    if not 0 <= rate <= 1:
        raise ValueError("Commission rate must be between 0 and 1")
    return rate


def _validate_custom_rates(rates: Optional[Dict[str, Any]]) -> Optional[Dict[str, float]]:
    """Every per-plan rate obeys the same bounds as the base rate."""
    if rates is None:
        return None
    return {str(plan): _validate_rate(rate) for plan, rate in rates.items()}


def _validate_amount(amount) -> float:
    if amount is None or isinstance(amount, bool):
        raise ValueError("Order amount must be a non-negative number")
    try:
        amount = float(amount)
    except (TypeError, ValueError):
        raise ValueError("Order amount must be a non-negative number")
    if not math.isfinite(amount) or amount < 0:
        raise ValueError("Order amount must be a non-negative number")
    return amount



# =============================================================================
# AFFILIATE SERVICE
# =============================================================================

class AffiliateService:
    """
    Affiliate program operations.

    - Affiliate CRUD and listing
    - Referral tracking and conversion
    - Commission approval, payment and cancellation
    - Stats reconciliation and program analytics
    """

    def __init__(self, db_session: Session):
        """Initialize with database session."""
        self.db = db_session
        self.state_machine = CommissionStateMachine(db_session)

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    def _commit(self):
        """Commit, translating a version conflict into ConcurrentModificationError."""
        try:
            self.db.commit()
        except StaleDataError as e:
            self.db.rollback()
            logger.warning(f"Concurrent affiliate update rejected: {e}")
            raise ConcurrentModificationError(
                "Affiliate record was modified by another request; reload and retry"
            ) from e

    def _touch(self, affiliate: AffiliateDB):
        affiliate.last_activity_at = datetime.utcnow()

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    def get_affiliate(self, affiliate_id: str) -> Optional[AffiliateDB]:
        return self.db.query(AffiliateDB).filter(AffiliateDB.id == affiliate_id).first()

    def find_by_referral_code(self, code: str) -> Optional[AffiliateDB]:
        """Active affiliate owning a referral code (case-insensitive)."""
        if not code:
            return None
        return self.db.query(AffiliateDB).filter(
            AffiliateDB.referral_code == code.strip().upper(),
            AffiliateDB.status == AffiliateStatus.ACTIVE,
        ).first()

    def _get_commission(self, affiliate: AffiliateDB, commission_id: str) -> CommissionDB:
        commission = self.db.query(CommissionDB).filter(
            CommissionDB.id == commission_id,
            CommissionDB.affiliate_id == affiliate.id,
        ).first()
        if commission is None:
            raise CommissionNotFoundError(f"Commission {commission_id} not found for affiliate {affiliate.id}")
        return commission

    def _get_referral(self, affiliate: AffiliateDB, referral_id: str) -> ReferralDB:
        referral = self.db.query(ReferralDB).filter(
            ReferralDB.id == referral_id,
            ReferralDB.affiliate_id == affiliate.id,
        ).first()
        if referral is None:
            raise ReferralNotFoundError(f"Referral {referral_id} not found for affiliate {affiliate.id}")
        return referral

    # =========================================================================
    # AFFILIATE CRUD
    # =========================================================================

    def _unique_referral_code(self, name: str) -> str:
        while True:
            code = generate_referral_code(name)
            if not self.db.query(AffiliateDB.id).filter(AffiliateDB.referral_code == code).first():
                return code

    def create_affiliate(
        self,
        name: str,
        email: str,
        tier: AffiliateTier = AffiliateTier.BRONZE,
        commission_rate: Optional[float] = None,
        status: AffiliateStatus = AffiliateStatus.ACTIVE,
        referral_code: Optional[str] = None,
        **fields: Any,
    ) -> AffiliateDB:
        """
        Create an affiliate.

        Admin-created affiliates are active by default. Without an explicit
        rate the tier's default commission rate applies.
        """
        email = email.strip().lower()
        if self.db.query(AffiliateDB.id).filter(AffiliateDB.email == email).first():
            raise DuplicateAffiliateError("Affiliate with this email already exists")

        tier = AffiliateTier(tier)
        if commission_rate is None:
            commission_rate = default_rate_for_tier(tier)

        if referral_code:
            referral_code = referral_code.strip().upper()
            if self.db.query(AffiliateDB.id).filter(AffiliateDB.referral_code == referral_code).first():
                raise DuplicateAffiliateError("Referral code already in use")
        else:
            referral_code = self._unique_referral_code(name)

        affiliate = AffiliateDB(
            id=str(uuid4()),
            affiliate_code=generate_affiliate_code(),
            referral_code=referral_code,
            name=name.strip(),
            email=email,
            tier=tier,
            status=AffiliateStatus(status),
            commission_rate=_validate_rate(commission_rate),
            custom_commission_rates=(
                _validate_custom_rates(fields.pop("custom_commission_rates", None))
                or dict(DEFAULT_CUSTOM_COMMISSION_RATES)
            ),
        )
        for key, value in fields.items():
            if key in UPDATABLE_FIELDS and value is not None:
                setattr(affiliate, key, value)
        affiliate.last_activity_at = datetime.utcnow()

        self.db.add(affiliate)
        self._commit()
        self.db.refresh(affiliate)

        logger.info(f"Affiliate created: {affiliate.email} ({affiliate.referral_code})")
        return affiliate

    def update_affiliate(self, affiliate: AffiliateDB, updates: Dict[str, Any]) -> AffiliateDB:
        """Apply admin edits. Unknown fields and stats are ignored."""
        for key, value in updates.items():
            if key not in UPDATABLE_FIELDS:
                continue
            if key == "commission_rate" and value is not None:
                value = _validate_rate(value)
            elif key == "custom_commission_rates" and value is not None:
                value = _validate_custom_rates(value)
            elif key == "tier" and value is not None:
                value = AffiliateTier(value)
            elif key == "status" and value is not None:
                value = AffiliateStatus(value)
            elif key == "payment_method" and value is not None:
                value = PayoutMethod(value)
            setattr(affiliate, key, value)

        self._touch(affiliate)
        self._commit()
        self.db.refresh(affiliate)
        return affiliate

    def delete_affiliate(self, affiliate: AffiliateDB):
        self.db.delete(affiliate)
        self._commit()
        logger.info(f"Affiliate deleted: {affiliate.email}")

    # =========================================================================
    # LISTING / ANALYTICS
    # =========================================================================

    def _list_filters(self, status=None, tier=None, search=None) -> List:
        filters = []
        if status:
            filters.append(AffiliateDB.status == AffiliateStatus(status))
        if tier:
            filters.append(AffiliateDB.tier == AffiliateTier(tier))
        if search:
            term = f"%{search}%"
            filters.append(or_(
                AffiliateDB.name.ilike(term),
                AffiliateDB.email.ilike(term),
                AffiliateDB.referral_code.ilike(term),
            ))
        return filters

    def list_affiliates(
        self,
        page: int = 1,
        limit: int = 50,
        status: Optional[str] = None,
        tier: Optional[str] = None,
        search: Optional[str] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> Tuple[Page, Dict[str, Any]]:
        """Paginated affiliates plus program totals over the same filter."""
        filters = self._list_filters(status, tier, search)

        column = SORTABLE_FIELDS.get(sort_by, AffiliateDB.created_at)
        ordering = desc(column) if sort_order == "desc" else asc(column)

        query = self.db.query(AffiliateDB).filter(*filters).order_by(ordering)
        result = paginate(query, page, limit)

        return result, self.summary_stats(filters)

    def summary_stats(self, filters: Optional[List] = None) -> Dict[str, Any]:
        row = self.db.query(
            func.count(AffiliateDB.id),
            func.sum(case((AffiliateDB.status == AffiliateStatus.ACTIVE, 1), else_=0)),
            func.sum(AffiliateDB.total_commission_earned),
            func.sum(AffiliateDB.total_commission_paid),
            func.sum(AffiliateDB.pending_commission),
            func.sum(AffiliateDB.total_referrals),
            func.sum(AffiliateDB.successful_referrals),
        ).filter(*(filters or [])).one()

        return {
            "total_affiliates": row[0] or 0,
            "active_affiliates": int(row[1] or 0),
            "total_commission_earned": _money(row[2]),
            "total_commission_paid": _money(row[3]),
            "pending_commissions": _money(row[4]),
            "total_referrals": int(row[5] or 0),
            "successful_referrals": int(row[6] or 0),
        }

    def performance_analytics(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        affiliate_ids: Optional[List[str]] = None,
        top_limit: int = 10,
    ) -> Dict[str, Any]:
        """Program-wide revenue, commission and conversion figures."""
        query = self.db.query(AffiliateDB)
        if start_date:
            query = query.filter(AffiliateDB.created_at >= start_date)
        if end_date:
            query = query.filter(AffiliateDB.created_at <= end_date)
        if affiliate_ids:
            query = query.filter(AffiliateDB.id.in_(affiliate_ids))

        affiliates = query.all()
        if not affiliates:
            return {
                "total_revenue": 0,
                "total_commissions": 0,
                "total_referrals": 0,
                "successful_referrals": 0,
                "average_conversion_rate": 0,
                "top_performers": [],
            }

        top = sorted(affiliates, key=lambda a: a.lifetime_value or 0, reverse=True)[:top_limit]
        return {
            "total_revenue": _money(sum(a.lifetime_value or 0 for a in affiliates)),
            "total_commissions": _money(sum(a.total_commission_earned or 0 for a in affiliates)),
            "total_referrals": sum(a.total_referrals or 0 for a in affiliates),
            "successful_referrals": sum(a.successful_referrals or 0 for a in affiliates),
            "average_conversion_rate": round(
                sum(a.conversion_rate or 0 for a in affiliates) / len(affiliates), 4
            ),
            "top_performers": [
                {"affiliate_id": a.id, "affiliate": a.name, "revenue": _money(a.lifetime_value)}
                for a in top
            ],
        }

    def top_performers(self, limit: int = 10) -> List[AffiliateDB]:
        return self.db.query(AffiliateDB).filter(
            AffiliateDB.status == AffiliateStatus.ACTIVE
        ).order_by(desc(AffiliateDB.total_commission_earned)).limit(limit).all()

    def pending_payouts(self) -> List[AffiliateDB]:
        return self.db.query(AffiliateDB).filter(
            AffiliateDB.status == AffiliateStatus.ACTIVE,
            AffiliateDB.pending_commission > 0,
        ).order_by(desc(AffiliateDB.pending_commission)).all()

    # =========================================================================
    # REFERRALS
    # =========================================================================

    def add_referral(
        self,
        affiliate: AffiliateDB,
        customer_id: Optional[str] = None,
        customer_email: Optional[str] = None,
    ) -> ReferralDB:
        """Track a signup brought in by this affiliate."""
        referral = ReferralDB(
            id=str(uuid4()),
            affiliate_id=affiliate.id,
            customer_id=customer_id,
            customer_email=customer_email.lower() if customer_email else None,
            signup_date=datetime.utcnow(),
            status=ReferralStatus.SIGNUP,
        )
        affiliate.referrals.append(referral)

        affiliate.total_referrals = (affiliate.total_referrals or 0) + 1
        affiliate.conversion_rate = affiliate.calculated_conversion_rate
        self._touch(affiliate)

        self._commit()
        logger.info(f"Referral added for affiliate {affiliate.referral_code}: {customer_email or customer_id}")
        return referral

    def record_conversion(
        self,
        affiliate: AffiliateDB,
        referral_id: str,
        order_amount: float,
        order_id: Optional[str] = None,
        package: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> CommissionDB:
        """
        Convert a referral and create its pending commission.

        The plan-specific rate applies when `package` names one of the
        affiliate's custom rates; otherwise the affiliate's base rate.
        """
        order_amount = _validate_amount(order_amount)

        referral = self._get_referral(affiliate, referral_id)
        if referral.status != ReferralStatus.SIGNUP:
            raise CommissionTransitionError(
                f"Referral {referral_id} is already {referral.status.value}",
                current_status=referral.status,
                requested_status=ReferralStatus.CONVERTED,
            )

        rate = affiliate.commission_rate or 0.0
        custom_rates = affiliate.custom_commission_rates or {}
        if package and package in custom_rates:
            rate = _validate_rate(custom_rates[package])

        commission_amount = _money(order_amount * rate)
        now = datetime.utcnow()

        # Referral
        referral.status = ReferralStatus.CONVERTED
        referral.first_purchase_date = now
        referral.total_spent = order_amount
        referral.commission_earned = commission_amount

        # Commission history
        commission = CommissionDB(
            id=str(uuid4()),
            affiliate_id=affiliate.id,
            referral_id=referral.id,
            order_id=order_id,
            customer_id=referral.customer_id,
            order_amount=order_amount,
            commission_amount=commission_amount,
            commission_rate=rate,
            status=CommissionStatus.PENDING,
            created_at=now,
        )
        affiliate.commissions.append(commission)
        self.state_machine.log_event(
            commission, None, CommissionStatus.PENDING, actor_id,
            {"order_id": order_id, "order_amount": order_amount, "package": package},
        )

        # Stats
        affiliate.successful_referrals = (affiliate.successful_referrals or 0) + 1
        affiliate.total_commission_earned = _money(affiliate.total_commission_earned + commission_amount)
        affiliate.pending_commission = _money(affiliate.pending_commission + commission_amount)
        affiliate.lifetime_value = _money((affiliate.lifetime_value or 0) + order_amount)
        affiliate.average_order_value = _money(affiliate.lifetime_value / affiliate.successful_referrals)
        affiliate.conversion_rate = affiliate.calculated_conversion_rate
        self._touch(affiliate)

        self._commit()
        logger.info(
            f"Conversion recorded for affiliate {affiliate.referral_code}: "
            f"order {order_id} amount {order_amount} commission {commission_amount}"
        )
        return commission

    # =========================================================================
    # COMMISSION LIFECYCLE
    # =========================================================================

    def approve_commission(self, affiliate: AffiliateDB, commission_id: str, admin_id: str) -> CommissionDB:
        """pending -> approved. Counters are unchanged."""
        commission = self._get_commission(affiliate, commission_id)
        self.state_machine.transition(commission, CommissionStatus.APPROVED, actor_id=admin_id)
        self._touch(affiliate)

        self._commit()
        logger.info(f"Commission {commission.id} approved by {admin_id}")
        return commission

    def pay_commission(
        self,
        affiliate: AffiliateDB,
        commission_id: str,
        payment_method: Optional[str] = None,
        payment_reference: Optional[str] = None,
        admin_id: Optional[str] = None,
    ) -> CommissionDB:
        """approved -> paid. Moves the amount from pending to paid."""
        commission = self._get_commission(affiliate, commission_id)
        self.state_machine.transition(
            commission, CommissionStatus.PAID, actor_id=admin_id,
            metadata={"payment_method": payment_method, "payment_reference": payment_reference},
        )
        commission.payment_method = payment_method or (
            affiliate.payment_method.value if affiliate.payment_method else None
        )
        commission.payment_reference = payment_reference

        amount = commission.commission_amount or 0.0
        affiliate.total_commission_paid = _money(affiliate.total_commission_paid + amount)
        affiliate.pending_commission = _money(affiliate.pending_commission - amount)
        self._touch(affiliate)

        self._commit()
        logger.info(f"Commission {commission.id} paid: {amount} via {commission.payment_method}")
        return commission

    def cancel_commission(
        self,
        affiliate: AffiliateDB,
        commission_id: str,
        reason: Optional[str] = None,
        admin_id: Optional[str] = None,
    ) -> CommissionDB:
        """pending -> cancelled. The amount is no longer earned or owed."""
        commission = self._get_commission(affiliate, commission_id)
        self.state_machine.transition(
            commission, CommissionStatus.CANCELLED, actor_id=admin_id, metadata={"reason": reason},
        )
        commission.cancellation_reason = reason

        amount = commission.commission_amount or 0.0
        affiliate.total_commission_earned = _money(affiliate.total_commission_earned - amount)
        affiliate.pending_commission = _money(affiliate.pending_commission - amount)
        self._touch(affiliate)

        self._commit()
        logger.info(f"Commission {commission.id} cancelled by {admin_id}: {reason}")
        return commission

    def reconcile_stats(self, affiliate: AffiliateDB) -> Dict[str, Dict[str, float]]:
        """
        Recompute every stat from referral and commission rows.

        Returns {field: {"before": old, "after": new}} for each corrected field.
        """
        referrals = list(affiliate.referrals)
        commissions = list(affiliate.commissions)

        converted = [r for r in referrals if r.first_purchase_date is not None]
        expected = {
            "total_referrals": len(referrals),
            "successful_referrals": len(converted),
            "total_commission_earned": _money(sum(
                c.commission_amount for c in commissions if c.status != CommissionStatus.CANCELLED
            )),
            "total_commission_paid": _money(sum(
                c.commission_amount for c in commissions if c.status == CommissionStatus.PAID
            )),
            "pending_commission": _money(sum(
                c.commission_amount for c in commissions if c.status in OUTSTANDING_STATUSES
            )),
            "lifetime_value": _money(sum(r.total_spent or 0 for r in converted)),
        }
        expected["conversion_rate"] = (
            expected["successful_referrals"] / expected["total_referrals"]
            if expected["total_referrals"] else 0.0
        )
        expected["average_order_value"] = (
            _money(expected["lifetime_value"] / expected["successful_referrals"])
            if expected["successful_referrals"] else 0.0
        )

        drift = {}
        for field_name, value in expected.items():
            current = getattr(affiliate, field_name)
            if current != value:
                drift[field_name] = {"before": current, "after": value}
                setattr(affiliate, field_name, value)

        if drift:
            self._touch(affiliate)
            self._commit()
            logger.warning(f"Affiliate {affiliate.id} stats reconciled: {sorted(drift)}")
        return drift

    # =========================================================================
    # MARKETING LINKS
    # =========================================================================

    def generate_link(
        self,
        affiliate: AffiliateDB,
        name: str,
        target_url: str,
        description: Optional[str] = None,
    ) -> AffiliateLinkDB:
        tracking_id = generate_tracking_id()
        link = AffiliateLinkDB(
            id=str(uuid4()),
            affiliate_id=affiliate.id,
            name=name,
            url=build_tracking_url(target_url, affiliate.referral_code, tracking_id),
            description=description,
            tracking_id=tracking_id,
            clicks=0,
        )
        affiliate.links.append(link)
        self._touch(affiliate)
        self._commit()
        return link

    # =========================================================================
    # BULK ACTIONS
    # =========================================================================

    def bulk_action(self, action: str, affiliate_ids: List[str], data: Optional[Dict[str, Any]] = None) -> Dict[str, int]:
        """
        Apply one change to many affiliates.

        Returns matched and modified counts; affiliates already in the target
        state count as matched but not modified.
        """
        data = data or {}
        if action == "activate":
            field_name, value = "status", AffiliateStatus.ACTIVE
        elif action == "deactivate":
            field_name, value = "status", AffiliateStatus.INACTIVE
        elif action == "update_tier":
            field_name, value = "tier", AffiliateTier(data.get("tier"))
        elif action == "update_commission":
            field_name, value = "commission_rate", _validate_rate(data.get("commission_rate"))
        else:
            raise InvalidBulkActionError(f"Invalid bulk action: {action}")

        affiliates = self.db.query(AffiliateDB).filter(AffiliateDB.id.in_(affiliate_ids or [])).all()
        modified = 0
        for affiliate in affiliates:
            if getattr(affiliate, field_name) != value:
                setattr(affiliate, field_name, value)
                self._touch(affiliate)
                modified += 1

        self._commit()
        logger.info(f"Bulk action {action}: matched {len(affiliates)}, modified {modified}")
        return {"matched_count": len(affiliates), "modified_count": modified}
