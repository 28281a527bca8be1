"""
VBMS Backend - Admin Router
Business console: dashboard, customers, orders, analytics and system settings.
"""
from datetime import datetime, date, timedelta
from typing import List, Optional, Dict, Any
import logging
import os

from dateutil.relativedelta import relativedelta
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy import func, desc, or_
from sqlalchemy.orm import Session

from ..database import get_db
from ..models.db_models import (
    UserDB, UserRole, UserStatus, SubscriptionDB, SubscriptionStatus, PackageType,
    PaymentDB, OrderDB, AnalyticsSnapshotDB, ADMIN_ROLES,
)
from ..auth import require_admin, require_main_admin, require_admin_permission
from ..services.pagination import paginate
from ..services.user_accounts import create_user, serialize_user, DuplicateUserError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])

ANALYTICS_PERIODS = {
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "90d": timedelta(days=90),
    "1y": timedelta(days=365),
}

CUSTOMER_STATUSES = ("active", "inactive", "suspended")


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class MonthlyRevenue(BaseModel):
    year: int
    month: int
    revenue: float
    count: int


class DashboardStats(BaseModel):
    """Dashboard statistics response."""
    total_customers: int
    active_subscriptions: int
    total_revenue: float  # Monthly price of all active subscriptions
    new_signups_today: int
    recent_customers: List[Dict[str, Any]]
    subscription_breakdown: List[Dict[str, Any]]
    monthly_revenue: List[MonthlyRevenue]
    total_payments: float  # Succeeded payments, all time


class CustomerStatusUpdate(BaseModel):
    status: str


class LegacyCreateUserRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    role: Optional[str] = None


# =============================================================================
# HELPERS
# =============================================================================

def _serialize_subscription(sub: Optional[SubscriptionDB]) -> Optional[Dict[str, Any]]:
    if sub is None:
        return None
    return {
        "id": sub.id,
        "package_type": sub.package_type.value if sub.package_type else None,
        "package_name": sub.package_name,
        "status": sub.status.value if sub.status else None,
        "price": {
            "monthly": sub.price_monthly,
            "per_call": sub.price_per_call,
            "setup": sub.price_setup,
        },
        "features": sub.features or {},
        "next_billing_date": sub.next_billing_date.isoformat() if sub.next_billing_date else None,
    }


def _serialize_customer(user: UserDB) -> Dict[str, Any]:
    data = serialize_user(user)
    data["business"] = {
        "id": user.business.id,
        "business_name": user.business.business_name,
        "business_type": user.business.business_type,
        "industry": user.business.industry,
    } if user.business else None
    data["subscription"] = _serialize_subscription(user.subscription)
    return data


def _serialize_order(order: OrderDB) -> Dict[str, Any]:
    return {
        "id": order.id,
        "order_number": order.order_number,
        "amount": order.amount,
        "status": order.status,
        "customer": {
            "id": order.customer.id,
            "name": order.customer.name,
            "email": order.customer.email,
        } if order.customer else None,
        "business_name": order.business.business_name if order.business else None,
        "created_at": order.created_at.isoformat() if order.created_at else None,
    }


def _monthly_revenue(db: Session, months: int = 6) -> List[MonthlyRevenue]:
    """Active subscription revenue grouped by creation month."""
    since = datetime.utcnow() - relativedelta(months=months)
    subs = db.query(SubscriptionDB).filter(
        SubscriptionDB.created_at >= since,
        SubscriptionDB.status == SubscriptionStatus.ACTIVE,
    ).all()

    buckets: Dict[tuple, Dict[str, float]] = {}
    for sub in subs:
        key = (sub.created_at.year, sub.created_at.month)
        bucket = buckets.setdefault(key, {"revenue": 0.0, "count": 0})
        bucket["revenue"] += sub.price_monthly or 0
        bucket["count"] += 1

    return [
        MonthlyRevenue(year=year, month=month, revenue=round(b["revenue"], 2), count=b["count"])
        for (year, month), b in sorted(buckets.items())
    ]


# =============================================================================
# API ENDPOINTS
# =============================================================================

@router.get("/dashboard", response_model=DashboardStats)
async def get_dashboard(
    db: Session = Depends(get_db),
    admin: UserDB = Depends(require_admin)
):
    """
    Business overview for the admin console.
    """
    today_start = datetime.combine(date.today(), datetime.min.time())

    total_customers = db.query(func.count(UserDB.id)).filter(
        UserDB.role == UserRole.CUSTOMER
    ).scalar() or 0

    active_subscriptions = db.query(func.count(SubscriptionDB.id)).filter(
        SubscriptionDB.status == SubscriptionStatus.ACTIVE
    ).scalar() or 0

    total_revenue = db.query(func.sum(SubscriptionDB.price_monthly)).filter(
        SubscriptionDB.status == SubscriptionStatus.ACTIVE
    ).scalar() or 0

    new_signups_today = db.query(func.count(UserDB.id)).filter(
        UserDB.role == UserRole.CUSTOMER,
        UserDB.created_at >= today_start
    ).scalar() or 0

    recent = db.query(UserDB).filter(
        UserDB.role == UserRole.CUSTOMER
    ).order_by(desc(UserDB.created_at)).limit(5).all()

    breakdown = db.query(
        SubscriptionDB.package_type,
        func.count(SubscriptionDB.id)
    ).group_by(SubscriptionDB.package_type).all()

    total_payments = db.query(func.sum(PaymentDB.amount)).filter(
        PaymentDB.status == "succeeded"
    ).scalar() or 0

    return DashboardStats(
        total_customers=total_customers,
        active_subscriptions=active_subscriptions,
        total_revenue=round(total_revenue, 2),
        new_signups_today=new_signups_today,
        recent_customers=[
            {
                "id": u.id,
                "name": u.name,
                "email": u.email,
                "status": u.status.value if u.status else None,
                "created_at": u.created_at.isoformat() if u.created_at else None,
            }
            for u in recent
        ],
        subscription_breakdown=[
            {"package_type": p.value if p else None, "count": c} for p, c in breakdown
        ],
        monthly_revenue=_monthly_revenue(db),
        total_payments=round(total_payments, 2),
    )


@router.get("/customers")
async def get_customers(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    search: Optional[str] = None,
    status: Optional[str] = None,
    package_type: Optional[str] = None,
    db: Session = Depends(get_db),
    admin: UserDB = Depends(require_admin)
):
    """
    Paginated customer list with business and subscription.
    """
    query = db.query(UserDB).filter(UserDB.role == UserRole.CUSTOMER)

    if search:
        search_term = f"%{search}%"
        query = query.filter(or_(
            UserDB.name.ilike(search_term),
            UserDB.email.ilike(search_term),
        ))

    if status:
        try:
            query = query.filter(UserDB.status == UserStatus(status))
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid status")

    if package_type:
        try:
            package = PackageType(package_type)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid package type")
        query = query.join(
            SubscriptionDB, SubscriptionDB.id == UserDB.subscription_id
        ).filter(SubscriptionDB.package_type == package)

    result = paginate(query.order_by(desc(UserDB.created_at)), page, limit)

    return {
        "customers": [_serialize_customer(u) for u in result.items],
        "current_page": result.page,
        "total_pages": result.total_pages,
        "total_customers": result.total,
    }


@router.get("/customers/{customer_id}")
async def get_customer_detail(
    customer_id: str,
    db: Session = Depends(get_db),
    admin: UserDB = Depends(require_admin)
):
    """
    Customer with recent orders.
    """
    customer = db.query(UserDB).filter(UserDB.id == customer_id).first()
    if not customer:
        raise HTTPException(status_code=404, detail="Customer not found")

    recent_orders = db.query(OrderDB).filter(
        OrderDB.customer_id == customer.id
    ).order_by(desc(OrderDB.created_at)).limit(10).all()

    total_orders = db.query(func.count(OrderDB.id)).filter(
        OrderDB.customer_id == customer.id
    ).scalar() or 0

    return {
        "customer": _serialize_customer(customer),
        "recent_orders": [_serialize_order(o) for o in recent_orders],
        "total_orders": total_orders,
    }


@router.put("/customers/{customer_id}/status")
async def update_customer_status(
    customer_id: str,
    request: CustomerStatusUpdate,
    db: Session = Depends(get_db),
    admin: UserDB = Depends(require_admin_permission("can_manage_customers"))
):
    """
    Activate, deactivate or suspend a customer account.
    """
    if request.status not in CUSTOMER_STATUSES:
        raise HTTPException(status_code=400, detail="Invalid status")

    customer = db.query(UserDB).filter(UserDB.id == customer_id).first()
    if not customer:
        raise HTTPException(status_code=404, detail="Customer not found")

    try:
        customer.status = UserStatus(request.status)
        db.commit()
        db.refresh(customer)
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to update customer status: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to update customer status: {e}")

    logger.info(f"Customer {customer.email} set to {request.status} by {admin.email}")
    return {
        "customer": serialize_user(customer),
        "message": f"Customer status updated to {request.status}",
    }


@router.get("/orders")
async def get_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    db: Session = Depends(get_db),
    admin: UserDB = Depends(require_admin)
):
    """
    Paginated orders across all customers.
    """
    query = db.query(OrderDB)
    if status:
        query = query.filter(OrderDB.status == status)
    if start_date:
        query = query.filter(OrderDB.created_at >= start_date)
    if end_date:
        query = query.filter(OrderDB.created_at <= end_date)

    result = paginate(query.order_by(desc(OrderDB.created_at)), page, limit)

    return {
        "orders": [_serialize_order(o) for o in result.items],
        "current_page": result.page,
        "total_pages": result.total_pages,
        "total_orders": result.total,
    }


@router.get("/analytics")
async def get_analytics(
    period: str = "30d",
    db: Session = Depends(get_db),
    admin: UserDB = Depends(require_admin)
):
    """
    Revenue and order metrics from daily snapshots. Unknown periods fall back to 30d.
    """
    window = ANALYTICS_PERIODS.get(period, ANALYTICS_PERIODS["30d"])
    since = date.today() - window

    snapshots = db.query(AnalyticsSnapshotDB).filter(
        AnalyticsSnapshotDB.date >= since
    ).order_by(desc(AnalyticsSnapshotDB.date)).all()

    total_revenue = sum(s.revenue or 0 for s in snapshots)
    total_orders = sum(s.order_count or 0 for s in snapshots)

    metrics = {
        "total_revenue": round(total_revenue, 2),
        "total_orders": total_orders,
        "average_order_value": round(total_revenue / total_orders, 2) if total_orders else 0,
        "customer_growth": (
            (snapshots[0].customer_count or 0) - (snapshots[-1].customer_count or 0)
            if snapshots else 0
        ),
    }

    return {
        "analytics": [
            {
                "date": s.date.isoformat(),
                "revenue": s.revenue,
                "order_count": s.order_count,
                "customer_count": s.customer_count,
            }
            for s in snapshots
        ],
        "metrics": metrics,
        "period": period,
    }


@router.post("/create-user", status_code=status.HTTP_201_CREATED)
async def legacy_create_user(
    request: LegacyCreateUserRequest,
    db: Session = Depends(get_db),
    admin: UserDB = Depends(require_admin_permission("can_create_admins"))
):
    """
    Legacy user creation kept for older admin clients.
    """
    if not all([request.name, request.email, request.password, request.role]):
        raise HTTPException(status_code=400, detail="Name, email, password, and role are required")

    try:
        user = create_user(
            db,
            name=request.name,
            email=request.email,
            password=request.password,
            role=request.role,
            creator=admin,
        )
    except DuplicateUserError:
        raise HTTPException(status_code=409, detail="Email already registered")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {
        "message": "User created",
        "user": {"name": user.name, "email": user.email, "role": user.role.value},
    }


@router.get("/settings")
async def get_system_settings(
    db: Session = Depends(get_db),
    admin: UserDB = Depends(require_main_admin)
):
    """
    User counts and integration health. Main administrator only.
    """
    return {
        "user_stats": {
            "total_users": db.query(func.count(UserDB.id)).scalar() or 0,
            "admin_users": db.query(func.count(UserDB.id)).filter(
                UserDB.role.in_(ADMIN_ROLES)
            ).scalar() or 0,
            "customer_users": db.query(func.count(UserDB.id)).filter(
                UserDB.role == UserRole.CUSTOMER
            ).scalar() or 0,
        },
        "system_health": {
            "database_connected": True,
            "stripe_configured": bool(os.getenv("STRIPE_SECRET_KEY")),
            "email_configured": bool(os.getenv("SMTP_USER")),
        },
    }
