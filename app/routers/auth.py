"""
VBMS Backend - Authentication Router
Handles user registration, login, session verification, and profile management.
"""
from uuid import uuid4
from datetime import datetime, timedelta
from typing import Optional, Dict, Any
import logging
import re

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, EmailStr, field_validator
from sqlalchemy.orm import Session

from ..database import get_db
from ..models.db_models import UserDB, UserRole, UserStatus, BusinessDB
from ..auth import hash_password, verify_password, create_access_token, get_current_user
from ..services.affiliates import AffiliateService, ConcurrentModificationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

MAX_LOGIN_ATTEMPTS = 5
LOCK_DURATION = timedelta(minutes=15)
LOGIN_HISTORY_LIMIT = 20

# Roles a visitor may pick when registering themselves
SELF_SERVICE_ROLES = (UserRole.CUSTOMER, UserRole.CLIENT)


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class RegisterRequest(BaseModel):
    name: str
    email: EmailStr
    password: str
    role: Optional[str] = UserRole.CLIENT.value
    position: Optional[str] = None
    business: Optional[str] = None
    referral_code: Optional[str] = None

    @field_validator('name')
    @classmethod
    def validate_name(cls, v):
        if not v.strip():
            raise ValueError('Name is required')
        return v.strip()

    @field_validator('password')
    @classmethod
    def validate_password_strength(cls, v):
        if len(v) < 6:
            raise ValueError('Password must be at least 6 characters')
        return v

    @field_validator('role')
    @classmethod
    def validate_role(cls, v):
        if v is None:
            return UserRole.CLIENT.value
        v = v.lower()
        if v not in [r.value for r in SELF_SERVICE_ROLES]:
            raise ValueError('Role must be customer or client')
        return v


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class UserSummary(BaseModel):
    id: str
    name: str
    email: str
    role: str
    position: Optional[str] = None
    status: Optional[str] = None
    business: Optional[str] = None


class AuthResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserSummary


class MessageResponse(BaseModel):
    message: str


class ProfileUpdateRequest(BaseModel):
    """Request model for updating user profile. All fields optional."""
    name: Optional[str] = None
    phone: Optional[str] = None
    photo: Optional[str] = None
    timezone: Optional[str] = None
    department: Optional[str] = None
    preferences: Optional[Dict[str, Any]] = None

    @field_validator('phone')
    @classmethod
    def validate_phone(cls, v):
        if v is not None and v and not re.match(r'^[0-9+\-() .]{7,20}$', v):
            raise ValueError('Invalid phone number')
        return v


class ChangePasswordRequest(BaseModel):
    """Request model for changing password."""
    current_password: str
    new_password: str
    confirm_password: str

    @field_validator('new_password')
    @classmethod
    def validate_password_strength(cls, v):
        if len(v) < 8:
            raise ValueError('Password must be at least 8 characters')
        return v

    @field_validator('confirm_password')
    @classmethod
    def passwords_match(cls, v, info):
        if 'new_password' in info.data and v != info.data['new_password']:
            raise ValueError('Passwords do not match')
        return v


class UserProfileResponse(BaseModel):
    """Full user profile response."""
    id: str
    name: str
    email: str
    role: str
    position: Optional[str] = None
    status: Optional[str] = None
    phone: Optional[str] = None
    photo: Optional[str] = None
    timezone: Optional[str] = None
    department: Optional[str] = None
    preferences: Optional[Dict[str, Any]] = None
    onboarding_completed: bool = False
    last_login: Optional[str] = None
    created_at: Optional[str] = None


# =============================================================================
# HELPERS
# =============================================================================

def _summary(user: UserDB) -> UserSummary:
    return UserSummary(
        id=user.id,
        name=user.name,
        email=user.email,
        role=user.role.value,
        position=user.position,
        status=user.status.value if user.status else None,
        business=user.business.business_name if user.business else None,
    )


def _profile(user: UserDB) -> UserProfileResponse:
    return UserProfileResponse(
        id=user.id,
        name=user.name,
        email=user.email,
        role=user.role.value,
        position=user.position,
        status=user.status.value if user.status else None,
        phone=user.phone,
        photo=user.photo,
        timezone=user.timezone,
        department=user.department,
        preferences=user.preferences,
        onboarding_completed=bool(user.onboarding_completed),
        last_login=user.last_login.isoformat() if user.last_login else None,
        created_at=user.created_at.isoformat() if user.created_at else None,
    )


def _record_login(user: UserDB, request: Request, success: bool):
    """Append to login history, keeping the most recent entries only."""
    entry = {
        "ip": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
        "timestamp": datetime.utcnow().isoformat(),
        "success": success,
    }
    # Reassign so SQLAlchemy sees the JSON change
    user.login_history = ([entry] + list(user.login_history or []))[:LOGIN_HISTORY_LIMIT]


def _is_locked(user: UserDB) -> bool:
    return user.lock_until is not None and user.lock_until > datetime.utcnow()


def _register_failed_attempt(user: UserDB):
    # An expired lock starts a fresh count
    if user.lock_until is not None and user.lock_until <= datetime.utcnow():
        user.login_attempts = 0
        user.lock_until = None

    user.login_attempts = (user.login_attempts or 0) + 1
    if user.login_attempts >= MAX_LOGIN_ATTEMPTS:
        user.lock_until = datetime.utcnow() + LOCK_DURATION


# =============================================================================
# API ENDPOINTS
# =============================================================================

@router.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
async def register(request: RegisterRequest, db: Session = Depends(get_db)):
    """
    Register a new user account and return a session token.
    """
    email = request.email.lower()

    # Check if email already exists
    existing_email = db.query(UserDB).filter(UserDB.email == email).first()
    if existing_email:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Email already exists"
        )

    user = UserDB(
        id=str(uuid4()),
        name=request.name,
        email=email,
        password_hash=hash_password(request.password),
        role=UserRole(request.role),
        position=request.position or "Member",
        status=UserStatus.ACTIVE,
        preferences={"notifications": True, "dark_mode": False, "language": "en"},
        admin_permissions={},
        login_history=[],
    )

    business_name = (request.business or "").strip()
    if business_name:
        user.business = BusinessDB(id=str(uuid4()), owner_id=user.id, business_name=business_name)

    db.add(user)
    db.commit()
    db.refresh(user)

    logger.info(f"User registered: {email}")

    if request.referral_code:
        service = AffiliateService(db)
        affiliate = service.find_by_referral_code(request.referral_code)
        if affiliate is None:
            logger.warning(f"Unknown referral code at registration: {request.referral_code}")
        else:
            try:
                service.add_referral(affiliate, customer_id=user.id, customer_email=user.email)
            except ConcurrentModificationError as e:
                # The account exists; a lost referral is recoverable through reconcile
                logger.error(f"Referral for {email} not recorded: {e}")

    access_token = create_access_token(user.id, user.email, user.role)
    return AuthResponse(access_token=access_token, user=_summary(user))


@router.post("/login", response_model=AuthResponse)
async def login(request: LoginRequest, http_request: Request, db: Session = Depends(get_db)):
    """
    Authenticate user and return JWT token.
    """
    email = request.email.lower()
    user = db.query(UserDB).filter(UserDB.email == email).first()

    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if _is_locked(user):
        raise HTTPException(
            status_code=status.HTTP_423_LOCKED,
            detail="Account temporarily locked due to failed login attempts"
        )

    if not verify_password(request.password, user.password_hash):
        _register_failed_attempt(user)
        _record_login(user, http_request, success=False)
        db.commit()
        logger.warning(f"Failed login for {email} ({user.login_attempts} attempts)")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if user.status in (UserStatus.INACTIVE, UserStatus.SUSPENDED):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Account is {user.status.value}"
        )

    user.login_attempts = 0
    user.lock_until = None
    user.last_login = datetime.utcnow()
    user.last_activity = user.last_login
    _record_login(user, http_request, success=True)
    db.commit()

    access_token = create_access_token(user.id, user.email, user.role)

    logger.info(f"User logged in: {email}")
    return AuthResponse(access_token=access_token, user=_summary(user))


@router.get("/me", response_model=UserProfileResponse)
async def get_me(current_user: UserDB = Depends(get_current_user)):
    """
    Get current authenticated user info.
    """
    return _profile(current_user)


@router.put("/profile", response_model=UserProfileResponse)
async def update_profile(
    request: ProfileUpdateRequest,
    current_user: UserDB = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Update user profile information.
    Only provided fields will be updated.
    """
    updates = request.model_dump(exclude_none=True)
    for field_name, value in updates.items():
        setattr(current_user, field_name, value)

    db.commit()
    db.refresh(current_user)

    logger.info(f"Profile updated for user: {current_user.email}")
    return _profile(current_user)


@router.put("/password", response_model=MessageResponse)
async def change_password(
    request: ChangePasswordRequest,
    current_user: UserDB = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Change user password.
    Requires current password for verification.
    """
    if not verify_password(request.current_password, current_user.password_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Current password is incorrect"
        )

    current_user.password_hash = hash_password(request.new_password)
    current_user.last_password_change = datetime.utcnow()
    db.commit()

    logger.info(f"Password changed for user: {current_user.email}")
    return MessageResponse(message="Password updated successfully")
