"""
User account creation for administrators.

Shared by /users/create-user and the legacy /admin/create-user route.
"""
from typing import Any, Dict, Optional
from uuid import uuid4
import logging

from sqlalchemy.orm import Session

from ..auth import hash_password
from ..models.db_models import UserDB, UserRole, UserStatus, ADMIN_PERMISSIONS

logger = logging.getLogger(__name__)


class DuplicateUserError(ValueError):
    pass


# Roles whose admin_permissions flags are honoured
PERMISSION_ROLES = (UserRole.ADMIN, UserRole.SUPPORT)


def parse_role(role: Optional[str]) -> UserRole:
    """Raises ValueError for anything outside UserRole."""
    if not role:
        raise ValueError("Role is required")
    try:
        return UserRole(role.strip().lower())
    except ValueError:
        raise ValueError("Invalid role specified")


def clean_permissions(permissions: Optional[Dict[str, Any]]) -> Dict[str, bool]:
    """Keep only known permission flags, coerced to bool."""
    return {
        key: bool(value)
        for key, value in (permissions or {}).items()
        if key in ADMIN_PERMISSIONS
    }


def create_user(
    db: Session,
    name: str,
    email: str,
    password: str,
    role: str,
    creator: Optional[UserDB] = None,
    department: Optional[str] = None,
    position: Optional[str] = None,
    admin_permissions: Optional[Dict[str, Any]] = None,
    status: str = UserStatus.ACTIVE.value,
) -> UserDB:
    """
    Create an account on behalf of an administrator.

    Admin permissions are stored only for admin and support roles.
    """
    if not (name and name.strip()) or not (email and email.strip()) or not password:
        raise ValueError("Name, email, password, and role are required")

    user_role = parse_role(role)
    email = email.strip().lower()

    if db.query(UserDB).filter(UserDB.email == email).first():
        raise DuplicateUserError("A user with this email already exists")

    user = UserDB(
        id=str(uuid4()),
        name=name.strip(),
        email=email,
        password_hash=hash_password(password),
        role=user_role,
        status=UserStatus(status or UserStatus.ACTIVE.value),
        position=position or "Member",
        department=department or "",
        created_by=creator.id if creator else None,
        admin_permissions=clean_permissions(admin_permissions) if user_role in PERMISSION_ROLES else {},
        login_history=[],
    )
    db.add(user)
    db.commit()
    db.refresh(user)

    logger.info(f"User created by {creator.email if creator else 'system'}: {email} ({user_role.value})")
    return user


def serialize_user(user: UserDB) -> Dict[str, Any]:
    """Account fields safe to return to clients. Never includes the password hash."""
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "role": user.role.value if user.role else None,
        "position": user.position,
        "status": user.status.value if user.status else None,
        "department": user.department,
        "phone": user.phone,
        "photo": user.photo,
        "business_id": user.business_id,
        "subscription_id": user.subscription_id,
        "admin_permissions": user.admin_permissions or {},
        "onboarding_completed": bool(user.onboarding_completed),
        "last_login": user.last_login.isoformat() if user.last_login else None,
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }
