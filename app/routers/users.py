"""
VBMS Backend - Users Router
Account listing and main-admin user creation.
"""
from typing import Optional, Dict, Any
import logging

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..database import get_db
from ..models.db_models import UserDB
from ..auth import get_current_user, require_main_admin
from ..services.user_accounts import create_user, serialize_user, DuplicateUserError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/users", tags=["users"])


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class CreateUserRequest(BaseModel):
    # Optional here so missing fields get a 400 with a message, not a 422
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    role: Optional[str] = None
    department: Optional[str] = None
    position: Optional[str] = None
    admin_permissions: Optional[Dict[str, Any]] = None
    status: Optional[str] = "active"


# =============================================================================
# API ENDPOINTS
# =============================================================================

@router.get("")
async def list_users(
    current_user: UserDB = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """All accounts, without password hashes."""
    users = db.query(UserDB).order_by(UserDB.created_at.desc()).all()
    return [serialize_user(u) for u in users]


@router.post("/create-user", status_code=status.HTTP_201_CREATED)
async def create_user_endpoint(
    request: CreateUserRequest,
    current_user: UserDB = Depends(require_main_admin),
    db: Session = Depends(get_db)
):
    """Create a user of any role. Main administrators only."""
    if not all([request.name, request.email, request.password, request.role]):
        raise HTTPException(status_code=400, detail="Name, email, password, and role are required")

    try:
        user = create_user(
            db,
            name=request.name,
            email=request.email,
            password=request.password,
            role=request.role,
            creator=current_user,
            department=request.department,
            position=request.position,
            admin_permissions=request.admin_permissions,
            status=request.status,
        )
    except DuplicateUserError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to create user: {e}")
        raise HTTPException(status_code=500, detail=f"Error creating user: {e}")

    return {"message": "User created successfully", "user": serialize_user(user)}
