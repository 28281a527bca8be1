"""
VBMS Backend - Settings Router
Business profile, notification preferences, delivery integrations and file uploads.
"""
from uuid import uuid4
from typing import Optional, Dict, Any
import logging

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..database import get_db
from ..models.db_models import UserDB, SettingsDB, FileDB
from ..auth import get_current_user
from ..services.pagination import paginate
from ..services.storage import (
    LocalStorageService, FileTooLargeError, InvalidFileKeyError, category_for_mime_type,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/settings", tags=["settings"])

# platform name -> (connected flag column, store id column)
INTEGRATION_PLATFORMS = {
    "ubereats": ("uber_eats_connected", "uber_eats_store_id"),
    "doordash": ("door_dash_connected", None),
    "grubhub": ("grubhub_connected", None),
    "clover": ("clover_connected", None),
}


def get_storage() -> LocalStorageService:
    """Storage dependency; overridden in tests."""
    return LocalStorageService()


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class BusinessProfileUpdate(BaseModel):
    business_name: Optional[str] = None
    business_email: Optional[str] = None
    business_phone: Optional[str] = None
    business_address: Optional[str] = None
    business_description: Optional[str] = None


class NotificationSettingsUpdate(BaseModel):
    email_notifications: Optional[bool] = None
    sms_notifications: Optional[bool] = None
    order_notifications: Optional[bool] = None
    marketing_notifications: Optional[bool] = None


class IntegrationUpdate(BaseModel):
    platform: str
    connected: bool
    store_id: Optional[str] = None


# =============================================================================
# HELPERS
# =============================================================================

def get_or_create_settings(db: Session, user: UserDB) -> SettingsDB:
    """Settings row for the user, created with defaults on first access."""
    settings = db.query(SettingsDB).filter(SettingsDB.user_id == user.id).first()
    if settings is None:
        settings = SettingsDB(
            id=str(uuid4()),
            user_id=user.id,
            business_name="",
            business_email="",
            business_phone="",
            business_address="",
            business_description="",
            logo_url="",
            email_notifications=True,
            sms_notifications=False,
            order_notifications=True,
            marketing_notifications=False,
            uber_eats_connected=False,
            door_dash_connected=False,
            grubhub_connected=False,
            clover_connected=False,
        )
        db.add(settings)
        db.commit()
        db.refresh(settings)
        logger.info(f"Created default settings for user: {user.id}")
    return settings


def _business_profile(settings: SettingsDB) -> Dict[str, Any]:
    return {
        "business_name": settings.business_name,
        "business_email": settings.business_email,
        "business_phone": settings.business_phone,
        "business_address": settings.business_address,
        "business_description": settings.business_description,
        "logo_url": settings.logo_url,
    }


def _notification_settings(settings: SettingsDB) -> Dict[str, bool]:
    return {
        "email_notifications": settings.email_notifications,
        "sms_notifications": settings.sms_notifications,
        "order_notifications": settings.order_notifications,
        "marketing_notifications": settings.marketing_notifications,
    }


def _integrations(settings: SettingsDB) -> Dict[str, Any]:
    return {
        "uber_eats_connected": settings.uber_eats_connected,
        "uber_eats_store_id": settings.uber_eats_store_id,
        "door_dash_connected": settings.door_dash_connected,
        "grubhub_connected": settings.grubhub_connected,
        "clover_connected": settings.clover_connected,
    }


def _serialize_file(f: FileDB) -> Dict[str, Any]:
    return {
        "id": f.id,
        "original_name": f.original_name,
        "file_name": f.file_name,
        "file_key": f.file_key,
        "file_url": f.file_url,
        "file_size": f.file_size,
        "mime_type": f.mime_type,
        "category": f.category,
        "storage": f.storage,
        "access_level": f.access_level,
        "created_at": f.created_at.isoformat() if f.created_at else None,
    }


def _store_upload(storage: LocalStorageService, file: UploadFile, folder: str):
    try:
        return storage.save(file.file, file.filename, folder)
    except FileTooLargeError as e:
        raise HTTPException(status_code=413, detail=str(e))


# =============================================================================
# PROFILE / PREFERENCES
# =============================================================================

@router.get("/business-profile")
async def get_business_profile(
    current_user: UserDB = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return _business_profile(get_or_create_settings(db, current_user))


@router.put("/business-profile")
async def update_business_profile(
    request: BusinessProfileUpdate,
    current_user: UserDB = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    settings = get_or_create_settings(db, current_user)
    for field_name, value in request.model_dump(exclude_none=True).items():
        setattr(settings, field_name, value)
    db.commit()
    db.refresh(settings)

    logger.info(f"Business profile updated for user: {current_user.id}")
    return _business_profile(settings)


@router.get("/notifications")
async def get_notification_settings(
    current_user: UserDB = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return _notification_settings(get_or_create_settings(db, current_user))


@router.put("/notifications")
async def update_notification_settings(
    request: NotificationSettingsUpdate,
    current_user: UserDB = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    settings = get_or_create_settings(db, current_user)
    for field_name, value in request.model_dump(exclude_none=True).items():
        setattr(settings, field_name, value)
    db.commit()
    db.refresh(settings)
    return _notification_settings(settings)


@router.get("/integrations")
async def get_integrations(
    current_user: UserDB = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return _integrations(get_or_create_settings(db, current_user))


@router.put("/integrations")
async def update_integration(
    request: IntegrationUpdate,
    current_user: UserDB = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Connect or disconnect a delivery platform."""
    platform = request.platform.lower()
    if platform not in INTEGRATION_PLATFORMS:
        raise HTTPException(status_code=400, detail=f"Unknown integration platform: {request.platform}")

    settings = get_or_create_settings(db, current_user)
    connected_field, store_field = INTEGRATION_PLATFORMS[platform]
    setattr(settings, connected_field, request.connected)
    if store_field and request.store_id:
        setattr(settings, store_field, request.store_id)
    db.commit()
    db.refresh(settings)

    return {
        "message": f"{platform} integration updated successfully",
        "settings": _integrations(settings),
    }


# =============================================================================
# FILES
# =============================================================================

@router.post("/upload-logo")
async def upload_logo(
    logo: UploadFile = File(...),
    current_user: UserDB = Depends(get_current_user),
    db: Session = Depends(get_db),
    storage: LocalStorageService = Depends(get_storage)
):
    """
    Upload a business logo, replacing any previous one.
    """
    if not (logo.content_type or "").startswith("image/"):
        raise HTTPException(status_code=400, detail="Logo must be an image file")

    stored = _store_upload(storage, logo, "logos")
    settings = get_or_create_settings(db, current_user)

    try:
        # Remove the previous logo from storage and the file index
        if settings.logo_key:
            storage.delete(settings.logo_key)
            db.query(FileDB).filter(
                FileDB.file_key == settings.logo_key,
                FileDB.user_id == current_user.id,
            ).delete(synchronize_session=False)

        file_record = FileDB(
            id=str(uuid4()),
            user_id=current_user.id,
            original_name=logo.filename,
            file_name=stored.file_name,
            file_key=stored.key,
            file_url=stored.url,
            file_size=stored.size,
            mime_type=logo.content_type,
            category="logos",
            storage=storage.storage_type,
            access_level="public",
        )
        db.add(file_record)

        settings.logo_url = stored.url
        settings.logo_key = stored.key
        db.commit()
    except Exception as e:
        db.rollback()
        storage.delete(stored.key)
        logger.error(f"Failed to upload logo: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to upload logo: {e}")

    return {
        "message": "Logo uploaded successfully",
        "logo_url": stored.url,
        "file_size": stored.size,
        "file_name": logo.filename,
        "file_id": file_record.id,
    }


@router.post("/upload-file")
async def upload_file(
    file: UploadFile = File(...),
    current_user: UserDB = Depends(get_current_user),
    db: Session = Depends(get_db),
    storage: LocalStorageService = Depends(get_storage)
):
    """
    Upload a general file. Category follows the MIME type.
    """
    category = category_for_mime_type(file.content_type)
    stored = _store_upload(storage, file, category)

    try:
        file_record = FileDB(
            id=str(uuid4()),
            user_id=current_user.id,
            original_name=file.filename,
            file_name=stored.file_name,
            file_key=stored.key,
            file_url=stored.url,
            file_size=stored.size,
            mime_type=file.content_type,
            category=category,
            storage=storage.storage_type,
            access_level="private",
        )
        db.add(file_record)
        db.commit()
    except Exception as e:
        db.rollback()
        storage.delete(stored.key)
        logger.error(f"Failed to upload file: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to upload file: {e}")

    return {
        "message": "File uploaded successfully",
        "file_url": stored.url,
        "file_key": stored.key,
        "file_name": file.filename,
        "file_size": stored.size,
        "file_type": file.content_type,
        "category": category,
        "file_id": file_record.id,
    }


@router.delete("/delete-file/{file_key:path}")
async def delete_file(
    file_key: str,
    current_user: UserDB = Depends(get_current_user),
    db: Session = Depends(get_db),
    storage: LocalStorageService = Depends(get_storage)
):
    """Delete one of the current user's files."""
    file_record = db.query(FileDB).filter(
        FileDB.file_key == file_key,
        FileDB.user_id == current_user.id,
    ).first()
    if not file_record:
        raise HTTPException(status_code=404, detail="File not found or access denied")

    try:
        storage.delete(file_key)
    except InvalidFileKeyError as e:
        raise HTTPException(status_code=400, detail=str(e))

    settings = db.query(SettingsDB).filter(SettingsDB.user_id == current_user.id).first()
    if settings and settings.logo_key == file_key:
        settings.logo_key = None
        settings.logo_url = ""

    db.delete(file_record)
    db.commit()

    logger.info(f"File deleted by {current_user.id}: {file_key}")
    return {"message": "File deleted successfully"}


@router.get("/storage-stats")
async def storage_stats(
    current_user: UserDB = Depends(get_current_user),
    storage: LocalStorageService = Depends(get_storage)
):
    return storage.get_storage_stats()


@router.get("/files")
@router.get("/files/{category}")
async def list_files(
    category: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    current_user: UserDB = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """The current user's files, newest first. Category 'all' means no filter."""
    query = db.query(FileDB).filter(FileDB.user_id == current_user.id)
    if category and category != "all":
        query = query.filter(FileDB.category == category)

    result = paginate(query.order_by(FileDB.created_at.desc()), page, limit)
    return {
        "files": [_serialize_file(f) for f in result.items],
        "pagination": result.to_dict(),
        "category": category or "all",
    }
