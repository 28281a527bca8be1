"""VBMS Backend - API Routers"""
from .auth import router as auth_router
from .users import router as users_router
from .admin import router as admin_router
from .affiliates import router as affiliates_router
from .notifications import router as notifications_router
from .settings import router as settings_router

__all__ = [
    "auth_router",
    "users_router",
    "admin_router",
    "affiliates_router",
    "notifications_router",
    "settings_router",
]
