"""
VBMS Backend - FastAPI Application

Main entry point for the VBMS backend.

Route families:
- /auth, /users: accounts and sessions
- /admin: business console for administrators
- /affiliates: affiliate program and commission lifecycle
- /notifications: in-app notifications
- /settings: business profile, integrations and file uploads
"""
import logging
import math
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .routers import (
    auth_router, users_router, admin_router,
    affiliates_router, notifications_router, settings_router,
)
from .database import init_db

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup."""
    init_db()
    yield

# Create FastAPI app
app = FastAPI(
    lifespan=lifespan,
    title="VBMS Backend",
    description="""
    VBMS - Small Business Management Platform API

    ## Areas
    - **Accounts**: registration, login, profiles, admin-created users
    - **Admin console**: customers, orders, subscriptions and analytics
    - **Affiliate program**: referrals, commissions (pending → approved → paid)
    - **Notifications**: per-user inbox, role broadcasts
    - **Settings**: business profile, delivery integrations, file uploads
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(auth_router)
app.include_router(users_router)
app.include_router(admin_router)
app.include_router(affiliates_router)
app.include_router(notifications_router)
app.include_router(settings_router)


def _json_safe(value):
    """NaN and infinity are not valid JSON; echo them back as strings."""
    if isinstance(value, float) and not math.isfinite(value):
        return str(value)
    if isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    return value


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [{**error, "input": _json_safe(error.get("input"))} for error in exc.errors()]
    return await request_validation_exception_handler(request, RequestValidationError(errors))


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    """Last-resort handler: log and return a generic 500."""
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={"success": False, "message": "Internal server error"},
    )


@app.get("/")
async def root():
    """Root endpoint - API information."""
    return {
        "name": "VBMS Backend",
        "version": "1.0.0",
        "description": "Small Business Management Platform API",
        "docs": "/docs",
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": "1.0.0"}


# For running with: python -m app.main
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
