# FastAPI entrypoint with all routers and middleware

import os
from typing import Optional

import dotenv
from fastapi import APIRouter, Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.routing import APIRoute
from loguru import logger
from starlette.middleware.gzip import GZipMiddleware

from apps import __version__
from admin.alert_routes import router as alerts_router
from admin.audit_routes import router as audit_router
from admin.backup_routes import router as backups_router
from admin.rate_limit_routes import router as rate_limits_router
from admin.retention import retention_manager
from admin.settings_routes import router as settings_router
from admin.system_routes import router as system_router
from auth.api_key_routes import router as api_keys_router
from auth.auth_manager import auth_manager
from auth.auth_routes import router as auth_router
from auth.rbac_dependencies import get_optional_user
from auth.security_middleware import (
    AuditLoggingMiddleware,
    RateLimitMiddleware,
    SecurityHeadersMiddleware,
)
from auth.user_routes import router as users_router
from dashboards.builder import dashboard_builder
from dashboards.dashboard_routes import router as dashboards_router
from ingestion.engine import ingestion_engine
from ingestion.ingestion_routes import router as ingestion_router
from ingestion.log_routes import router as logs_router
from store.database import DatabaseManager
from tracing.middleware import TracingMiddleware
from tracing.tracing_routes import router as tracing_router

dotenv.load_dotenv()

# Initialize FastAPI app
app = FastAPI(
    title="LogDeck",
    description="Log management console: multi-protocol ingestion, search, dashboards and tracing",
    version=__version__,
)

# ==================== MIDDLEWARE STACK ====================
# Starlette runs the last-added middleware first.

app.add_middleware(AuditLoggingMiddleware)
app.add_middleware(TracingMiddleware)
app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(RateLimitMiddleware)
app.add_middleware(SecurityHeadersMiddleware)

# ==================== CORS MIDDLEWARE ====================

CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173").split(",")
    if origin.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "HEAD", "PATCH"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "Accept",
        "Origin",
        "X-API-Key",
        "X-Trace-Id",
        "X-Parent-Span-Id",
    ],
    expose_headers=[
        "Content-Disposition",
        "Retry-After",
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
        "X-Trace-Id",
    ],
    max_age=86400,
)

# ==================== BASE ROUTER ====================

router = APIRouter(prefix="/api/base", tags=["base"])


@router.get("/")
async def base_root(user: Optional[dict] = Depends(get_optional_user)):
    """API information and the list of routes; names the caller when a token is sent."""
    routes = [
        {
            "path": route.path,
            "name": route.name,
            "methods": sorted(route.methods - {"HEAD", "OPTIONS"}),
        }
        for route in app.routes
        if isinstance(route, APIRoute)
    ]

    return {
        "message": "LogDeck API",
        "version": __version__,
        "authenticated": user is not None,
        "user": {"username": user.get("username"), "role": user.get("role")} if user else None,
        "routes": routes,
    }


@router.get("/health")
async def health_check():
    """Liveness: database reachability and ingestion mode."""
    database = DatabaseManager.health_check()
    return {
        "status": "healthy" if database else "unhealthy",
        "database": database,
        "ingestion": ingestion_engine.mode,
    }


# ==================== ROUTER REGISTRATION ====================

app.include_router(router)                 # /api/base
app.include_router(auth_router)            # /api/auth
app.include_router(users_router)           # /api/users
app.include_router(api_keys_router)        # /api/api-keys
app.include_router(settings_router)        # /api/settings
app.include_router(rate_limits_router)     # /api/rate-limits
app.include_router(audit_router)           # /api/audit-trail
app.include_router(backups_router)         # /api/backups
app.include_router(alerts_router)          # /api/alerts
app.include_router(system_router)          # /api/system
app.include_router(ingestion_router)       # /api/ingestion
app.include_router(logs_router)            # /api/logs
app.include_router(tracing_router)         # /api/tracing
app.include_router(dashboards_router)      # /api/dashboards

# ==================== ROOT ENDPOINT ====================


@app.get("/")
async def root():
    """Root endpoint - returns simple welcome message."""
    return {
        "message": "LogDeck",
        "status": "running",
        "docs_url": "/docs",
        "api_base": "/api",
    }


# ==================== STARTUP / SHUTDOWN EVENTS ====================

@app.on_event("startup")
async def startup_event():
    """Initialize on startup."""
    logger.info("Initializing database...")
    DatabaseManager.initialize()
    logger.info("✓ Database initialized and tables created")

    try:
        admin = auth_manager.ensure_default_admin()
        if admin:
            logger.info(f"✓ Default administrator '{admin['username']}' created")
    except Exception as e:
        logger.error(f"Default admin setup failed: {e}")

    dashboard_builder.seed_templates()

    mode = ingestion_engine.initialize()
    logger.info(f"✓ Ingestion engine {mode}")

    if retention_manager.start():
        logger.info("✓ Retention job scheduled")


@app.on_event("shutdown")
async def shutdown_event():
    retention_manager.stop()
    ingestion_engine.shutdown()
    DatabaseManager.dispose()
    logger.info("LogDeck stopped")
