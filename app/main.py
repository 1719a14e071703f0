# app/main.py
"""
FastAPI application entry point.
Includes security middleware, global error handlers, and all routers.
"""

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from app.routers import access_control, attendance, health, sync_log, webhook
from app.database import AsyncSessionLocal, create_tables
from app.config import settings
from app.exceptions import AuthenticationError, ConfigurationError
from app.services.event_poller import EventPoller, run_poll_loop
from app.services.hik_client import HikCloudClient
from app.services.sync_service import AccessSyncService
from app.services.token_manager import TokenManager
from app.utils.logger import get_logger
import asyncio
import time

logger = get_logger(__name__)

app = FastAPI(
    title="Gym Access Control Integration API",
    description="Hikvision cloud access control: token management, event ingestion, attendance and door sync.",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

# One token cache for the whole process, shared by every request
_client = HikCloudClient()
app.state.token_manager = TokenManager(_client, AsyncSessionLocal)
app.state.sync_service = AccessSyncService(app.state.token_manager, _client)
app.state.event_poller = EventPoller(app.state.token_manager, _client)
_poll_task = None

# ── CORS (allow the admin dashboard to call the API) ────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],   # Restrict to dashboard origin in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── API Key Middleware ───────────────────────────────────────────────────────
class APIKeyMiddleware(BaseHTTPMiddleware):
    """
    Optional lightweight API key auth for operator endpoints.
    Device webhook (/api/v1/hikvision/webhook/...) is excluded: the gateway doesn't send keys.
    Set API_KEY in .env. Leave empty to disable auth.
    """
    async def dispatch(self, request: Request, call_next):
        # Always allow device webhook and health check without auth
        open_paths = {"/api/v1/health", "/docs", "/redoc", "/openapi.json"}
        path = request.url.path
        if path in open_paths or path.startswith("/api/v1/hikvision/webhook") or not settings.API_KEY:
            return await call_next(request)

        api_key = request.headers.get("X-API-Key") or request.query_params.get("api_key")
        if api_key != settings.API_KEY:
            return JSONResponse(
                status_code=status.HTTP_401_UNAUTHORIZED,
                content={"detail": "Invalid or missing API key"},
            )
        return await call_next(request)


if settings.API_KEY:
    app.add_middleware(APIKeyMiddleware)


# ── Request Timing Middleware ────────────────────────────────────────────────
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    duration = round((time.time() - start) * 1000, 2)
    logger.debug(f"{request.method} {request.url.path} → {response.status_code} ({duration}ms)")
    return response


# ── Exception Handlers ───────────────────────────────────────────────────────
@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    logger.warning(f"{request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"detail": "Access control not configured"},
    )


@app.exception_handler(AuthenticationError)
async def authentication_error_handler(request: Request, exc: AuthenticationError):
    logger.error(f"{request.url.path}: token exchange failed: {exc}")
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={"detail": "Authentication failed: check API credentials"},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


# ── Routers ──────────────────────────────────────────────────────────────────
app.include_router(webhook.router,        prefix="/api/v1", tags=["📡 Device Webhook"])
app.include_router(access_control.router, prefix="/api/v1", tags=["🚪 Access Control"])
app.include_router(sync_log.router,       prefix="/api/v1", tags=["📝 Sync Log"])
app.include_router(attendance.router,     prefix="/api/v1", tags=["🏋️ Attendance"])
app.include_router(health.router,         prefix="/api/v1", tags=["💚 Health"])


# ── Startup ───────────────────────────────────────────────────────────────────
@app.on_event("startup")
async def startup():
    global _poll_task
    logger.info("🚀 Access control backend starting up...")
    await create_tables()
    logger.info("✅ Database tables ready")
    if settings.EVENT_POLL_INTERVAL_SECONDS > 0:
        _poll_task = asyncio.create_task(run_poll_loop(
            app.state.event_poller, AsyncSessionLocal, settings.EVENT_POLL_INTERVAL_SECONDS))
    logger.info(f"🌐 Listening on http://{settings.BACKEND_IP}:{settings.BACKEND_PORT}")
    logger.info("📖 API docs at /docs")


@app.on_event("shutdown")
async def shutdown():
    logger.info("🛑 Access control backend shutting down...")
    if _poll_task is not None:
        _poll_task.cancel()
