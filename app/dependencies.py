# app/dependencies.py
"""
Shared FastAPI dependencies.
Long-lived services (token manager, sync service, event poller) are built once in main.py and
kept on app.state so every request shares the same token cache.
"""

from typing import Optional
from fastapi import Header, HTTPException, Request, status
from app.services.event_poller import EventPoller
from app.services.sync_service import AccessSyncService
from app.services.token_manager import TokenManager

STAFF_ROLES = {"admin", "staff"}


def get_token_manager(request: Request) -> TokenManager:
    return request.app.state.token_manager


def get_sync_service(request: Request) -> AccessSyncService:
    return request.app.state.sync_service


def require_staff_role(x_user_role: Optional[str] = Header(None)) -> str:
    """Role is asserted by the upstream gateway in X-User-Role. Only admin and staff may trigger syncs."""
    role = (x_user_role or "").strip().lower()
    if role not in STAFF_ROLES:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
    return role


def get_event_poller(request: Request) -> EventPoller:
    return request.app.state.event_poller
