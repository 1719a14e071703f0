# app/routers/health.py
"""
System health check endpoint.
Returns status of backend + DB + how many branches have an active vendor credential.
"""

from fastapi import APIRouter, Depends
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession
from app.database import get_db
from app.models.integration_credential import IntegrationCredential
from datetime import datetime

router = APIRouter()


@router.get("/health", summary="System health check")
async def health_check(db: AsyncSession = Depends(get_db)):
    """
    Returns:
    - Backend status
    - Database connectivity
    - Number of active integration credentials
    """
    result = {
        "status": "ok",
        "timestamp": datetime.utcnow().isoformat(),
        "backend": "ok",
        "database": "unknown",
        "active_credentials": None,
    }

    # Check database
    try:
        await db.execute(text("SELECT 1"))
        result["database"] = "ok"
        result["active_credentials"] = (await db.execute(
            select(func.count(IntegrationCredential.id)).where(IntegrationCredential.is_active.is_(True))
        )).scalar_one()
    except Exception as e:
        result["database"] = f"error: {type(e).__name__}"
        result["status"] = "degraded"

    return result
