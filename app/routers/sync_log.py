from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from app.database import get_db
from app.models.sync_log import SyncLog
from app.schemas.sync_log import SyncLogOut
from typing import Optional

router = APIRouter()

@router.get("/access-control/{branch_id}/sync-log", response_model=list[SyncLogOut],
            summary="Access-control audit log, filterable by level")
async def get_sync_log(
    branch_id: str,
    level: Optional[str] = None,
    entity_type: Optional[str] = None,
    limit: int = 100,
    db: AsyncSession = Depends(get_db)
):
    q = select(SyncLog).where(SyncLog.branch_id == branch_id)
    if level:
        q = q.where(SyncLog.level == level)
    if entity_type:
        q = q.where(SyncLog.entity_type == entity_type)
    result = await db.execute(q.order_by(SyncLog.created_at.desc(), SyncLog.id.desc()).limit(limit))
    return result.scalars().all()
