from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from app.database import get_db
from app.models.attendance import AttendanceRecord
from app.schemas.attendance import AttendanceRecordOut
from typing import Optional

router = APIRouter()

@router.get("/attendance", response_model=list[AttendanceRecordOut], summary="Attendance sessions")
async def get_attendance(
    branch_id: Optional[str] = None,
    member_id: Optional[str] = None,
    open_only: bool = False,
    limit: int = 50,
    db: AsyncSession = Depends(get_db)
):
    """Newest check-in first. open_only=true lists members currently inside."""
    q = select(AttendanceRecord)
    if branch_id:
        q = q.where(AttendanceRecord.branch_id == branch_id)
    if member_id:
        q = q.where(AttendanceRecord.member_id == member_id)
    if open_only:
        q = q.where(AttendanceRecord.check_out.is_(None))
    result = await db.execute(q.order_by(AttendanceRecord.check_in.desc()).limit(limit))
    return result.scalars().all()
