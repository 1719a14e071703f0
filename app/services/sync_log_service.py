"""
Shared audit-log writer.
Used by event_processor (check-ins, anomalies, dead letters) and sync_service (push results).
Adds the row to the caller's session; the caller's commit persists it together
with the change being described.
"""

from datetime import datetime
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from app.models.sync_log import SyncLog
from app.utils.logger import get_logger

logger = get_logger(__name__)

LEVEL_INFO = "info"
LEVEL_WARNING = "warning"
LEVEL_ERROR = "error"


def record_log(db: AsyncSession, branch_id: str, level: str, message: str,
               details: Optional[str] = None, entity_type: Optional[str] = None,
               entity_id: Optional[str] = None) -> SyncLog:
    entry = SyncLog(branch_id=branch_id, level=level, message=message, details=details,
                    entity_type=entity_type, entity_id=entity_id,
                    created_at=datetime.utcnow())
    db.add(entry)
    log = logger.warning if level in (LEVEL_WARNING, LEVEL_ERROR) else logger.info
    log(f"[{branch_id}][{level.upper()}] {message}")
    return entry
