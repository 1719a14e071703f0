from pydantic import BaseModel
from datetime import datetime
from typing import Optional


class SyncLogOut(BaseModel):
    id: int
    branch_id: str
    level: str
    message: str
    details: Optional[str]
    entity_type: Optional[str]
    entity_id: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True
