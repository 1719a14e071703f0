from pydantic import BaseModel
from datetime import datetime
from typing import Optional


class AttendanceRecordOut(BaseModel):
    id: int
    branch_id: str
    member_id: str
    person_id: Optional[str]
    check_in: datetime
    check_out: Optional[datetime]
    duration_minutes: Optional[int]
    device_id: Optional[str]
    door_id: Optional[str]
    source: str
    event_id: Optional[str]

    class Config:
        from_attributes = True
