"""
Attendance sessions written by the event processor.
An open session has check_out = NULL; exit events close the most recent one.
"""

from sqlalchemy import Column, DateTime, Index, Integer, String, Text
from app.database import Base


class AttendanceRecord(Base):
    __tablename__ = "attendance_records"
    __table_args__ = (
        Index("ix_attendance_open_session", "branch_id", "member_id", "check_out"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    branch_id = Column(String(64), nullable=False, index=True)
    member_id = Column(String(64), nullable=False, index=True)
    person_id = Column(String(128))
    check_in = Column(DateTime, nullable=False, index=True)
    check_out = Column(DateTime)
    duration_minutes = Column(Integer)       # set on exit
    device_id = Column(String(128))
    door_id = Column(String(128))
    source = Column(String(32), default="access_control", nullable=False)
    event_id = Column(String(128))           # entry event that opened the session
    notes = Column(Text)
    created_at = Column(DateTime, nullable=False)

    def __repr__(self):
        return f"<AttendanceRecord {self.id} member={self.member_id} in={self.check_in} out={self.check_out}>"
