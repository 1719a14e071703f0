"""
Operator-facing audit log for the access-control integration.
Records check-ins/outs, processing anomalies, dead-lettered events and sync results.
"""

from sqlalchemy import Column, DateTime, Integer, String, Text
from app.database import Base


class SyncLog(Base):
    __tablename__ = "access_sync_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    branch_id = Column(String(64), nullable=False, index=True)
    level = Column(String(16), nullable=False, index=True)   # info | warning | error
    message = Column(String(255), nullable=False)
    details = Column(Text)
    entity_type = Column(String(32))                         # attendance | event | person
    entity_id = Column(String(128))
    created_at = Column(DateTime, nullable=False, index=True)

    def __repr__(self):
        return f"<SyncLog {self.id} {self.level} {self.message}>"
