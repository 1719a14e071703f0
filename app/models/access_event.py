"""
Access events pushed by the door controllers (entry / exit / denied).
(branch_id, event_id) is unique: redelivery of the same event is a no-op.
Rows are mutated only by the event processor and never deleted here.
"""

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String, Text, UniqueConstraint
from app.database import Base


class AccessEvent(Base):
    __tablename__ = "access_events"
    __table_args__ = (
        UniqueConstraint("branch_id", "event_id", name="uq_access_event_branch_event"),
        Index("ix_access_event_pending", "branch_id", "processed", "event_time"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(128), nullable=False)
    branch_id = Column(String(64), nullable=False, index=True)
    event_type = Column(String(16), nullable=False)        # entry | exit | denied
    raw_event_type = Column(String(128))                   # vendor string as received
    event_time = Column(DateTime, nullable=False)
    person_id = Column(String(128), index=True)
    person_name = Column(String(255))
    door_id = Column(String(128))
    door_name = Column(String(255))
    device_id = Column(String(128))
    device_name = Column(String(255))
    card_no = Column(String(128))
    face_id = Column(String(128))
    msg_id = Column(String(128))
    topic = Column(String(128))
    raw_payload = Column(Text)

    processed = Column(Boolean, default=False, nullable=False)
    processed_at = Column(DateTime)
    anomaly = Column(String(32))                           # duplicate_entry | orphan_exit
    processing_attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text)
    dead_lettered = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, nullable=False)

    def __repr__(self):
        return f"<AccessEvent {self.event_id} type={self.event_type} processed={self.processed}>"
