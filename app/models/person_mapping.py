"""
Member ↔ access-control person link, one per (member, branch).
`privileges` is the full door list last pushed to the device side; it is
replaced on every sync, never patched.
"""

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text, UniqueConstraint
from app.database import Base

STATUS_UNSYNCED = "unsynced"
STATUS_SYNCED = "synced"
STATUS_REVOKED = "revoked"


class PersonMapping(Base):
    __tablename__ = "person_mappings"
    __table_args__ = (
        UniqueConstraint("member_id", "branch_id", name="uq_person_mapping_member_branch"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    member_id = Column(String(64), nullable=False, index=True)
    branch_id = Column(String(64), nullable=False, index=True)
    person_id = Column(String(128), index=True)      # vendor-side person id
    employee_no = Column(String(128))
    privileges = Column(JSON, default=list, nullable=False)
    status = Column(String(16), default=STATUS_UNSYNCED, nullable=False)
    last_synced_at = Column(DateTime)
    last_error = Column(Text)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)

    def __repr__(self):
        return f"<PersonMapping member={self.member_id} person={self.person_id} status={self.status}>"
