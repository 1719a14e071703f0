"""
Per-member access exceptions and credentials.

Overrides adjust the zones a member's plan grants:
  allowed    → zone added
  denied     → zone removed (wins over the plan and over allowed)
  scheduled  → zone added only inside the weekly time window

Credentials (cards, face templates) are carried on the person record pushed to
the devices so the member can actually present them at a reader.
"""

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text
from app.database import Base

ACCESS_ALLOWED = "allowed"
ACCESS_DENIED = "denied"
ACCESS_SCHEDULED = "scheduled"

CREDENTIAL_CARD = "card"
CREDENTIAL_FACE = "face"


class MemberAccessOverride(Base):
    __tablename__ = "member_access_overrides"

    id = Column(Integer, primary_key=True, autoincrement=True)
    member_id = Column(String(64), nullable=False, index=True)
    branch_id = Column(String(64), nullable=False, index=True)
    zone = Column(String(64), nullable=False)
    access_type = Column(String(16), nullable=False)     # allowed | denied | scheduled
    reason = Column(Text)
    valid_from = Column(DateTime)
    valid_until = Column(DateTime)
    schedule_start_time = Column(String(5))               # "HH:MM", local wall clock
    schedule_end_time = Column(String(5))
    schedule_days = Column(JSON)                          # ["monday", "wednesday", ...]
    created_at = Column(DateTime)

    def __repr__(self):
        return f"<MemberAccessOverride member={self.member_id} zone={self.zone} {self.access_type}>"


class MemberAccessCredential(Base):
    __tablename__ = "member_access_credentials"

    id = Column(Integer, primary_key=True, autoincrement=True)
    member_id = Column(String(64), nullable=False, index=True)
    credential_type = Column(String(16), nullable=False)  # card | face
    credential_value = Column(Text, nullable=False)       # card number or face template
    is_active = Column(Boolean, default=True, nullable=False)
    issued_at = Column(DateTime)
    expires_at = Column(DateTime)

    def __repr__(self):
        return f"<MemberAccessCredential member={self.member_id} type={self.credential_type}>"
