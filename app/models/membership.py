"""
Membership-domain tables this integration reads but does not own:
branches, members, their memberships, and the doors configured per branch.
"""

from sqlalchemy import Boolean, Column, Date, Integer, String
from app.database import Base


class Branch(Base):
    __tablename__ = "branches"

    id = Column(String(64), primary_key=True)
    name = Column(String(200), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    def __repr__(self):
        return f"<Branch {self.id} {self.name}>"


class Member(Base):
    __tablename__ = "members"

    id = Column(String(64), primary_key=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), default="")
    email = Column(String(255))
    branch_id = Column(String(64), index=True)
    role = Column(String(32), default="member")     # member | staff | trainer

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name or ''}".strip()

    def __repr__(self):
        return f"<Member {self.id} {self.full_name}>"


class Membership(Base):
    __tablename__ = "memberships"

    id = Column(Integer, primary_key=True, autoincrement=True)
    member_id = Column(String(64), nullable=False, index=True)
    plan_tier = Column(String(32), default="standard")
    status = Column(String(32), nullable=False)     # active | expired | cancelled | frozen
    start_date = Column(Date)
    end_date = Column(Date)

    def __repr__(self):
        return f"<Membership {self.id} member={self.member_id} status={self.status}>"


class AccessDoor(Base):
    __tablename__ = "access_doors"

    id = Column(Integer, primary_key=True, autoincrement=True)
    branch_id = Column(String(64), nullable=False, index=True)
    door_index_code = Column(String(128), nullable=False)   # vendor door id
    door_name = Column(String(200))
    zone = Column(String(64), default="standard", nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    def __repr__(self):
        return f"<AccessDoor {self.door_index_code} zone={self.zone}>"
