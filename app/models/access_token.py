"""
Issued vendor tokens. One row per exchange; a refresh inserts a new row
rather than updating the previous one, so the table doubles as an audit trail.
The in-memory TokenCache stays authoritative for the running process.
"""

from sqlalchemy import Column, DateTime, Integer, String, Text
from app.database import Base


class AccessToken(Base):
    __tablename__ = "access_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    access_token = Column(Text, nullable=False)
    expires_in = Column(Integer, nullable=False)        # seconds, as returned by vendor
    expire_time = Column(DateTime, nullable=False)
    token_type = Column(String(32), default="Bearer")
    scope = Column(String(255))
    refresh_token = Column(Text)
    updated_at = Column(DateTime, nullable=False, index=True)

    def __repr__(self):
        return f"<AccessToken {self.id} tenant={self.tenant_id} expires={self.expire_time}>"
