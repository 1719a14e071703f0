"""
Per-branch access-control integration settings (Credential Store).
Created and edited by an administrator through the settings UI; read-only here.
The Token Manager only ever exchanges credentials from an active row.
"""

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text
from app.database import Base


class IntegrationCredential(Base):
    __tablename__ = "integration_credentials"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(64), nullable=False, index=True)   # = branch id
    base_url = Column(String(255), nullable=False)
    app_key = Column(String(255), nullable=False)
    app_secret = Column(String(255), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    last_polled_at = Column(DateTime)                 # end of the last successful poll window
    last_poll_status = Column(String(16))             # success | failed
    last_poll_error = Column(Text)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)

    def __repr__(self):
        return f"<IntegrationCredential {self.id} tenant={self.tenant_id} active={self.is_active}>"
