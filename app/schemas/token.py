from pydantic import BaseModel
from datetime import datetime
from typing import Optional


class TokenStatusOut(BaseModel):
    """Token metadata only. The token value itself never leaves the process."""
    tenant_id: str
    has_token: bool
    is_valid: bool
    token_type: Optional[str] = None
    issued_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    expires_in: Optional[int] = None
