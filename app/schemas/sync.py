from pydantic import BaseModel, Field
from typing import Optional


class SyncRequest(BaseModel):
    memberId: str = Field(..., min_length=1)
    branchId: str = Field(..., min_length=1)


class SyncResponse(BaseModel):
    message: str
    memberId: str
    branchId: str
    status: Optional[str] = None       # mapping status after the push
    privileges: list[str] = []


class BranchSyncResponse(BaseModel):
    branch_id: str
    total: int
    synced: int
    failed: int


class CardRegistration(BaseModel):
    card_no: str = Field(..., min_length=1, max_length=64)


class PollResponse(BaseModel):
    branch_id: str
    status: str
    fetched: int = 0
    stored: int = 0
    skipped: int = 0
    processed: int = 0
